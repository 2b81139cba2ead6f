"""
kubeplane/models/validator.py

Helpers for validating raw Python objects and JSON bytes against a
pydantic-based type using TypeAdapter.
"""

from typing import Any, Type, TypeVar, Union
from pydantic import ValidationError, TypeAdapter

from kubeplane.errors import InvalidRequestError

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validates that a given Python object conforms to the expected type.

    Args:
        obj (Any): The object to validate.
        expected_type (Type[T]): The type (pydantic or otherwise) to validate against.

    Returns:
        T: The validated object, cast to the expected type.

    Raises:
        InvalidRequestError: If validation fails.
    """
    try:
        adapter = TypeAdapter(expected_type)
        return adapter.validate_python(obj)
    except ValidationError as e:
        raise InvalidRequestError(f"Validation failed for type {expected_type}: {e}") from e


def validate_json(data: Union[str, bytes], expected_type: Type[T]) -> T:
    """Same as validate_type, for JSON text."""
    try:
        return TypeAdapter(expected_type).validate_json(data)
    except ValidationError as e:
        raise InvalidRequestError(f"Validation failed for type {expected_type}: {e}") from e
