"""
kubeplane/models/base.py

Common pydantic base for persisted and wire records: camelCase JSON keys,
snake_case attributes, and YAML helpers for operator-facing files.
"""

from __future__ import annotations

from typing import Any, Type, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

M = TypeVar("M", bound="KubeplaneModel")


class KubeplaneModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_json(self) -> bytes:
        """Serialize with camelCase keys, as stored in the KV store."""
        return self.model_dump_json(by_alias=True).encode("utf-8")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls: Type[M], data: bytes | str) -> M:
        return cls.model_validate_json(data)

    def to_yaml(self, *, sort_keys: bool = False) -> str:
        return yaml.safe_dump(self.to_wire(), sort_keys=sort_keys)

    @classmethod
    def from_yaml(cls: Type[M], yaml_str: str) -> M:
        data = yaml.safe_load(yaml_str)
        return cls.model_validate(data)
