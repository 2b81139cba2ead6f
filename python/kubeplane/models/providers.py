"""
kubeplane/models/providers.py

Provider identifiers and per-provider credential models, with a
dictionary-based dispatch from ProviderName to the credential parser.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, field_validator


class ProviderName(str, Enum):
    digitalocean = "digitalocean"
    aws = "aws"


class DigitalOceanCredentials(BaseModel):
    access_token: str

    @field_validator("access_token")
    @classmethod
    def validate_token(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("access_token must be a non-empty string")
        return val


class AWSCredentials(BaseModel):
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None


Credentials = DigitalOceanCredentials | AWSCredentials

CREDENTIALS_MODEL_MAP: Dict[ProviderName, Callable[[Dict[str, Any]], Credentials]] = {
    ProviderName.digitalocean: lambda raw: DigitalOceanCredentials(**raw),
    ProviderName.aws: lambda raw: AWSCredentials(**raw),
}


def parse_credentials(provider: ProviderName, raw: Dict[str, Any]) -> Credentials:
    if provider not in CREDENTIALS_MODEL_MAP:
        raise ValueError(f"Unsupported provider: {provider}")
    return CREDENTIALS_MODEL_MAP[provider](raw)
