"""
kubeplane/models/ssh.py

SSH settings carried in a profile and the per-host connection config the
SSH runner is built from.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator, model_validator

from kubeplane.models.base import KubeplaneModel


class HostKeyPolicy(str, Enum):
    """How the runner treats the remote host key.

    strict:     host_keys must be provided; unknown keys are rejected.
    accept_new: trust on first use; a changed key is rejected.
    insecure:   accept any key (logged loudly).
    """

    strict = "strict"
    accept_new = "accept-new"
    insecure = "insecure"


class SSHConfig(KubeplaneModel):
    """
    SSH template shared by every node of a cluster.
    The bootstrap key pair is what the provider installs on new machines;
    `public_key` is an optional operator key appended to authorized_keys.
    """

    user: str = "root"
    port: int = Field(default=22, ge=1, le=65535)
    timeout: float = Field(default=10.0, gt=0)
    bootstrap_private_key: str
    bootstrap_public_key: str = ""
    public_key: Optional[str] = None
    host_key_policy: HostKeyPolicy = HostKeyPolicy.accept_new
    host_keys: List[str] = Field(default_factory=list)

    @field_validator("bootstrap_private_key")
    @classmethod
    def validate_private_key(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("bootstrap_private_key must be a non-empty string")
        return val

    @model_validator(mode="after")
    def check_strict_keys(self) -> SSHConfig:
        if self.host_key_policy == HostKeyPolicy.strict and not self.host_keys:
            raise ValueError("host_key_policy 'strict' requires host_keys")
        return self
