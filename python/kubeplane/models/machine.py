"""
kubeplane/models/machine.py
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import ConfigDict, Field

from kubeplane.models.base import KubeplaneModel
from kubeplane.models.providers import ProviderName


class MachineRole(str, Enum):
    master = "master"
    worker = "worker"


class MachineState(str, Enum):
    requested = "requested"
    creating = "creating"
    active = "active"
    deleting = "deleting"
    deleted = "deleted"
    error = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Machine(KubeplaneModel):
    """A provisioned virtual machine. Instances are immutable; use model_copy."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    role: MachineRole
    provider: ProviderName
    region: str
    size: str = ""
    private_ip: Optional[str] = None
    public_ip: Optional[str] = None
    state: MachineState = MachineState.requested
    created_at: datetime = Field(default_factory=utcnow)
    task_id: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_master(self) -> bool:
        return self.role == MachineRole.master


class MachineRequest(KubeplaneModel):
    """What create_machine asks a provider for."""

    name: str
    role: MachineRole
    region: str
    size: str
    image: str = ""
    volume_size: int = 0
    ssh_public_key: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)
    extra: Dict[str, str] = Field(default_factory=dict)
