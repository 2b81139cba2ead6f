"""
kubeplane/models/kube.py

The aggregate record of one provisioned cluster, stored under `kubes/<id>`.
The record references tasks by id only.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from kubeplane.models.base import KubeplaneModel
from kubeplane.models.machine import Machine, utcnow
from kubeplane.models.profile import Networking
from kubeplane.models.providers import ProviderName
from kubeplane.models.ssh import SSHConfig


class KubeState(str, Enum):
    provisioning = "provisioning"
    operational = "operational"
    failed = "failed"
    deleting = "deleting"


class CAPair(KubeplaneModel):
    cert: str = ""
    key: str = ""

    @property
    def empty(self) -> bool:
        return not (self.cert and self.key)


class Kube(KubeplaneModel):
    id: str
    name: str
    provider: ProviderName
    region: str
    version: str
    account_name: str = ""
    bootstrap_token: str = ""
    certificate_key: str = ""
    internal_dns: str = Field(default="", alias="internalDNS")
    external_dns: str = Field(default="", alias="externalDNS")
    discovery_url: str = ""
    ca: CAPair = Field(default_factory=CAPair)
    masters: Dict[str, Machine] = Field(default_factory=dict)
    workers: Dict[str, Machine] = Field(default_factory=dict)
    bootstrap_master_id: Optional[str] = None
    networking: Networking = Field(default_factory=Networking)
    ssh: Optional[SSHConfig] = None
    state: KubeState = KubeState.provisioning
    cloud_spec: Dict[str, str] = Field(default_factory=dict)
    tasks: Dict[str, List[str]] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None

    def all_task_ids(self) -> List[str]:
        return [tid for ids in self.tasks.values() for tid in ids]
