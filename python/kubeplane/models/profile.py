"""
kubeplane/models/profile.py

The declarative cluster profile submitted by operators.
"""

from __future__ import annotations

import ipaddress
import re
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field, field_validator, model_validator

from kubeplane.models.base import KubeplaneModel
from kubeplane.models.providers import ProviderName
from kubeplane.models.ssh import SSHConfig

VERSION_RE = re.compile(r"^\d+\.\d+\.\d+$")


class NetworkProvider(str, Enum):
    flannel = "flannel"
    calico = "calico"
    weave = "weave"


class Networking(KubeplaneModel):
    cidr: str = "10.244.0.0/16"
    service_cidr: str = "10.96.0.0/12"
    provider: NetworkProvider = NetworkProvider.flannel
    version: str = ""

    @field_validator("cidr", "service_cidr")
    @classmethod
    def validate_cidr(cls, val: str) -> str:
        try:
            ipaddress.ip_network(val, strict=True)
        except ValueError as exc:
            raise ValueError(f"invalid CIDR {val!r}: {exc}") from exc
        return val

    @model_validator(mode="after")
    def check_overlap(self) -> Networking:
        pod = ipaddress.ip_network(self.cidr)
        svc = ipaddress.ip_network(self.service_cidr)
        if pod.version == svc.version and pod.overlaps(svc):
            raise ValueError(
                f"pod CIDR {self.cidr} overlaps service CIDR {self.service_cidr}"
            )
        return self


class NodeSpec(KubeplaneModel):
    """Machine shape for one node. `extra` carries provider specific knobs."""

    size: str
    image: str = ""
    volume_size: int = Field(default=0, ge=0)
    extra: Dict[str, str] = Field(default_factory=dict)


class Timeouts(KubeplaneModel):
    """Deadlines and poll intervals, in seconds."""

    ssh_wait: float = Field(default=600.0, gt=0)
    ssh_poll_interval: float = Field(default=5.0, gt=0)
    provision: float = Field(default=1200.0, gt=0)
    provision_poll_interval: float = Field(default=5.0, gt=0)
    post_provision: float = Field(default=1800.0, gt=0)
    bootstrap_barrier: float = Field(default=1800.0, gt=0)
    default_step: float = Field(default=900.0, gt=0)
    cluster_check: float = Field(default=900.0, gt=0)
    cluster_check_interval: float = Field(default=10.0, gt=0)


class Profile(KubeplaneModel):
    name: str = ""
    provider: ProviderName
    region: str
    k8s_version: str = "1.18.0"
    kubeadm_version: Optional[str] = None
    docker_version: str = "19.03.12"
    helm_version: str = "2.16.1"
    arch: str = "amd64"
    operating_system: str = "linux"
    networking: Networking = Field(default_factory=Networking)
    master_profiles: List[NodeSpec]
    node_profiles: List[NodeSpec] = Field(default_factory=list)
    ssh: SSHConfig
    rbac_enabled: bool = True
    cloud_spec: Dict[str, str] = Field(default_factory=dict)
    timeouts: Timeouts = Field(default_factory=Timeouts)

    @field_validator("region")
    @classmethod
    def validate_region(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("region must be a non-empty string")
        return val

    @field_validator("k8s_version", "kubeadm_version")
    @classmethod
    def validate_version(cls, val: Optional[str]) -> Optional[str]:
        if val is not None and not VERSION_RE.match(val):
            raise ValueError(f"version {val!r} must look like X.Y.Z")
        return val

    @field_validator("master_profiles")
    @classmethod
    def validate_masters(cls, val: List[NodeSpec]) -> List[NodeSpec]:
        if len(val) < 1:
            raise ValueError("a profile needs at least one master")
        return val

    @property
    def master_count(self) -> int:
        return len(self.master_profiles)

    @property
    def worker_count(self) -> int:
        return len(self.node_profiles)

    @property
    def effective_kubeadm_version(self) -> str:
        return self.kubeadm_version or self.k8s_version
