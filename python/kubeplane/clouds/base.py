"""
kubeplane/clouds/base.py

The capability set every cloud adapter provides to steps:
create/delete/get machine, find-by-tag (for idempotent creates), and
cluster-level scaffolding (keys, networks, security groups).

Adapters are async context managers; steps open one per invocation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from types import TracebackType
from typing import Dict, Optional, Type

from pydantic import Field

from kubeplane.models.base import KubeplaneModel
from kubeplane.models.machine import Machine, MachineRequest
from kubeplane.models.providers import ProviderName


class ClusterSpec(KubeplaneModel):
    cluster_id: str
    name: str
    region: str
    cidr: str = ""
    ssh_public_key: str = ""
    cloud_spec: Dict[str, str] = Field(default_factory=dict)


class CloudProvider(ABC):
    name: ProviderName

    async def __aenter__(self) -> CloudProvider:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        return None

    @abstractmethod
    async def create_machine(self, request: MachineRequest) -> Machine:
        """Ask for a new machine. The returned record is usually not yet active."""

    @abstractmethod
    async def delete_machine(self, region: str, machine_id: str) -> None:
        """Delete a machine. Deleting an unknown id is not an error."""

    @abstractmethod
    async def get_machine(self, region: str, machine_id: str) -> Machine:
        """Current provider view of a machine.

        Raises:
            MachineNotFoundError: If the provider does not know the id.
        """

    @abstractmethod
    async def find_machine(self, region: str, tag: str) -> Optional[Machine]:
        """A live machine carrying `tag`, if any."""

    @abstractmethod
    async def create_cluster(self, spec: ClusterSpec) -> Dict[str, str]:
        """Create provider scaffolding; returns identifiers to keep in cloud_spec."""

    @abstractmethod
    async def delete_cluster(
        self, cluster_id: str, region: str, resources: Dict[str, str]
    ) -> None:
        """Remove what create_cluster made. Missing resources are ignored."""
