"""
kubeplane/workflows/cluster_state.py

Cross-task state of one cluster, addressed by cluster id:

  - two NodeMaps (masters, workers): insert-only, first write wins, guarded
    by a mutex; readers get snapshots.
  - the bootstrap barrier: a single-shot broadcast the bootstrap master's
    kubeadm step fires after publishing join material (CA, token,
    certificate key, DNS). Non-bootstrap tasks wait on it with a deadline.

This is the only mutable surface shared between tasks of a cluster.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, Iterable, List, Optional

from pydantic import Field

from kubeplane.errors import BootstrapTimeout, ConflictError, KubeplaneTimeout, NotFoundError
from kubeplane.models.base import KubeplaneModel
from kubeplane.models.kube import CAPair
from kubeplane.models.machine import Machine

logger = logging.getLogger(__name__)


class BootstrapAborted(BootstrapTimeout):
    """The bootstrap master failed, so the barrier will never open."""


class JoinMaterial(KubeplaneModel):
    """What the bootstrap master publishes for everybody else."""

    bootstrap_master: Machine
    bootstrap_token: str
    certificate_key: str = ""
    internal_dns: str = ""
    external_dns: str = ""
    ca: CAPair = Field(default_factory=CAPair)
    kubeconfig: str = ""


class NodeMap:
    """Concurrent insert-only map of machine id -> Machine."""

    def __init__(self, capacity: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self._nodes: Dict[str, Machine] = {}
        self._capacity = capacity
        self._first = asyncio.Event()

    def add(self, machine: Machine) -> bool:
        """
        Insert `machine` unless its id is already present.

        Returns:
            bool: True if inserted, False if an entry already existed (the
                existing record is kept unchanged).

        Raises:
            ConflictError: If the map is full.
        """
        with self._lock:
            if machine.id in self._nodes:
                return False
            if self._capacity is not None and len(self._nodes) >= self._capacity:
                raise ConflictError(
                    f"node map full ({self._capacity}); refusing {machine.id}"
                )
            self._nodes[machine.id] = machine
        self._first.set()
        return True

    def get(self, machine_id: str) -> Optional[Machine]:
        with self._lock:
            return self._nodes.get(machine_id)

    def range(self) -> List[Machine]:
        """Consistent snapshot of all entries in insertion order."""
        with self._lock:
            return list(self._nodes.values())

    def as_dict(self) -> Dict[str, Machine]:
        with self._lock:
            return dict(self._nodes)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, machine_id: object) -> bool:
        with self._lock:
            return machine_id in self._nodes

    async def wait_for_first(self, timeout: float) -> Machine:
        """Block until at least one machine is present."""
        try:
            await asyncio.wait_for(self._first.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise KubeplaneTimeout(f"no node registered within {timeout:.0f}s") from None
        return self.range()[0]

    def seed(self, machines: Iterable[Machine]) -> None:
        for machine in machines:
            with self._lock:
                self._nodes.setdefault(machine.id, machine)
            self._first.set()


class ClusterState:
    def __init__(
        self,
        cluster_id: str,
        master_capacity: Optional[int] = None,
        worker_capacity: Optional[int] = None,
    ) -> None:
        self.cluster_id = cluster_id
        self.masters = NodeMap(master_capacity)
        self.workers = NodeMap(worker_capacity)
        self._bootstrap_ready = asyncio.Event()
        self._join: Optional[JoinMaterial] = None
        self._abort_reason: Optional[str] = None

    @property
    def bootstrapped(self) -> bool:
        return self._join is not None

    @property
    def join_material(self) -> Optional[JoinMaterial]:
        return self._join

    def publish_join_material(self, material: JoinMaterial) -> bool:
        """
        Fire the barrier. Only the first publish counts; later calls (a
        restarted bootstrap task) return False and change nothing.
        """
        if self._join is not None:
            return False
        self._join = material
        self._abort_reason = None
        self._bootstrap_ready.set()
        logger.info(
            "Cluster %s: bootstrap master %s published join material",
            self.cluster_id,
            material.bootstrap_master.id,
        )
        return True

    def abort_bootstrap(self, reason: str) -> None:
        """Wake waiters with BootstrapAborted; no-op once published."""
        if self._join is not None:
            return
        self._abort_reason = reason
        self._bootstrap_ready.set()

    def reset_abort(self) -> None:
        """Re-arm the barrier after an aborted bootstrap (bootstrap task restart)."""
        if self._join is None and self._abort_reason is not None:
            self._abort_reason = None
            self._bootstrap_ready = asyncio.Event()

    async def wait_bootstrap(self, timeout: float) -> JoinMaterial:
        """
        Wait for the bootstrap master's join material.

        Raises:
            BootstrapTimeout: If nothing was published within `timeout` seconds.
            BootstrapAborted: If the bootstrap master failed.
        """
        try:
            await asyncio.wait_for(self._bootstrap_ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise BootstrapTimeout(
                f"bootstrap master of cluster {self.cluster_id} not ready after {timeout:.0f}s"
            ) from None
        if self._join is None:
            raise BootstrapAborted(
                f"bootstrap master of cluster {self.cluster_id} failed: {self._abort_reason}"
            )
        return self._join


class ClusterRegistry:
    """cluster id -> ClusterState. Lives for the life of the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clusters: Dict[str, ClusterState] = {}

    def ensure(
        self,
        cluster_id: str,
        master_capacity: Optional[int] = None,
        worker_capacity: Optional[int] = None,
    ) -> ClusterState:
        with self._lock:
            state = self._clusters.get(cluster_id)
            if state is None:
                state = ClusterState(cluster_id, master_capacity, worker_capacity)
                self._clusters[cluster_id] = state
            return state

    def get(self, cluster_id: str) -> ClusterState:
        with self._lock:
            try:
                return self._clusters[cluster_id]
            except KeyError:
                raise NotFoundError(f"cluster {cluster_id} has no live state") from None

    def drop(self, cluster_id: str) -> None:
        with self._lock:
            self._clusters.pop(cluster_id, None)

    def __contains__(self, cluster_id: object) -> bool:
        with self._lock:
            return cluster_id in self._clusters
