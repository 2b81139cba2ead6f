"""
kubeplane/workflows/config.py

The typed bag threaded through every step of one task.

Inputs (profile snapshot, SSH template, cluster id, role flags) are set by
the orchestrator. Outputs (node record, join material, kubeconfig) are
written by earlier steps and read by later ones; step ordering, not locking,
keeps those writes disciplined. The copy persisted with each snapshot also
carries the current contents of the cluster's masters/workers maps.

Runtime handles (services, cluster state, runners, cloud clients) are not
persisted: they are reattached with `bind` when a task is built or reloaded.
Credentials are excluded from the persisted copy too and are filled in again
from the account record on restart.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import Field, PrivateAttr

from kubeplane.clouds.base import CloudProvider
from kubeplane.errors import KubeplaneError
from kubeplane.models.account import CloudAccount
from kubeplane.models.base import KubeplaneModel
from kubeplane.models.kube import CAPair
from kubeplane.models.machine import Machine, MachineRole
from kubeplane.models.profile import NodeSpec, Profile
from kubeplane.models.providers import ProviderName
from kubeplane.models.ssh import SSHConfig
from kubeplane.runner.base import Runner
from kubeplane.templates.manager import TemplateManager
from kubeplane.workflows.cluster_state import ClusterState, JoinMaterial
from kubeplane.workflows.services import Services


class Config(KubeplaneModel):
    task_id: str = ""
    cluster_id: str
    cluster_name: str
    provider: ProviderName
    region: str
    account_name: str = ""
    credentials: Dict[str, str] = Field(default_factory=dict, exclude=True)
    profile: Profile
    ssh: SSHConfig

    role: MachineRole = MachineRole.master
    is_master: bool = False
    is_bootstrap: bool = False
    is_import: bool = False
    dry_run: bool = False

    node_index: int = 0
    node_spec: Optional[NodeSpec] = None
    node_name: str = ""
    node: Optional[Machine] = None
    runner_host: str = ""

    bootstrap_token: str = ""
    certificate_key: str = ""
    internal_dns: str = Field(default="", alias="internalDNS")
    external_dns: str = Field(default="", alias="externalDNS")
    discovery_url: str = ""
    ca: CAPair = Field(default_factory=CAPair)
    kubeconfig: str = ""
    bootstrap_master: Optional[Machine] = None

    target_node: Optional[Machine] = None
    skip_drain: bool = False
    upgrade_version: str = ""

    cloud_outputs: Dict[str, str] = Field(default_factory=dict)
    masters: Dict[str, Machine] = Field(default_factory=dict)
    workers: Dict[str, Machine] = Field(default_factory=dict)

    _services: Optional[Services] = PrivateAttr(default=None)

    # ------------------------------------------------------------------
    # runtime wiring
    # ------------------------------------------------------------------
    def bind(self, services: Services) -> Config:
        self._services = services
        cluster = self.cluster
        cluster.masters.seed(self.masters.values())
        cluster.workers.seed(self.workers.values())
        return self

    @property
    def services(self) -> Services:
        if self._services is None:
            raise KubeplaneError("config is not bound to services")
        return self._services

    @property
    def cluster(self) -> ClusterState:
        return self.services.clusters.ensure(
            self.cluster_id,
            master_capacity=self.profile.master_count,
            worker_capacity=self.profile.worker_count,
        )

    @property
    def templates(self) -> TemplateManager:
        return self.services.templates

    def account(self) -> CloudAccount:
        return CloudAccount(
            name=self.account_name,
            provider=self.provider,
            credentials=dict(self.credentials),
        )

    def cloud(self) -> CloudProvider:
        """A fresh provider client; use as an async context manager."""
        return self.services.providers.build(self.account())

    def _runner_for(self, host: str) -> Runner:
        factory = (
            self.services.dry_runner_factory if self.dry_run else self.services.runner_factory
        )
        return factory(host, self.ssh)

    def new_runner(self) -> Runner:
        """Runner for this task's node, built fresh for each step invocation."""
        if not self.runner_host:
            raise KubeplaneError(f"task {self.task_id}: no runner installed (ssh step not run)")
        return self._runner_for(self.runner_host)

    def control_runner(self) -> Runner:
        """Runner for the bootstrap master, where kubectl has admin credentials."""
        master = self.bootstrap_master
        if master is None or not master.public_ip:
            raise KubeplaneError(f"task {self.task_id}: bootstrap master address unknown")
        return self._runner_for(master.public_ip)

    # ------------------------------------------------------------------
    # shared state helpers
    # ------------------------------------------------------------------
    def apply_join_material(self, material: JoinMaterial) -> None:
        self.bootstrap_master = material.bootstrap_master
        self.bootstrap_token = material.bootstrap_token
        self.certificate_key = material.certificate_key
        self.internal_dns = material.internal_dns or self.internal_dns
        self.external_dns = material.external_dns or self.external_dns
        self.ca = material.ca.model_copy()
        if self.is_master:
            self.kubeconfig = material.kubeconfig

    def refresh_nodes(self) -> None:
        if self._services is None:
            return
        cluster = self.cluster
        self.masters = cluster.masters.as_dict()
        self.workers = cluster.workers.as_dict()

    def persisted(self) -> Dict[str, Any]:
        """JSON-ready copy for the task snapshot."""
        self.refresh_nodes()
        return self.model_dump(mode="json", by_alias=True)

    def clone(self, **updates: Any) -> Config:
        """Independent copy (services stay shared), with `updates` applied."""
        data = self.model_dump()
        data["credentials"] = dict(self.credentials)
        data.update(updates)
        copy = Config.model_validate(data)
        copy._services = self._services
        return copy
