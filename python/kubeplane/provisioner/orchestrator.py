"""
kubeplane/provisioner/orchestrator.py

ClusterProvisioner expands a profile into tasks and drives them:

    preprovision -> (bootstrap master || other masters || workers) -> cluster

Node tasks are launched together; the non-bootstrap ones rendezvous with the
bootstrap master through the cluster's barrier (see steps/ssh.py). The Kube
record is written when the plan is made and again when the flow ends.

Cluster deletion runs delete-node tasks for workers, then the other masters,
then the bootstrap master, then the provider level delete-cluster task.

All long-running work happens in background asyncio tasks owned by this
object; the public coroutines return task ids straight away.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Coroutine, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os

from kubeplane.errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    TaskRunningError,
)
from kubeplane.models.account import CloudAccount
from kubeplane.models.kube import Kube, KubeState
from kubeplane.models.machine import Machine, MachineRole
from kubeplane.models.profile import Profile
from kubeplane.models.requests import (
    CLUSTER_ROLE,
    DELETE_CLUSTER_ROLE,
    DELETE_NODE_ROLE,
    MASTER_ROLE,
    PREPROVISION_ROLE,
    UPGRADE_ROLE,
    WORKER_ROLE,
    ProvisionResult,
)
from kubeplane.models.settings import ControlPlaneSettings
from kubeplane.models.task import StepState, TaskSnapshot, TaskStatus
from kubeplane.provisioner.discovery import fetch_discovery_url
from kubeplane.runner.output import FileSink
from kubeplane.storage.kv import KVStore
from kubeplane.storage.repository import AccountRepository, KubeRepository, TaskRepository
from kubeplane.utils.token import generate_bootstrap_token, generate_certificate_key, generate_id
from kubeplane.workflows.cluster_state import ClusterState, JoinMaterial
from kubeplane.workflows.config import Config
from kubeplane.workflows.pipelines import (
    CLUSTER_PIPELINE,
    DELETE_CLUSTER_PIPELINE,
    DELETE_NODE_PIPELINE,
    PREPROVISION_PIPELINE,
    UPGRADE_PIPELINE,
    PipelineRegistry,
    master_pipeline,
    worker_pipeline,
)
from kubeplane.workflows.services import Services
from kubeplane.workflows.steps.provision import task_tag
from kubeplane.workflows.task import Task, describe_error

logger = logging.getLogger(__name__)

NODE_ROLES = (MASTER_ROLE, WORKER_ROLE)


@dataclass
class ClusterPlan:
    kube: Kube
    preprovision: Task
    masters: List[Task]
    workers: List[Task]
    cluster: Task

    @property
    def bootstrap(self) -> Task:
        return self.masters[0]

    def node_tasks(self) -> List[Task]:
        return self.masters + self.workers

    def task_ids(self) -> Dict[str, List[str]]:
        return {
            PREPROVISION_ROLE: [self.preprovision.id],
            MASTER_ROLE: [t.id for t in self.masters],
            WORKER_ROLE: [t.id for t in self.workers],
            CLUSTER_ROLE: [self.cluster.id],
        }


@dataclass
class NodeRecord:
    """A node of an existing cluster, as reconstructed from its provisioning task."""

    config: Config
    machine: Machine
    bootstrap: bool = False


class ClusterProvisioner:
    def __init__(
        self,
        services: Services,
        pipelines: PipelineRegistry,
        store: KVStore,
        settings: Optional[ControlPlaneSettings] = None,
    ) -> None:
        self.services = services
        self.pipelines = pipelines
        self.settings = settings or ControlPlaneSettings()
        self.store = store
        self.tasks = TaskRepository(store)
        self.kubes = KubeRepository(store)
        self.accounts = AccountRepository(store)
        self._live: Dict[str, Task] = {}
        self._background: Dict[str, asyncio.Task[None]] = {}
        self._kube_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # provisioning
    # ------------------------------------------------------------------
    async def provision(
        self, cluster_name: str, profile: Profile, account_name: str
    ) -> ProvisionResult:
        """
        Plan a cluster, persist its Kube record and every task (all `todo`),
        then start the provisioning flow in the background.

        Raises:
            NotFoundError: Unknown cloud account.
            InvalidRequestError: The account and profile disagree on the
                provider, or no adapter is registered for it.
        """
        account = await self.accounts.load(account_name)
        if account.provider != profile.provider:
            raise InvalidRequestError(
                f"account {account_name} is for {account.provider.value}, "
                f"profile wants {profile.provider.value}"
            )
        if not self.services.providers.supports(profile.provider):
            raise InvalidRequestError(f"Unsupported provider: {profile.provider.value}")

        plan = await self._plan(cluster_name, profile, account)
        await self.kubes.put(plan.kube)
        logger.info(
            "Cluster %s (%s): %d masters, %d workers",
            plan.kube.id,
            cluster_name,
            len(plan.masters),
            len(plan.workers),
        )
        self._spawn(f"provision:{plan.kube.id}", self._provision_flow(plan))
        return ProvisionResult(cluster_id=plan.kube.id, tasks=plan.task_ids())

    async def _plan(self, cluster_name: str, profile: Profile, account: CloudAccount) -> ClusterPlan:
        cluster_id = generate_id()

        ssh = profile.ssh
        if "host_key_policy" not in ssh.model_fields_set:
            ssh = ssh.model_copy(update={"host_key_policy": self.settings.host_key_policy})

        discovery_url = ""
        if self.settings.discovery_enabled:
            discovery_url = await fetch_discovery_url(
                self.settings.discovery_url_template, profile.master_count
            )

        base = Config(
            cluster_id=cluster_id,
            cluster_name=cluster_name,
            provider=profile.provider,
            region=profile.region,
            account_name=account.name,
            credentials=dict(account.credentials),
            profile=profile,
            ssh=ssh,
            dry_run=self.settings.dry_run,
            bootstrap_token=generate_bootstrap_token(),
            certificate_key=generate_certificate_key(),
            internal_dns=profile.cloud_spec.get("internal_dns", ""),
            external_dns=profile.cloud_spec.get("external_dns", ""),
        ).bind(self.services)

        preprovision = await self._create_task(PREPROVISION_PIPELINE, base.clone())

        masters: List[Task] = []
        for index, spec in enumerate(profile.master_profiles):
            config = base.clone(
                role=MachineRole.master,
                is_master=True,
                is_bootstrap=index == 0,
                node_index=index,
                node_spec=spec,
                node_name=f"{cluster_name}-master-{index}",
                discovery_url=discovery_url if index == 0 else "",
            )
            masters.append(await self._create_task(master_pipeline(profile.provider), config))

        workers: List[Task] = []
        for index, spec in enumerate(profile.node_profiles):
            config = base.clone(
                role=MachineRole.worker,
                node_index=index,
                node_spec=spec,
                node_name=f"{cluster_name}-worker-{index}",
            )
            workers.append(await self._create_task(worker_pipeline(profile.provider), config))

        cluster = await self._create_task(
            CLUSTER_PIPELINE,
            base.clone(role=MachineRole.master, is_master=True, is_bootstrap=True),
        )

        kube = Kube(
            id=cluster_id,
            name=cluster_name,
            provider=profile.provider,
            region=profile.region,
            version=profile.k8s_version,
            account_name=account.name,
            bootstrap_token=base.bootstrap_token,
            certificate_key=base.certificate_key,
            internal_dns=base.internal_dns,
            external_dns=base.external_dns,
            discovery_url=discovery_url,
            networking=profile.networking,
            ssh=ssh,
            cloud_spec=dict(profile.cloud_spec),
        )
        plan = ClusterPlan(kube, preprovision, masters, workers, cluster)
        kube.tasks = plan.task_ids()
        return plan

    async def _provision_flow(self, plan: ClusterPlan) -> None:
        kube_id = plan.kube.id
        cluster = plan.bootstrap.config.cluster
        error: Optional[str] = None
        try:
            # 1) provider scaffolding; its outputs feed every machine request
            await self._launch(plan.preprovision)
            outputs = dict(plan.preprovision.config.cloud_outputs)
            for task in plan.node_tasks() + [plan.cluster]:
                task.config.cloud_outputs.update(outputs)

            # 2) every node at once
            nodes = plan.node_tasks()
            results = await asyncio.gather(
                *(self._run_node(t) for t in nodes), return_exceptions=True
            )
            failed = [(t, r) for t, r in zip(nodes, results) if isinstance(r, BaseException)]
            # a failed node may have been restarted and finished in the meantime
            failed = [(t, r) for t, r in failed if not await self._succeeded(t.id)]
            if failed:
                task, exc = failed[0]
                error = f"task {task.id} ({task.type}) failed: {describe_error(exc)}"
            else:
                # 3) post-provision, against the bootstrap master
                self._prepare_cluster_task(plan.cluster, cluster, plan.bootstrap.config.node)
                await self._launch(plan.cluster)
        except asyncio.CancelledError:
            await asyncio.shield(self._finish_kube(kube_id, cluster, KubeState.failed, "cancelled"))
            raise
        except Exception as exc:
            error = describe_error(exc)

        if error is None:
            logger.info("Cluster %s is operational", kube_id)
            await self._finish_kube(kube_id, cluster, KubeState.operational, None)
        else:
            logger.warning("Cluster %s failed: %s", kube_id, error)
            await self._finish_kube(kube_id, cluster, KubeState.failed, error)

    async def _run_node(self, task: Task) -> None:
        """Run a node task; a failed bootstrap master releases the barrier waiters."""
        try:
            await self._launch(task)
        except asyncio.CancelledError:
            if task.config.is_bootstrap:
                task.config.cluster.abort_bootstrap("bootstrap task cancelled")
            raise
        except Exception as exc:
            if task.config.is_bootstrap:
                task.config.cluster.abort_bootstrap(describe_error(exc))
            raise

    @staticmethod
    def _prepare_cluster_task(
        task: Task, cluster: ClusterState, bootstrap_node: Optional[Machine]
    ) -> None:
        config = task.config
        material = cluster.join_material
        if material is not None:
            config.apply_join_material(material)
        config.node = bootstrap_node or config.bootstrap_master
        config.node_name = config.node.name if config.node else config.node_name
        config.runner_host = ""

    async def _finish_kube(
        self, kube_id: str, cluster: ClusterState, state: KubeState, error: Optional[str]
    ) -> None:
        async with self._kube_lock(kube_id):
            try:
                kube = await self.kubes.load(kube_id)
            except NotFoundError:
                return
            self._absorb(kube, cluster)
            kube.state = state
            kube.error = error
            await self.kubes.put(kube)

    @staticmethod
    def _absorb(kube: Kube, cluster: ClusterState) -> None:
        """Copy the live cluster state (machines, join material) into the record."""
        kube.masters.update(cluster.masters.as_dict())
        kube.workers.update(cluster.workers.as_dict())
        material = cluster.join_material
        if material is not None:
            kube.bootstrap_master_id = material.bootstrap_master.id
            kube.bootstrap_token = material.bootstrap_token
            kube.certificate_key = material.certificate_key
            kube.internal_dns = material.internal_dns
            kube.external_dns = material.external_dns
            kube.ca = material.ca.model_copy()

    # ------------------------------------------------------------------
    # task operations
    # ------------------------------------------------------------------
    async def get_task(self, task_id: str) -> TaskSnapshot:
        live = self._live.get(task_id)
        if live is not None:
            return live.snapshot()
        return await self.tasks.load(task_id)

    async def _succeeded(self, task_id: str) -> bool:
        return (await self.get_task(task_id)).status == TaskStatus.success

    async def task_logs(self, task_id: str) -> str:
        path = self._log_path(task_id)
        if not await aiofiles.os.path.exists(path):
            await self.tasks.load(task_id)
            raise NotFoundError(f"task {task_id} has no output yet")
        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as fh:
            return await fh.read()

    async def restart_task(self, task_id: str, *, skip_failed: bool = False) -> TaskSnapshot:
        """
        Resume a task from its first unfinished step, in the background.

        The snapshot is reloaded from the store, the config rehydrated
        (credentials from the account, cluster maps and join material from
        the cluster's other tasks) and the task started again.

        Raises:
            NotFoundError: Unknown task.
            TaskRunningError: The task is still executing.
        """
        live = self._live.get(task_id)
        if live is not None and live.running:
            raise TaskRunningError(f"task {task_id} is still running")

        snapshot = await self.tasks.load(task_id)
        account_name = str(snapshot.config.get("accountName", ""))
        credentials = await self._credentials(account_name)
        task = await Task.load(
            task_id,
            pipelines=self.pipelines,
            repo=self.tasks,
            services=self.services,
            credentials=credentials,
            max_seconds=self.settings.max_task_seconds,
        )

        kube = await self._find_kube(task.cluster_id)
        if kube is not None:
            await self._rehydrate(kube)
            if not task.config.cloud_outputs:
                task.config.cloud_outputs.update(await self._cloud_outputs(kube))
            if task.type == CLUSTER_PIPELINE:
                self._prepare_cluster_task(task, task.config.cluster, task.config.node)
        if task.config.is_bootstrap and task.type == master_pipeline(task.config.provider):
            task.config.cluster.reset_abort()

        current = self._live.get(task_id)
        if current is not None and current.running:
            raise TaskRunningError(f"task {task_id} is still running")
        waiter = self._launch(task, resume=True, skip_failed=skip_failed)
        logger.info("Restarting task %s (%s), skip_failed=%s", task_id, task.type, skip_failed)
        self._spawn(f"restart:{task.cluster_id}:{task_id}", self._after_restart(task, waiter))
        return task.snapshot()

    async def _after_restart(self, task: Task, waiter: Coroutine[Any, Any, None]) -> None:
        try:
            if task.config.is_bootstrap and task.type == master_pipeline(task.config.provider):
                await self._run_node_waiter(task, waiter)
            else:
                await waiter
        except Exception as exc:
            logger.warning("Restarted task %s failed: %s", task.id, describe_error(exc))
            return
        if task.type == UPGRADE_PIPELINE:
            await self._resume_upgrade(task.cluster_id)
        elif task.type in (PREPROVISION_PIPELINE, CLUSTER_PIPELINE) or task.type.endswith(
            ("-master", "-worker")
        ):
            await self._maybe_complete(task.cluster_id)

    @staticmethod
    async def _run_node_waiter(task: Task, waiter: Coroutine[Any, Any, None]) -> None:
        try:
            await waiter
        except Exception as exc:
            task.config.cluster.abort_bootstrap(describe_error(exc))
            raise

    async def _settle(self, name: str) -> None:
        """Wait for background flow `name`, if running, without cancelling it with us."""
        flow = self._background.get(name)
        if flow is not None and not flow.done():
            await asyncio.wait([flow])

    async def _maybe_complete(self, cluster_id: str) -> None:
        """
        After a successful restart of a failed cluster: once every node task
        has succeeded, finish the post-provision task and mark the cluster
        operational.

        A provision flow still running for the cluster gets to record its own
        result first; the cluster is then re-evaluated.
        """
        await self._settle(f"provision:{cluster_id}")
        kube = await self._find_kube(cluster_id)
        if kube is None or kube.state != KubeState.failed:
            return
        for task_id in kube.tasks.get(MASTER_ROLE, []) + kube.tasks.get(WORKER_ROLE, []):
            if not await self._succeeded(task_id):
                return

        cluster_ids = kube.tasks.get(CLUSTER_ROLE, [])
        if not cluster_ids:
            return
        cluster = await self._rehydrate(kube)
        post = await self._live_or_load(cluster_ids[0], kube.account_name)
        if post.running or self._taken(post):
            return
        if post.status != TaskStatus.success:
            self._prepare_cluster_task(post, cluster, post.config.node)
            try:
                await self._launch(post, resume=True)
            except Exception as exc:
                await self._finish_kube(
                    cluster_id, cluster, KubeState.failed, f"task {post.id} failed: {describe_error(exc)}"
                )
                return
        await self._finish_kube(cluster_id, cluster, KubeState.operational, None)

    async def _resume_upgrade(self, cluster_id: str) -> None:
        """
        After a successful restart of an upgrade task: run the remaining
        upgrade tasks in order, then record the new version and mark the
        cluster operational again.
        """
        await self._settle(f"upgrade:{cluster_id}")
        kube = await self._find_kube(cluster_id)
        if kube is None or kube.state != KubeState.failed:
            return
        version: Optional[str] = None
        for task_id in kube.tasks.get(UPGRADE_ROLE, []):
            task = await self._live_or_load(task_id, kube.account_name)
            version = task.config.upgrade_version or version
            if task.status == TaskStatus.success:
                continue
            if task.running or self._taken(task):
                return
            try:
                await self._launch(task, resume=True)
            except Exception as exc:
                await self._finish_upgrade(
                    cluster_id, None, f"task {task.id} ({task.type}) failed: {describe_error(exc)}"
                )
                return
        if version:
            await self._finish_upgrade(cluster_id, version, None)

    async def cancel_task(self, task_id: str) -> TaskSnapshot:
        """
        Raises:
            NotFoundError: Unknown task.
            ConflictError: The task is not running.
        """
        live = self._live.get(task_id)
        if live is None or not live.running:
            await self.tasks.load(task_id)
            raise ConflictError(f"task {task_id} is not running")
        live.cancel()
        logger.info("Cancelling task %s (%s)", task_id, live.type)
        return live.snapshot()

    # ------------------------------------------------------------------
    # kubes
    # ------------------------------------------------------------------
    async def get_kube(self, cluster_id: str) -> Kube:
        return await self.kubes.load(cluster_id)

    async def list_kubes(self) -> List[Kube]:
        return sorted(await self.kubes.list(), key=lambda k: k.created_at)

    async def delete_cluster(self, cluster_id: str) -> ProvisionResult:
        """
        Stop any provisioning work on the cluster and start tearing it down.

        Raises:
            NotFoundError: Unknown cluster.
        """
        kube = await self.kubes.load(cluster_id)
        flow = self._background.get(f"delete:{cluster_id}")
        if flow is not None and not flow.done():
            return ProvisionResult(
                cluster_id=cluster_id,
                tasks={
                    role: list(kube.tasks.get(role, []))
                    for role in (DELETE_NODE_ROLE, DELETE_CLUSTER_ROLE)
                },
            )

        await self._stop_cluster_work(cluster_id)
        kube = await self.kubes.load(cluster_id)
        cluster = await self._rehydrate(kube)
        nodes = await self._node_records(kube)
        base = await self._base_config(kube)
        skip_drain = kube.state != KubeState.operational

        stages: List[List[Task]] = [[], [], []]
        for node in nodes:
            config = base.clone(
                role=node.machine.role,
                is_master=node.config.is_master,
                is_bootstrap=node.bootstrap,
                node=None,
                node_name=node.machine.name,
                runner_host="",
                target_node=node.machine,
                skip_drain=skip_drain,
            )
            stage = 2 if node.bootstrap else (1 if node.config.is_master else 0)
            stages[stage].append(await self._create_task(DELETE_NODE_PIPELINE, config))
        teardown = await self._create_task(DELETE_CLUSTER_PIPELINE, base.clone(runner_host=""))

        async with self._kube_lock(cluster_id):
            kube = await self.kubes.load(cluster_id)
            self._absorb(kube, cluster)
            kube.tasks[DELETE_NODE_ROLE] = [t.id for stage in stages for t in stage]
            kube.tasks[DELETE_CLUSTER_ROLE] = [teardown.id]
            kube.state = KubeState.deleting
            kube.error = None
            await self.kubes.put(kube)

        logger.info("Deleting cluster %s: %d machines", cluster_id, len(nodes))
        self._spawn(f"delete:{cluster_id}", self._delete_flow(cluster_id, stages, teardown))
        return ProvisionResult(
            cluster_id=cluster_id,
            tasks={
                DELETE_NODE_ROLE: kube.tasks[DELETE_NODE_ROLE],
                DELETE_CLUSTER_ROLE: kube.tasks[DELETE_CLUSTER_ROLE],
            },
        )

    async def _delete_flow(self, cluster_id: str, stages: List[List[Task]], teardown: Task) -> None:
        cluster = self.services.clusters.ensure(cluster_id)
        error: Optional[str] = None
        try:
            for stage in stages:
                results = await asyncio.gather(
                    *(self._launch(t) for t in stage), return_exceptions=True
                )
                failed = [(t, r) for t, r in zip(stage, results) if isinstance(r, BaseException)]
                if failed:
                    task, exc = failed[0]
                    error = f"task {task.id} ({task.type}) failed: {describe_error(exc)}"
                    break
            if error is None:
                await self._launch(teardown)
        except asyncio.CancelledError:
            await asyncio.shield(self._finish_kube(cluster_id, cluster, KubeState.failed, "cancelled"))
            raise
        except Exception as exc:
            error = describe_error(exc)

        if error is not None:
            logger.warning("Deleting cluster %s failed: %s", cluster_id, error)
            await self._finish_kube(cluster_id, cluster, KubeState.failed, error)
            return
        async with self._kube_lock(cluster_id):
            await self.kubes.delete(cluster_id)
        self._kube_locks.pop(cluster_id, None)
        for task_id in [t.id for t in self._live.values() if t.cluster_id == cluster_id]:
            del self._live[task_id]
        self.services.clusters.drop(cluster_id)
        logger.info("Cluster %s deleted", cluster_id)

    async def upgrade_cluster(self, cluster_id: str, version: str) -> ProvisionResult:
        """
        Upgrade every node, one at a time: bootstrap master, other masters,
        workers.

        Raises:
            NotFoundError: Unknown cluster.
            ConflictError: The cluster is not operational or already upgrading.
        """
        kube = await self.kubes.load(cluster_id)
        if kube.state != KubeState.operational:
            raise ConflictError(f"cluster {cluster_id} is {kube.state.value}, not operational")
        flow = self._background.get(f"upgrade:{cluster_id}")
        if flow is not None and not flow.done():
            raise ConflictError(f"cluster {cluster_id} is already upgrading")

        await self._rehydrate(kube)
        nodes = await self._node_records(kube)
        nodes.sort(key=lambda n: (not n.bootstrap, not n.config.is_master))
        upgrades = [
            await self._create_task(
                UPGRADE_PIPELINE,
                node.config.clone(node=node.machine, upgrade_version=version, runner_host=""),
            )
            for node in nodes
        ]
        async with self._kube_lock(cluster_id):
            kube = await self.kubes.load(cluster_id)
            kube.tasks[UPGRADE_ROLE] = [t.id for t in upgrades]
            await self.kubes.put(kube)

        self._spawn(f"upgrade:{cluster_id}", self._upgrade_flow(cluster_id, version, upgrades))
        return ProvisionResult(cluster_id=cluster_id, tasks={UPGRADE_ROLE: kube.tasks[UPGRADE_ROLE]})

    async def _upgrade_flow(self, cluster_id: str, version: str, upgrades: List[Task]) -> None:
        error: Optional[str] = None
        for task in upgrades:
            try:
                await self._launch(task)
            except Exception as exc:
                error = f"task {task.id} ({task.type}) failed: {describe_error(exc)}"
                break
        await self._finish_upgrade(cluster_id, version, error)

    async def _finish_upgrade(
        self, cluster_id: str, version: Optional[str], error: Optional[str]
    ) -> None:
        async with self._kube_lock(cluster_id):
            kube = await self._find_kube(cluster_id)
            if kube is None:
                return
            if error is None:
                kube.version = version or kube.version
                kube.state = KubeState.operational
                kube.error = None
            else:
                kube.state = KubeState.failed
                kube.error = error
            await self.kubes.put(kube)

    # ------------------------------------------------------------------
    # rehydration
    # ------------------------------------------------------------------
    async def _find_kube(self, cluster_id: str) -> Optional[Kube]:
        try:
            return await self.kubes.load(cluster_id)
        except NotFoundError:
            return None

    async def _credentials(self, account_name: str) -> Dict[str, str]:
        account = await self.accounts.load(account_name)
        return dict(account.credentials)

    async def _load_config(self, task_id: str, credentials: Dict[str, str]) -> Optional[Config]:
        try:
            snapshot = await self.get_task(task_id)
        except NotFoundError:
            return None
        config = Config.model_validate(snapshot.config)
        config.task_id = snapshot.id
        config.credentials = dict(credentials)
        return config.bind(self.services)

    async def _rehydrate(self, kube: Kube) -> ClusterState:
        """
        Make sure the live cluster state knows what the store knows: machines
        recorded so far, and the bootstrap master's join material once its
        kubeadm step has succeeded.
        """
        profile_masters = len(kube.tasks.get(MASTER_ROLE, [])) or None
        profile_workers = len(kube.tasks.get(WORKER_ROLE, [])) or None
        cluster = self.services.clusters.ensure(kube.id, profile_masters, profile_workers)
        cluster.masters.seed(kube.masters.values())
        cluster.workers.seed(kube.workers.values())
        if cluster.bootstrapped:
            return cluster

        master_ids = kube.tasks.get(MASTER_ROLE, [])
        if not master_ids:
            return cluster
        try:
            snapshot = await self.get_task(master_ids[0])
        except NotFoundError:
            return cluster
        kubeadm = snapshot.status_of("kubeadm")
        if kubeadm is None or kubeadm.status != StepState.success:
            return cluster
        config = Config.model_validate(snapshot.config)
        master = config.bootstrap_master or config.node
        if master is None:
            return cluster
        cluster.publish_join_material(
            JoinMaterial(
                bootstrap_master=master,
                bootstrap_token=config.bootstrap_token,
                certificate_key=config.certificate_key,
                internal_dns=config.internal_dns,
                external_dns=config.external_dns,
                ca=config.ca,
                kubeconfig=config.kubeconfig,
            )
        )
        return cluster

    async def _cloud_outputs(self, kube: Kube) -> Dict[str, str]:
        for task_id in kube.tasks.get(PREPROVISION_ROLE, []):
            try:
                snapshot = await self.get_task(task_id)
            except NotFoundError:
                continue
            outputs = snapshot.config.get("cloudOutputs") or {}
            return {str(k): str(v) for k, v in outputs.items()}
        return {}

    async def _base_config(self, kube: Kube) -> Config:
        """Cluster-wide config for teardown, taken from the bootstrap master's task."""
        credentials = await self._credentials(kube.account_name)
        candidates = kube.tasks.get(MASTER_ROLE, []) + kube.tasks.get(PREPROVISION_ROLE, [])
        for task_id in candidates:
            config = await self._load_config(task_id, credentials)
            if config is None:
                continue
            material = config.cluster.join_material
            if material is not None:
                config.apply_join_material(material)
            if not config.cloud_outputs:
                config.cloud_outputs.update(await self._cloud_outputs(kube))
            return config
        raise NotFoundError(f"cluster {kube.id} has no task to derive a configuration from")

    async def _node_records(self, kube: Kube) -> List[NodeRecord]:
        """Every machine of the cluster, from the node tasks and the Kube record."""
        credentials = await self._credentials(kube.account_name)
        records: List[NodeRecord] = []
        seen: Dict[str, bool] = {}
        master_ids = kube.tasks.get(MASTER_ROLE, [])
        for role in NODE_ROLES:
            for task_id in kube.tasks.get(role, []):
                config = await self._load_config(task_id, credentials)
                if config is None:
                    continue
                machine = config.node or await self._lookup_machine(config)
                if machine is None or machine.id in seen:
                    continue
                seen[machine.id] = True
                records.append(
                    NodeRecord(
                        config=config,
                        machine=machine,
                        bootstrap=bool(master_ids) and task_id == master_ids[0],
                    )
                )
        return records

    @staticmethod
    async def _lookup_machine(config: Config) -> Optional[Machine]:
        """A machine created by the task but not yet recorded in its snapshot."""
        async with config.cloud() as cloud:
            return await cloud.find_machine(config.region, task_tag(config))

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    def _log_path(self, task_id: str) -> str:
        return os.path.join(self.settings.log_dir, f"{task_id}.log")

    async def _create_task(self, pipeline: str, config: Config) -> Task:
        task = await Task.create(
            self.pipelines.get(pipeline),
            config,
            self.tasks,
            max_seconds=self.settings.max_task_seconds,
        )
        self._live[task.id] = task
        return task

    def _launch(
        self, task: Task, *, resume: bool = False, skip_failed: bool = False
    ) -> Coroutine[Any, Any, None]:
        """
        Start `task` now and return a coroutine that waits for it and closes
        its log. Raises TaskRunningError immediately if it is already running.
        """
        sink = FileSink(self._log_path(task.id))
        runner = task.start(sink, resume=resume, skip_failed=skip_failed)
        self._live[task.id] = task
        runner.add_done_callback(lambda _: self._forget(task))

        async def _wait() -> None:
            try:
                await runner
            finally:
                await sink.close()

        return _wait()

    def _forget(self, task: Task) -> None:
        """Drop a finished task; the store holds its final snapshot."""
        if self._live.get(task.id) is task:
            del self._live[task.id]

    def _taken(self, task: Task) -> bool:
        """Another instance of this task is running."""
        current = self._live.get(task.id)
        return current is not None and current is not task and current.running

    async def _live_or_load(self, task_id: str, account_name: str) -> Task:
        task = self._live.get(task_id)
        if task is not None:
            return task
        return await Task.load(
            task_id,
            pipelines=self.pipelines,
            repo=self.tasks,
            services=self.services,
            credentials=await self._credentials(account_name),
            max_seconds=self.settings.max_task_seconds,
        )

    def _spawn(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        bg = asyncio.create_task(coro, name=f"kubeplane-{name}")
        self._background[name] = bg
        bg.add_done_callback(lambda t: self._reap(name, t))

    def _reap(self, name: str, bg: asyncio.Task[None]) -> None:
        if self._background.get(name) is bg:
            del self._background[name]
        if bg.cancelled():
            return
        exc = bg.exception()
        if exc is not None:
            logger.error("Background work %s failed: %s", name, exc, exc_info=exc)

    def _cluster_work(self, cluster_id: str) -> List[Tuple[str, asyncio.Task[None]]]:
        return [
            (name, bg)
            for name, bg in list(self._background.items())
            if name.split(":")[1] == cluster_id and not bg.done()
        ]

    async def _stop_cluster_work(self, cluster_id: str) -> None:
        work = self._cluster_work(cluster_id)
        for _, bg in work:
            bg.cancel()
        for task in list(self._live.values()):
            if task.cluster_id == cluster_id:
                task.cancel()
        if work:
            await asyncio.gather(*(bg for _, bg in work), return_exceptions=True)

    def _kube_lock(self, cluster_id: str) -> asyncio.Lock:
        return self._kube_locks.setdefault(cluster_id, asyncio.Lock())

    async def wait_for_cluster(self, cluster_id: str) -> None:
        """Wait for all background work on the cluster (provision, restarts, delete)."""
        while True:
            work = self._cluster_work(cluster_id)
            if not work:
                return
            await asyncio.gather(*(bg for _, bg in work), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every running task and background flow and wait for them."""
        pending = [bg for bg in self._background.values() if not bg.done()]
        for bg in pending:
            bg.cancel()
        for task in list(self._live.values()):
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Provisioner stopped (%d background flows cancelled)", len(pending))
