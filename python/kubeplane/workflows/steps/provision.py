"""
kubeplane/workflows/steps/provision.py

Steps that talk to the cloud provider: machines and cluster scaffolding.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from kubeplane.clouds.base import ClusterSpec, CloudProvider
from kubeplane.errors import (
    KubeplaneError,
    MachineNotFoundError,
    PermanentProviderError,
    ProvisionTimeout,
    TransientProviderError,
)
from kubeplane.models.machine import Machine, MachineRequest, MachineState
from kubeplane.runner.output import OutputSink
from kubeplane.utils.async_retry import async_retry
from kubeplane.workflows.config import Config
from kubeplane.workflows.steps.base import Step

logger = logging.getLogger(__name__)

PROVISION_GRACE = 60.0
CREATE_RETRIES = 6


def task_tag(config: Config) -> str:
    return f"kubeplane-task-{config.task_id}"


class CreateMachineStep(Step):
    """
    Create (or find) this task's machine and wait until it is active.

    The machine is tagged with the task id; a re-run first looks the tag up,
    so a restart after an unrecorded success does not create a duplicate.
    """

    name = "create_machine"
    description = "create the node's virtual machine"
    retry_delay = 2.0

    def timeout(self, config: Config) -> Optional[float]:
        return config.profile.timeouts.provision + PROVISION_GRACE

    def request(self, config: Config) -> MachineRequest:
        spec = config.node_spec
        if spec is None:
            raise KubeplaneError(f"task {config.task_id}: no node spec")
        extra: Dict[str, str] = dict(config.cloud_outputs)
        extra.update(spec.extra)
        return MachineRequest(
            name=config.node_name,
            role=config.role,
            region=config.region,
            size=spec.size,
            image=spec.image,
            volume_size=spec.volume_size,
            ssh_public_key=config.ssh.bootstrap_public_key,
            tags={
                task_tag(config): "",
                "kubeplane-cluster": config.cluster_id,
                "kubeplane-task-id": config.task_id,
            },
            extra=extra,
        )

    async def run(self, out: OutputSink, config: Config) -> None:
        tag = task_tag(config)
        async with config.cloud() as cloud:
            machine = await cloud.find_machine(config.region, tag)
            if machine is not None:
                await out.line(f"found machine {machine.id} tagged {tag}")
            else:
                machine = await self._create(cloud, self.request(config))
                await out.line(f"requested machine {machine.id} ({machine.name})")
            machine = await self._wait_active(cloud, config, machine, out)

        machine = machine.model_copy(
            update={"role": config.role, "task_id": config.task_id, "name": machine.name or config.node_name}
        )
        config.node = machine
        nodes = config.cluster.masters if config.is_master else config.cluster.workers
        nodes.add(machine)
        await out.line(
            f"machine {machine.id} active: public={machine.public_ip} private={machine.private_ip}"
        )

    async def _create(self, cloud: CloudProvider, request: MachineRequest) -> Machine:
        @async_retry(
            retries=CREATE_RETRIES,
            delay=self.retry_delay,
            backoff=2.0,
            max_delay=30.0,
            retry_on=(TransientProviderError,),
            noisy=True,
        )
        async def _attempt() -> Machine:
            return await cloud.create_machine(request)

        return await _attempt()

    async def _wait_active(
        self, cloud: CloudProvider, config: Config, machine: Machine, out: OutputSink
    ) -> Machine:
        timeouts = config.profile.timeouts
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeouts.provision
        current = machine
        while current.state != MachineState.active:
            if current.state in (MachineState.error, MachineState.deleted):
                raise PermanentProviderError(
                    f"machine {current.id} entered state {current.state.value}"
                )
            if loop.time() >= deadline:
                raise ProvisionTimeout(
                    f"machine {current.id} not active after {timeouts.provision:.0f}s "
                    f"(state {current.state.value})"
                )
            await asyncio.sleep(timeouts.provision_poll_interval)
            try:
                current = await cloud.get_machine(config.region, current.id)
            except TransientProviderError as exc:
                logger.info("Polling machine %s: %s", current.id, exc)
        return current

    async def rollback(self, out: OutputSink, config: Config) -> None:
        async with config.cloud() as cloud:
            machine = config.node or await cloud.find_machine(config.region, task_tag(config))
            if machine is None:
                return
            await cloud.delete_machine(config.region, machine.id)
            await out.line(f"deleted machine {machine.id}")


class DeleteMachineStep(Step):
    name = "delete_machine"
    description = "delete the target machine at the provider"

    def timeout(self, config: Config) -> Optional[float]:
        return config.profile.timeouts.provision + PROVISION_GRACE

    async def run(self, out: OutputSink, config: Config) -> None:
        target = config.target_node
        if target is None:
            raise KubeplaneError(f"task {config.task_id}: no target node")
        timeouts = config.profile.timeouts
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeouts.provision
        async with config.cloud() as cloud:
            await cloud.delete_machine(config.region, target.id)
            current = target
            while True:
                try:
                    current = await cloud.get_machine(config.region, target.id)
                except MachineNotFoundError:
                    break
                except TransientProviderError as exc:
                    logger.info("Polling machine %s: %s", target.id, exc)
                if current.state == MachineState.deleted:
                    break
                if loop.time() >= deadline:
                    raise ProvisionTimeout(
                        f"machine {target.id} not deleted after {timeouts.provision:.0f}s "
                        f"(state {current.state.value})"
                    )
                await asyncio.sleep(timeouts.provision_poll_interval)
        await out.line(f"machine {target.id} deleted")


def cluster_spec(config: Config) -> ClusterSpec:
    return ClusterSpec(
        cluster_id=config.cluster_id,
        name=config.cluster_name,
        region=config.region,
        cidr=config.profile.networking.cidr,
        ssh_public_key=config.ssh.bootstrap_public_key,
        cloud_spec=dict(config.profile.cloud_spec),
    )


class CreateClusterResourcesStep(Step):
    name = "create_cluster_resources"
    description = "provider scaffolding (keys, security groups, tags)"

    async def run(self, out: OutputSink, config: Config) -> None:
        async with config.cloud() as cloud:
            outputs = await cloud.create_cluster(cluster_spec(config))
        config.cloud_outputs.update(outputs)
        for key, value in sorted(outputs.items()):
            await out.line(f"{key}={value}")

    async def rollback(self, out: OutputSink, config: Config) -> None:
        async with config.cloud() as cloud:
            await cloud.delete_cluster(config.cluster_id, config.region, dict(config.cloud_outputs))


class DeleteClusterResourcesStep(Step):
    name = "delete_cluster_resources"
    description = "remove provider scaffolding"

    async def run(self, out: OutputSink, config: Config) -> None:
        async with config.cloud() as cloud:
            await cloud.delete_cluster(config.cluster_id, config.region, dict(config.cloud_outputs))
        await out.line(f"cluster {config.cluster_id} resources removed")
