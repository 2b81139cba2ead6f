"""
kubeplane/workflows/steps/ssh.py
"""

from __future__ import annotations

from typing import Optional

from kubeplane.errors import KubeplaneError
from kubeplane.runner.output import OutputSink
from kubeplane.utils.net import wait_for_port
from kubeplane.workflows.config import Config
from kubeplane.workflows.steps.base import Step


class SSHStep(Step):
    """
    Make the node reachable for the remaining steps.

    1) Non-bootstrap nodes wait for the bootstrap master's join material
       (BootstrapTimeout past the profile's barrier deadline).
    2) Wait for the SSH port on the node's public address.
    3) Install the node address as this task's runner target.
    """

    name = "ssh"
    description = "wait for the bootstrap barrier and the SSH port"

    def timeout(self, config: Config) -> Optional[float]:
        timeouts = config.profile.timeouts
        if config.is_bootstrap:
            return timeouts.ssh_wait
        return timeouts.ssh_wait + timeouts.bootstrap_barrier

    async def run(self, out: OutputSink, config: Config) -> None:
        timeouts = config.profile.timeouts

        if not config.is_bootstrap:
            await out.line("waiting for the bootstrap master")
            material = await config.cluster.wait_bootstrap(timeouts.bootstrap_barrier)
            config.apply_join_material(material)
            await out.line(f"bootstrap master {material.bootstrap_master.id} ready")

        node = config.node
        if node is None or not node.public_ip:
            raise KubeplaneError(f"task {config.task_id}: node has no public address")

        if not config.dry_run:
            await wait_for_port(
                node.public_ip,
                config.ssh.port,
                interval=timeouts.ssh_poll_interval,
                timeout=timeouts.ssh_wait,
            )
        config.runner_host = node.public_ip
        await out.line(f"ssh target {config.ssh.user}@{node.public_ip}:{config.ssh.port}")
