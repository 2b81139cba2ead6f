"""
kubeplane/workflows/steps/maintenance.py

Node removal and upgrade steps. Drain, evacuate and uncordon are kubectl
operations and run on the bootstrap master, not on the node itself.
"""

from __future__ import annotations

from pydantic import BaseModel

from kubeplane.errors import KubeplaneError
from kubeplane.models.machine import Machine
from kubeplane.runner.base import Runner
from kubeplane.workflows.config import Config
from kubeplane.workflows.steps.base import TemplatedStep

DRAIN_TIMEOUT = 300


def target_name(config: Config) -> str:
    node = config.target_node or config.node
    if node is None:
        raise KubeplaneError(f"task {config.task_id}: no target node")
    return node.name


def is_control_node(config: Config, node: Machine | None) -> bool:
    master = config.bootstrap_master
    return node is not None and master is not None and master.id == node.id


class NodeNameConfig(BaseModel):
    node_name: str


class DrainConfig(NodeNameConfig):
    timeout: int = DRAIN_TIMEOUT


class _ControlPlaneStep(TemplatedStep):
    """kubectl against the cluster, from the bootstrap master."""

    def target(self, config: Config) -> Runner:
        return config.control_runner()

    def applies(self, config: Config) -> bool:
        node = config.target_node or config.node
        if config.skip_drain or config.bootstrap_master is None:
            return False
        return not is_control_node(config, node)


class DrainStep(_ControlPlaneStep):
    name = "drain"
    template = "drain"

    def sub_config(self, config: Config) -> DrainConfig:
        return DrainConfig(node_name=target_name(config))


class EvacuateStep(_ControlPlaneStep):
    """Remove the node object so the scheduler forgets it."""

    name = "evacuate"
    depends = ("drain",)
    template = "evacuate"

    def sub_config(self, config: Config) -> NodeNameConfig:
        return NodeNameConfig(node_name=target_name(config))


class UncordonStep(_ControlPlaneStep):
    name = "uncordon"
    depends = ("upgrade",)
    template = "uncordon"

    def sub_config(self, config: Config) -> NodeNameConfig:
        return NodeNameConfig(node_name=target_name(config))


class UpgradeConfig(BaseModel):
    k8s_version: str
    arch: str
    is_master: bool
    is_bootstrap: bool


class UpgradeStep(TemplatedStep):
    name = "upgrade"
    depends = ("ssh",)
    template = "upgrade"

    def sub_config(self, config: Config) -> UpgradeConfig:
        return UpgradeConfig(
            k8s_version=config.upgrade_version or config.profile.k8s_version,
            arch=config.profile.arch,
            is_master=config.is_master,
            is_bootstrap=config.is_bootstrap,
        )
