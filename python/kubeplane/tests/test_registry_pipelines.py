"""
kubeplane/tests/test_registry_pipelines.py
"""

from __future__ import annotations

import pytest

from kubeplane.errors import PipelineDefinitionError, UnknownPipelineError, UnknownStepError
from kubeplane.models.providers import ProviderName
from kubeplane.workflows.pipelines import (
    NODE_STEPS,
    PipelineRegistry,
    master_pipeline,
    worker_pipeline,
)
from kubeplane.workflows.steps.base import StepRegistry
from kubeplane.workflows.steps.catalog import default_pipeline_registry, register_default_steps
from kubeplane.workflows.steps.ssh import SSHStep


def test_duplicate_step_is_rejected() -> None:
    registry = StepRegistry()
    registry.register(SSHStep())
    with pytest.raises(ValueError):
        registry.register(SSHStep())
    assert len(registry) == 1


def test_frozen_registry_refuses_new_steps() -> None:
    registry = register_default_steps(StepRegistry())
    registry.freeze()
    with pytest.raises(RuntimeError):
        registry.register(SSHStep())
    assert "kubeadm" in registry


def test_unknown_step_message() -> None:
    with pytest.raises(UnknownStepError, match="^Unknown step: x$"):
        StepRegistry().get("x")


def test_default_pipelines() -> None:
    pipelines = default_pipeline_registry([ProviderName.digitalocean, ProviderName.aws])
    assert pipelines.names() == [
        "aws-master",
        "aws-worker",
        "cluster",
        "delete-cluster",
        "delete-node",
        "digitalocean-master",
        "digitalocean-worker",
        "preprovision",
        "upgrade",
    ]
    master = pipelines.get(master_pipeline(ProviderName.digitalocean))
    assert master.step_names() == list(NODE_STEPS)
    assert pipelines.get(worker_pipeline(ProviderName.aws)).step_names()[0] == "create_machine"
    assert pipelines.get("cluster").step_names()[:2] == ["ssh", "cluster_check"]


def test_every_dependency_precedes_its_step() -> None:
    pipelines = default_pipeline_registry([ProviderName.digitalocean])
    for name in pipelines.names():
        seen = set()
        for step in pipelines.get(name).steps:
            assert set(step.depends) <= seen, (name, step.name)
            seen.add(step.name)


def test_dependency_order_is_enforced() -> None:
    pipelines = PipelineRegistry(register_default_steps(StepRegistry()))
    with pytest.raises(PipelineDefinitionError, match="'manifest'"):
        pipelines.register("bad", ["ssh", "docker", "kubelet", "manifest"])
    assert "bad" not in pipelines
    with pytest.raises(PipelineDefinitionError, match="'docker'"):
        pipelines.register("bad", ["ssh", "manifest", "kubelet", "docker"])


def test_kubelet_waits_for_runtime_and_manifest() -> None:
    pipelines = PipelineRegistry(register_default_steps(StepRegistry()))
    pipelines.register("minimal", ["ssh", "docker", "manifest", "kubelet"])
    assert pipelines.get("minimal").step_names()[-1] == "kubelet"


def test_empty_and_duplicate_pipelines() -> None:
    pipelines = PipelineRegistry(register_default_steps(StepRegistry()))
    with pytest.raises(PipelineDefinitionError):
        pipelines.register("empty", [])
    pipelines.register("just-ssh", ["ssh"])
    with pytest.raises(ValueError):
        pipelines.register("just-ssh", ["ssh"])


def test_pipeline_with_unknown_step() -> None:
    pipelines = PipelineRegistry(StepRegistry())
    with pytest.raises(UnknownStepError):
        pipelines.register("broken", ["nope"])


def test_unknown_pipeline() -> None:
    with pytest.raises(UnknownPipelineError, match="Unknown pipeline: gpu-master"):
        default_pipeline_registry([ProviderName.digitalocean]).get("gpu-master")
