"""
kubeplane/workflows/pipelines.py

Named, ordered step sequences. A pipeline is resolved against the step
registry when it is registered, so an unknown step or a step listed before
one of its dependencies fails at startup rather than mid-provisioning.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

from kubeplane.errors import PipelineDefinitionError, UnknownPipelineError
from kubeplane.models.providers import ProviderName
from kubeplane.workflows.steps.base import Step, StepRegistry

CLUSTER_PIPELINE = "cluster"
PREPROVISION_PIPELINE = "preprovision"
DELETE_NODE_PIPELINE = "delete-node"
DELETE_CLUSTER_PIPELINE = "delete-cluster"
UPGRADE_PIPELINE = "upgrade"

NODE_STEPS: Tuple[str, ...] = (
    "create_machine",
    "ssh",
    "authorized_keys",
    "download_k8s_binary",
    "docker",
    "cni",
    "certificates",
    "manifest",
    "kubelet",
    "kubeadm",
    "bootstrap_token",
    "network",
    "post_start",
)

DEFAULT_PIPELINES: Dict[str, Tuple[str, ...]] = {
    CLUSTER_PIPELINE: (
        "ssh",
        "cluster_check",
        "cloud_controller",
        "storage_class",
        "tiller",
        "cluster_services",
        "prometheus",
    ),
    PREPROVISION_PIPELINE: ("create_cluster_resources",),
    DELETE_NODE_PIPELINE: ("drain", "evacuate", "delete_machine"),
    DELETE_CLUSTER_PIPELINE: ("delete_cluster_resources",),
    UPGRADE_PIPELINE: ("ssh", "drain", "upgrade", "uncordon"),
}


def master_pipeline(provider: ProviderName) -> str:
    return f"{provider.value}-master"


def worker_pipeline(provider: ProviderName) -> str:
    return f"{provider.value}-worker"


@dataclass(frozen=True)
class Pipeline:
    name: str
    steps: Tuple[Step, ...]

    def step_names(self) -> List[str]:
        return [s.name for s in self.steps]

    def __len__(self) -> int:
        return len(self.steps)


class PipelineRegistry:
    def __init__(self, steps: StepRegistry) -> None:
        self._step_registry = steps
        self._pipelines: Dict[str, Pipeline] = {}

    def register(self, name: str, step_names: Sequence[str]) -> Pipeline:
        """
        Resolve and validate a pipeline.

        Raises:
            UnknownStepError: A name is not in the step registry.
            PipelineDefinitionError: A step appears before one of its
                dependencies, or the pipeline is empty.
            ValueError: The pipeline name is taken.
        """
        if name in self._pipelines:
            raise ValueError(f"pipeline {name!r} already registered")
        if not step_names:
            raise PipelineDefinitionError(f"pipeline {name!r} has no steps")

        steps = tuple(self._step_registry.get(n) for n in step_names)
        seen: List[str] = []
        for step in steps:
            missing = [d for d in step.depends if d not in seen]
            if missing:
                raise PipelineDefinitionError(
                    f"pipeline {name!r}: step {step.name!r} needs {missing} earlier"
                )
            seen.append(step.name)

        pipeline = Pipeline(name=name, steps=steps)
        self._pipelines[name] = pipeline
        return pipeline

    def get(self, name: str) -> Pipeline:
        try:
            return self._pipelines[name]
        except KeyError:
            raise UnknownPipelineError(f"Unknown pipeline: {name}") from None

    def names(self) -> List[str]:
        return sorted(self._pipelines)

    def __contains__(self, name: object) -> bool:
        return name in self._pipelines


def register_default_pipelines(
    registry: PipelineRegistry, providers: Iterable[ProviderName]
) -> PipelineRegistry:
    for provider in providers:
        registry.register(master_pipeline(provider), NODE_STEPS)
        registry.register(worker_pipeline(provider), NODE_STEPS)
    for name, step_names in DEFAULT_PIPELINES.items():
        registry.register(name, step_names)
    return registry
