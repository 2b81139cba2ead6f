"""
kubeplane/workflows/steps/catalog.py

The built-in step catalog.
"""

from __future__ import annotations

from typing import Iterable, List

from kubeplane.models.providers import ProviderName
from kubeplane.workflows.pipelines import PipelineRegistry, register_default_pipelines
from kubeplane.workflows.steps.base import Step, StepRegistry
from kubeplane.workflows.steps.cluster import (
    CloudControllerStep,
    ClusterCheckStep,
    ClusterServicesStep,
    PrometheusStep,
    StorageClassStep,
    TillerStep,
)
from kubeplane.workflows.steps.kubeadm import BootstrapTokenStep, KubeadmStep, NetworkStep
from kubeplane.workflows.steps.maintenance import DrainStep, EvacuateStep, UncordonStep, UpgradeStep
from kubeplane.workflows.steps.node import (
    AuthorizedKeysStep,
    CertificatesStep,
    CNIStep,
    DockerStep,
    DownloadK8sBinaryStep,
    KubeletStep,
    ManifestStep,
    PostStartStep,
)
from kubeplane.workflows.steps.provision import (
    CreateClusterResourcesStep,
    CreateMachineStep,
    DeleteClusterResourcesStep,
    DeleteMachineStep,
)
from kubeplane.workflows.steps.ssh import SSHStep


def default_steps() -> List[Step]:
    return [
        CreateMachineStep(),
        SSHStep(),
        AuthorizedKeysStep(),
        DownloadK8sBinaryStep(),
        DockerStep(),
        CNIStep(),
        CertificatesStep(),
        ManifestStep(),
        KubeletStep(),
        KubeadmStep(),
        BootstrapTokenStep(),
        NetworkStep(),
        PostStartStep(),
        ClusterCheckStep(),
        CloudControllerStep(),
        StorageClassStep(),
        TillerStep(),
        ClusterServicesStep(),
        PrometheusStep(),
        DrainStep(),
        EvacuateStep(),
        DeleteMachineStep(),
        UpgradeStep(),
        UncordonStep(),
        CreateClusterResourcesStep(),
        DeleteClusterResourcesStep(),
    ]


def register_default_steps(registry: StepRegistry) -> StepRegistry:
    for step in default_steps():
        registry.register(step)
    return registry


def default_pipeline_registry(providers: Iterable[ProviderName]) -> PipelineRegistry:
    """Frozen step registry plus every built-in pipeline for `providers`."""
    steps = register_default_steps(StepRegistry())
    steps.freeze()
    return register_default_pipelines(PipelineRegistry(steps), providers)
