"""
kubeplane/workflows/services.py

Process-wide collaborators handed to tasks and steps. Built once at startup
and read-only afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from kubeplane.clouds.registry import ProviderRegistry
from kubeplane.runner.base import RunnerFactory
from kubeplane.runner.dry import dry_runner_factory
from kubeplane.runner.ssh import ssh_runner_factory
from kubeplane.templates.manager import TemplateManager
from kubeplane.workflows.cluster_state import ClusterRegistry


@dataclass(frozen=True)
class Services:
    templates: TemplateManager
    providers: ProviderRegistry
    clusters: ClusterRegistry = field(default_factory=ClusterRegistry)
    runner_factory: RunnerFactory = ssh_runner_factory
    dry_runner_factory: RunnerFactory = dry_runner_factory
