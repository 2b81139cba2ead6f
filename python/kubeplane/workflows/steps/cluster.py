"""
kubeplane/workflows/steps/cluster.py

Post-provision steps. They run once per cluster, on the bootstrap master,
after every node task has finished.
"""

from __future__ import annotations

import math
from typing import Optional

from pydantic import BaseModel

from kubeplane.errors import ClusterCheckTimeout, RemoteExitError
from kubeplane.models.providers import ProviderName
from kubeplane.runner.output import OutputSink
from kubeplane.workflows.config import Config
from kubeplane.workflows.steps.base import TemplatedStep

CHECK_GRACE = 60.0
CCM_VERSION = "v0.1.27"
CSI_VERSION = "v1.3.0"
METRICS_SERVER_VERSION = "v0.3.7"
DASHBOARD_VERSION = "v2.0.0"
PROMETHEUS_NAMESPACE = "monitoring"


class ClusterCheckConfig(BaseModel):
    expected_masters: int
    attempts: int
    interval: int


class ClusterCheckStep(TemplatedStep):
    """Poll `kubectl get nodes` until every master reports Ready."""

    name = "cluster_check"
    depends = ("ssh",)
    template = "cluster_check"

    def timeout(self, config: Config) -> Optional[float]:
        return config.profile.timeouts.cluster_check + CHECK_GRACE

    def sub_config(self, config: Config) -> ClusterCheckConfig:
        timeouts = config.profile.timeouts
        interval = max(1, int(timeouts.cluster_check_interval))
        return ClusterCheckConfig(
            expected_masters=config.profile.master_count,
            attempts=max(1, math.ceil(timeouts.cluster_check / interval)),
            interval=interval,
        )

    async def run(self, out: OutputSink, config: Config) -> None:
        try:
            await super().run(out, config)
        except RemoteExitError as exc:
            raise ClusterCheckTimeout(
                f"{config.profile.master_count} masters not Ready within "
                f"{config.profile.timeouts.cluster_check:.0f}s"
            ) from exc


class CloudControllerConfig(BaseModel):
    provider: str
    access_token: str = ""
    ccm_version: str = CCM_VERSION


class CloudControllerStep(TemplatedStep):
    name = "cloud_controller"
    depends = ("cluster_check",)
    template = "cloud_controller"

    def sub_config(self, config: Config) -> CloudControllerConfig:
        token = ""
        if config.provider == ProviderName.digitalocean:
            creds = config.account().parsed_credentials()
            token = getattr(creds, "access_token", "")
        return CloudControllerConfig(provider=config.provider.value, access_token=token)


class StorageClassConfig(BaseModel):
    provider: str
    csi_version: str = CSI_VERSION


class StorageClassStep(TemplatedStep):
    name = "storage_class"
    depends = ("cluster_check",)
    template = "storageclass"

    def sub_config(self, config: Config) -> StorageClassConfig:
        return StorageClassConfig(provider=config.provider.value)


class TillerConfig(BaseModel):
    helm_version: str
    arch: str
    rbac_enabled: bool


class TillerStep(TemplatedStep):
    name = "tiller"
    depends = ("cluster_check",)
    template = "tiller"

    def sub_config(self, config: Config) -> TillerConfig:
        profile = config.profile
        return TillerConfig(
            helm_version=profile.helm_version,
            arch=profile.arch,
            rbac_enabled=profile.rbac_enabled,
        )


class ClusterServicesConfig(BaseModel):
    metrics_server_version: str = METRICS_SERVER_VERSION
    dashboard_version: str = DASHBOARD_VERSION


class ClusterServicesStep(TemplatedStep):
    name = "cluster_services"
    depends = ("cluster_check",)
    template = "clusterservices"

    def sub_config(self, config: Config) -> ClusterServicesConfig:
        return ClusterServicesConfig()


class PrometheusConfig(BaseModel):
    namespace: str = PROMETHEUS_NAMESPACE
    helm_version: str
    rbac_enabled: bool


class PrometheusStep(TemplatedStep):
    name = "prometheus"
    depends = ("tiller",)
    template = "prometheus"

    def sub_config(self, config: Config) -> PrometheusConfig:
        return PrometheusConfig(
            helm_version=config.profile.helm_version,
            rbac_enabled=config.profile.rbac_enabled,
        )
