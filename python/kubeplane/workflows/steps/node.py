"""
kubeplane/workflows/steps/node.py

Per-node preparation: keys, binaries, runtime, certificates and kubelet.
"""

from __future__ import annotations

import math
from typing import Optional, Tuple

from pydantic import BaseModel

from kubeplane.errors import KubeplaneError
from kubeplane.models.providers import ProviderName
from kubeplane.runner.output import OutputSink
from kubeplane.workflows.config import Config
from kubeplane.workflows.steps.base import TemplatedStep

PKI_DIR = "/etc/kubernetes/pki"
KUBEADM_CONFIG_PATH = "/etc/kubeplane/kubeadm.yaml"
CNI_VERSION = "0.8.6"

# kubelet --cloud-provider value per provider; empty means none
CLOUD_PROVIDER_FLAGS = {
    ProviderName.digitalocean: "external",
    ProviderName.aws: "aws",
}


def node_ip(config: Config) -> str:
    node = config.node
    if node is None:
        raise KubeplaneError(f"task {config.task_id}: node not provisioned")
    return node.private_ip or node.public_ip or ""


def api_endpoints(config: Config) -> Tuple[str, str]:
    """
    (internal, external) API server names. Planned names from the profile
    win; the bootstrap master's own addresses are the fallback.
    """
    internal = config.internal_dns
    external = config.external_dns
    master = config.bootstrap_master or (config.node if config.is_bootstrap else None)
    if master is not None:
        internal = internal or master.private_ip or master.public_ip or ""
        external = external or master.public_ip or master.private_ip or ""
    return internal, external


class AuthorizedKeysConfig(BaseModel):
    user: str
    public_key: str


class AuthorizedKeysStep(TemplatedStep):
    name = "authorized_keys"
    depends = ("ssh",)
    template = "authorized_keys"

    def applies(self, config: Config) -> bool:
        return bool(config.ssh.public_key)

    def sub_config(self, config: Config) -> AuthorizedKeysConfig:
        return AuthorizedKeysConfig(user=config.ssh.user, public_key=config.ssh.public_key)


class DownloadK8sBinaryConfig(BaseModel):
    k8s_version: str
    operating_system: str
    arch: str


class DownloadK8sBinaryStep(TemplatedStep):
    name = "download_k8s_binary"
    depends = ("ssh",)
    template = "download_k8s_binary"

    def sub_config(self, config: Config) -> DownloadK8sBinaryConfig:
        profile = config.profile
        return DownloadK8sBinaryConfig(
            k8s_version=profile.effective_kubeadm_version,
            operating_system=profile.operating_system,
            arch=profile.arch,
        )


class DockerConfig(BaseModel):
    docker_version: str


class DockerStep(TemplatedStep):
    name = "docker"
    depends = ("ssh",)
    template = "docker"

    def sub_config(self, config: Config) -> DockerConfig:
        return DockerConfig(docker_version=config.profile.docker_version)


class CNIConfig(BaseModel):
    cni_version: str = CNI_VERSION
    arch: str


class CNIStep(TemplatedStep):
    name = "cni"
    depends = ("ssh",)
    template = "cni"

    def sub_config(self, config: Config) -> CNIConfig:
        return CNIConfig(arch=config.profile.arch)


class CertificatesConfig(BaseModel):
    pki_dir: str = PKI_DIR
    ca_cert: str = ""
    ca_key: str = ""


class CertificatesStep(TemplatedStep):
    """
    Place the cluster CA on joining masters. The bootstrap master has no CA
    yet (kubeadm init creates it) and workers never need the key.
    """

    name = "certificates"
    depends = ("ssh",)
    template = "certificates"

    def sub_config(self, config: Config) -> CertificatesConfig:
        if config.is_master and not config.is_bootstrap and not config.ca.empty:
            return CertificatesConfig(ca_cert=config.ca.cert, ca_key=config.ca.key)
        return CertificatesConfig()


class ManifestConfig(BaseModel):
    config_path: str = KUBEADM_CONFIG_PATH
    is_master: bool
    is_bootstrap: bool
    token: str
    node_ip: str
    node_name: str
    cloud_provider: str
    certificate_key: str
    k8s_version: str
    cluster_name: str
    internal_dns: str
    external_dns: str
    rbac_enabled: bool
    discovery_url: str
    cidr: str
    service_cidr: str


class ManifestStep(TemplatedStep):
    """Write the kubeadm init/join configuration for this node."""

    name = "manifest"
    depends = ("ssh",)
    template = "manifest"

    def sub_config(self, config: Config) -> ManifestConfig:
        if not config.bootstrap_token:
            raise KubeplaneError(f"task {config.task_id}: no bootstrap token")
        internal, external = api_endpoints(config)
        profile = config.profile
        return ManifestConfig(
            is_master=config.is_master,
            is_bootstrap=config.is_bootstrap,
            token=config.bootstrap_token,
            node_ip=node_ip(config),
            node_name=config.node_name,
            cloud_provider=CLOUD_PROVIDER_FLAGS.get(config.provider, ""),
            certificate_key=config.certificate_key,
            k8s_version=profile.k8s_version,
            cluster_name=config.cluster_name,
            internal_dns=internal,
            external_dns=external,
            rbac_enabled=profile.rbac_enabled,
            discovery_url=config.discovery_url,
            cidr=profile.networking.cidr,
            service_cidr=profile.networking.service_cidr,
        )


class KubeletConfig(BaseModel):
    node_ip: str
    cloud_provider: str


class KubeletStep(TemplatedStep):
    name = "kubelet"
    depends = ("docker", "manifest")
    template = "kubelet"

    def sub_config(self, config: Config) -> KubeletConfig:
        return KubeletConfig(
            node_ip=node_ip(config),
            cloud_provider=CLOUD_PROVIDER_FLAGS.get(config.provider, ""),
        )


class PostStartConfig(BaseModel):
    is_master: bool
    attempts: int
    interval: int


class PostStartStep(TemplatedStep):
    """Wait until the node's kubelet (and, on masters, the API server) is up."""

    name = "post_start"
    depends = ("kubeadm",)
    template = "poststart"
    interval = 5

    def timeout(self, config: Config) -> Optional[float]:
        return config.profile.timeouts.post_provision

    def sub_config(self, config: Config) -> PostStartConfig:
        attempts = max(1, math.ceil(config.profile.timeouts.post_provision / self.interval))
        return PostStartConfig(
            is_master=config.is_master, attempts=attempts, interval=self.interval
        )

    async def run(self, out: OutputSink, config: Config) -> None:
        await super().run(out, config)
        if config.node is not None:
            nodes = config.cluster.masters if config.is_master else config.cluster.workers
            nodes.add(config.node)
