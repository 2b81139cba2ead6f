"""
kubeplane/workflows/steps/kubeadm.py

kubeadm init/join, and the bootstrap-only steps that follow it.
"""

from __future__ import annotations

import base64
import binascii
from typing import Dict

from pydantic import BaseModel

from kubeplane.errors import KubeplaneError, RemoteExitError
from kubeplane.models.kube import CAPair
from kubeplane.runner.base import Command
from kubeplane.runner.output import BufferSink, OutputSink
from kubeplane.workflows.cluster_state import JoinMaterial
from kubeplane.workflows.config import Config
from kubeplane.workflows.steps.base import TemplatedStep
from kubeplane.workflows.steps.node import KUBEADM_CONFIG_PATH, PKI_DIR, api_endpoints

SECTION_MARKER = "==== "
JOIN_SECTIONS = ("ca.crt", "ca.key", "admin.conf")


def parse_join_material(text: str) -> Dict[str, str]:
    """
    Decode the `==== <name>` / base64 blocks printed by the
    read_join_material script.

    Raises:
        KubeplaneError: A section is missing or not valid base64.
    """
    sections: Dict[str, str] = {}
    current = ""
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith(SECTION_MARKER):
            current = line[len(SECTION_MARKER):]
            sections[current] = ""
        elif current and line:
            sections[current] += line

    decoded: Dict[str, str] = {}
    for name in JOIN_SECTIONS:
        if not sections.get(name):
            raise KubeplaneError(f"join material: section {name} missing")
        try:
            decoded[name] = base64.b64decode(sections[name], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise KubeplaneError(f"join material: section {name} unreadable: {exc}") from exc
    return decoded


class KubeadmConfig(BaseModel):
    is_master: bool
    is_bootstrap: bool
    config_path: str = KUBEADM_CONFIG_PATH
    user: str


class KubeadmStep(TemplatedStep):
    """
    Initialize the control plane (bootstrap master) or join the cluster.

    On the bootstrap master the step then reads back the CA and admin
    kubeconfig and publishes them, with the token, certificate key and API
    endpoints, as the cluster's join material. That publication is what
    releases the other nodes waiting in their ssh step.
    """

    name = "kubeadm"
    depends = ("manifest", "kubelet", "docker")
    template = "kubeadm"

    def sub_config(self, config: Config) -> KubeadmConfig:
        return KubeadmConfig(
            is_master=config.is_master,
            is_bootstrap=config.is_bootstrap,
            user=config.ssh.user,
        )

    async def run(self, out: OutputSink, config: Config) -> None:
        await super().run(out, config)
        if config.is_master and config.is_bootstrap:
            await self.publish(out, config)

    async def read_material(self, config: Config) -> Dict[str, str]:
        script = config.templates.render("read_join_material", {"pki_dir": PKI_DIR})
        # private sink: key material must not land in the task log
        sink = BufferSink()
        try:
            await config.new_runner().run(Command(script=script, out=sink))
        except RemoteExitError as exc:
            raise KubeplaneError(
                f"could not read join material from {config.runner_host} (exit {exc.return_code})"
            ) from None
        return parse_join_material(sink.text())

    async def publish(self, out: OutputSink, config: Config) -> None:
        if config.node is None:
            raise KubeplaneError(f"task {config.task_id}: node not provisioned")

        if not config.dry_run:
            material = await self.read_material(config)
            config.ca = CAPair(cert=material["ca.crt"], key=material["ca.key"])
            config.kubeconfig = material["admin.conf"]

        config.bootstrap_master = config.node
        config.internal_dns, config.external_dns = api_endpoints(config)
        published = config.cluster.publish_join_material(
            JoinMaterial(
                bootstrap_master=config.node,
                bootstrap_token=config.bootstrap_token,
                certificate_key=config.certificate_key,
                internal_dns=config.internal_dns,
                external_dns=config.external_dns,
                ca=config.ca,
                kubeconfig=config.kubeconfig,
            )
        )
        if published:
            await out.line(f"published join material for {config.internal_dns}")
        else:
            await out.line("join material already published")


class BootstrapTokenConfig(BaseModel):
    token: str
    ttl: str = "0"


class BootstrapTokenStep(TemplatedStep):
    """Make sure the cluster's bootstrap token exists (bootstrap master only)."""

    name = "bootstrap_token"
    depends = ("kubeadm",)
    template = "bootstrap_token"

    def applies(self, config: Config) -> bool:
        return config.is_master and config.is_bootstrap

    def sub_config(self, config: Config) -> BootstrapTokenConfig:
        return BootstrapTokenConfig(token=config.bootstrap_token)


class NetworkConfig(BaseModel):
    network_provider: str
    version: str
    cidr: str


class NetworkStep(TemplatedStep):
    name = "network"
    depends = ("kubeadm",)
    template = "network"

    def applies(self, config: Config) -> bool:
        return config.is_master and config.is_bootstrap

    def sub_config(self, config: Config) -> NetworkConfig:
        networking = config.profile.networking
        return NetworkConfig(
            network_provider=networking.provider.value,
            version=networking.version,
            cidr=networking.cidr,
        )
