"""
kubeplane/tests/test_templates.py
"""

from __future__ import annotations

import pytest

from kubeplane.errors import TemplateExecError, TemplateNotFound
from kubeplane.templates.defaults import DEFAULT_TEMPLATES
from kubeplane.templates.manager import TemplateManager, template_stem
from kubeplane.workflows.steps.node import DockerConfig, ManifestConfig


def manifest(**overrides: object) -> ManifestConfig:
    values = dict(
        is_master=True,
        is_bootstrap=True,
        token="abcdef.0123456789abcdef",
        node_ip="10.0.0.1",
        node_name="demo-master-0",
        cloud_provider="external",
        certificate_key="ff" * 32,
        k8s_version="1.18.0",
        cluster_name="demo",
        internal_dns="10.0.0.1",
        external_dns="203.0.113.1",
        rbac_enabled=True,
        discovery_url="",
        cidr="10.244.0.0/16",
        service_cidr="10.96.0.0/12",
    )
    values.update(overrides)
    return ManifestConfig(**values)


def test_template_stem() -> None:
    assert template_stem("/etc/tpl/kubeadm.sh.j2") == "kubeadm"
    assert template_stem("docker.sh") == "docker"


def test_defaults_cover_every_template() -> None:
    manager = TemplateManager.defaults()
    assert manager.names() == sorted(DEFAULT_TEMPLATES)
    for name in manager.names():
        manager.get(name)


def test_render_model_sub_config() -> None:
    script = TemplateManager.defaults().render("docker", DockerConfig(docker_version="19.03.12"))
    assert script.startswith("set -euo pipefail")
    assert "VERSION=19.03.12" in script


def test_manifest_init_and_join() -> None:
    manager = TemplateManager.defaults()

    init = manager.render("manifest", manifest())
    assert "kind: InitConfiguration" in init
    assert 'token: "abcdef.0123456789abcdef"' in init
    assert "podSubnet: 10.244.0.0/16" in init
    assert "authorization-mode: Node,RBAC" in init

    join = manager.render("manifest", manifest(is_bootstrap=False, is_master=False))
    assert "kind: JoinConfiguration" in join
    assert "apiServerEndpoint: 10.0.0.1:443" in join
    assert "controlPlane:" not in join

    master_join = manager.render("manifest", manifest(is_bootstrap=False))
    assert "controlPlane:" in master_join


def test_missing_variable_is_an_exec_error() -> None:
    with pytest.raises(TemplateExecError):
        TemplateManager.defaults().render("docker", {})


def test_unknown_template() -> None:
    with pytest.raises(TemplateNotFound):
        TemplateManager.defaults().render("nope", {})


async def test_template_dir_overrides_defaults(tmp_path) -> None:
    (tmp_path / "docker.sh.j2").write_text("echo docker {{ docker_version }}\n")
    (tmp_path / "extra.sh").write_text("echo {{ greeting }}\n")
    (tmp_path / ".hidden").write_text("{{ broken")

    manager = await TemplateManager.init(str(tmp_path))
    assert manager.render("docker", {"docker_version": "20.10"}) == "echo docker 20.10\n"
    assert manager.render("extra", {"greeting": "hi"}) == "echo hi\n"
    assert "kubeadm" in manager.names()


async def test_broken_custom_template_fails_at_init(tmp_path) -> None:
    (tmp_path / "kubeadm.sh.j2").write_text("{% if %}\n")
    with pytest.raises(TemplateExecError):
        await TemplateManager.init(str(tmp_path))
