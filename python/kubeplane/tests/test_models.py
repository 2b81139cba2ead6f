"""
kubeplane/tests/test_models.py
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from kubeplane.errors import InvalidRequestError
from kubeplane.models.account import CloudAccount
from kubeplane.models.profile import Networking, Profile
from kubeplane.models.providers import AWSCredentials, DigitalOceanCredentials, ProviderName
from kubeplane.models.requests import ProvisionRequest, UpgradeRequest
from kubeplane.models.settings import ControlPlaneSettings, StorageBackend
from kubeplane.models.ssh import HostKeyPolicy
from kubeplane.models.validator import validate_json, validate_type


@pytest.fixture
def profile_wire(make_profile) -> dict:
    return make_profile(workers=2).to_wire()


def test_profile_wire_round_trip(profile_wire: dict) -> None:
    assert "masterProfiles" in profile_wire
    assert profile_wire["ssh"]["hostKeyPolicy"] == "accept-new"

    profile = Profile.model_validate(profile_wire)
    assert profile.master_count == 1
    assert profile.worker_count == 2
    assert profile.effective_kubeadm_version == "1.18.0"


def test_profile_from_yaml(make_profile) -> None:
    profile = make_profile(masters=3)
    loaded = Profile.from_yaml(profile.to_yaml())
    assert loaded == profile


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("region", "  ", "region"),
        ("k8s_version", "1.18", "X.Y.Z"),
        ("kubeadm_version", "latest", "X.Y.Z"),
        ("master_profiles", [], "at least one master"),
    ],
)
def test_profile_rejects(profile_wire: dict, field: str, value, message: str) -> None:
    profile_wire[Profile.model_fields[field].alias] = value
    with pytest.raises(ValidationError, match=message):
        Profile.model_validate(profile_wire)


def test_networking_cidrs() -> None:
    assert Networking().cidr == "10.244.0.0/16"

    with pytest.raises(ValidationError, match="overlaps"):
        Networking(cidr="10.96.0.0/16", service_cidr="10.96.0.0/12")

    with pytest.raises(ValidationError, match="invalid CIDR"):
        Networking(cidr="10.244.0.1/16")


def test_ssh_policy_from_wire(profile_wire: dict) -> None:
    profile_wire["ssh"]["hostKeyPolicy"] = "insecure"
    assert Profile.model_validate(profile_wire).ssh.host_key_policy == HostKeyPolicy.insecure

    profile_wire["ssh"]["bootstrapPrivateKey"] = ""
    with pytest.raises(ValidationError, match="bootstrap_private_key"):
        Profile.model_validate(profile_wire)


@pytest.mark.parametrize("name", ["demo", "a", "prod-eu-1", "x" * 40])
def test_cluster_names_accepted(make_profile, name: str) -> None:
    request = ProvisionRequest(
        cluster_name=name, profile=make_profile(), cloud_account_name="do"
    )
    assert request.cluster_name == name


@pytest.mark.parametrize("name", ["", "Demo", "-demo", "demo-", "de_mo", "x" * 41])
def test_cluster_names_rejected(make_profile, name: str) -> None:
    with pytest.raises(ValidationError):
        ProvisionRequest(cluster_name=name, profile=make_profile(), cloud_account_name="do")


def test_upgrade_request() -> None:
    assert UpgradeRequest(version="1.19.2").version == "1.19.2"
    with pytest.raises(ValidationError):
        UpgradeRequest(version="v1.19.2")


def test_validate_helpers_raise_invalid_request(profile_wire: dict) -> None:
    assert validate_type({"version": "1.19.0"}, UpgradeRequest).version == "1.19.0"

    with pytest.raises(InvalidRequestError):
        validate_type({"version": "nope"}, UpgradeRequest)
    with pytest.raises(InvalidRequestError):
        validate_json(b"{", UpgradeRequest)


def test_account_credentials() -> None:
    do = CloudAccount(
        name="do", provider=ProviderName.digitalocean, credentials={"access_token": "tok"}
    )
    assert do.parsed_credentials() == DigitalOceanCredentials(access_token="tok")

    aws = CloudAccount(
        name="aws",
        provider=ProviderName.aws,
        credentials={"access_key_id": "AKIA", "secret_access_key": "s"},
    )
    creds = aws.parsed_credentials()
    assert isinstance(creds, AWSCredentials)
    assert creds.session_token is None

    with pytest.raises(ValidationError):
        CloudAccount(
            name="do", provider=ProviderName.digitalocean, credentials={"access_token": " "}
        ).parsed_credentials()


def test_settings_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("KUBEPLANE_STORAGE_BACKEND", "file")
    monkeypatch.setenv("KUBEPLANE_LISTEN_PORT", "9090")
    monkeypatch.setenv("KUBEPLANE_HOST_KEY_POLICY", "strict")
    monkeypatch.setenv("KUBEPLANE_DRY_RUN", "true")

    settings = ControlPlaneSettings()
    assert settings.storage_backend == StorageBackend.file
    assert settings.listen_port == 9090
    assert settings.host_key_policy == HostKeyPolicy.strict
    assert settings.dry_run is True


def test_settings_reject_bad_port(monkeypatch) -> None:
    monkeypatch.setenv("KUBEPLANE_LISTEN_PORT", "0")
    with pytest.raises(ValidationError):
        ControlPlaneSettings()
