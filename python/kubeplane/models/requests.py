"""
kubeplane/models/requests.py

Bodies accepted and returned by the HTTP surface.
"""

from __future__ import annotations

import re
from typing import Dict, List

from pydantic import Field, field_validator

from kubeplane.models.base import KubeplaneModel
from kubeplane.models.profile import VERSION_RE, Profile

CLUSTER_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,38}[a-z0-9])?$")

# Keys of ProvisionResult.tasks / Kube.tasks
PREPROVISION_ROLE = "preprovision"
MASTER_ROLE = "master"
WORKER_ROLE = "worker"
CLUSTER_ROLE = "cluster"
DELETE_NODE_ROLE = "delete-node"
DELETE_CLUSTER_ROLE = "delete-cluster"
UPGRADE_ROLE = "upgrade"


class ProvisionRequest(KubeplaneModel):
    cluster_name: str
    profile: Profile
    cloud_account_name: str

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, val: str) -> str:
        if not CLUSTER_NAME_RE.match(val):
            raise ValueError(
                f"cluster name {val!r} must be a DNS label (lowercase alphanumerics "
                "and '-', at most 40 characters)"
            )
        return val

    @field_validator("cloud_account_name")
    @classmethod
    def validate_account(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("cloudAccountName must be a non-empty string")
        return val


class UpgradeRequest(KubeplaneModel):
    version: str

    @field_validator("version")
    @classmethod
    def validate_version(cls, val: str) -> str:
        if not VERSION_RE.match(val):
            raise ValueError(f"version {val!r} must look like X.Y.Z")
        return val


class ProvisionResult(KubeplaneModel):
    """Task ids per role; the bootstrap master is the first `master` entry."""

    cluster_id: str
    tasks: Dict[str, List[str]] = Field(default_factory=dict)
