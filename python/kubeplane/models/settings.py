"""
kubeplane/models/settings.py

Process-wide settings, read from KUBEPLANE_* environment variables.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kubeplane.models.ssh import HostKeyPolicy


class StorageBackend(str, Enum):
    memory = "memory"
    file = "file"
    minio = "minio"


class ControlPlaneSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KUBEPLANE_")

    listen_host: str = "0.0.0.0"
    listen_port: int = Field(default=8080, ge=1, le=65535)

    storage_backend: StorageBackend = StorageBackend.memory
    storage_dir: str = "/var/lib/kubeplane"
    minio_url: str = "minio.minio.svc.cluster.local:9000"
    minio_access_key: str = ""
    minio_secret_key: str = ""
    minio_bucket: str = "kubeplane"
    minio_secure: bool = False

    template_dir: Optional[str] = None
    log_dir: str = "/tmp/kubeplane"
    log_level: str = "INFO"

    max_task_seconds: float = Field(default=7200.0, gt=0)
    host_key_policy: HostKeyPolicy = HostKeyPolicy.accept_new
    discovery_enabled: bool = False
    discovery_url_template: str = "https://discovery.etcd.io/new?size={size}"
    dry_run: bool = False
