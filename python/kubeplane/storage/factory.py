"""
kubeplane/storage/factory.py
"""

from __future__ import annotations

from typing import Callable, Dict

from kubeplane.models.settings import ControlPlaneSettings, StorageBackend
from kubeplane.storage.kv import FileKVStore, KVStore, MemoryKVStore
from kubeplane.storage.minio import MinioKVStore

BACKEND_MAP: Dict[StorageBackend, Callable[[ControlPlaneSettings], KVStore]] = {
    StorageBackend.memory: lambda _s: MemoryKVStore(),
    StorageBackend.file: lambda s: FileKVStore(s.storage_dir),
    StorageBackend.minio: MinioKVStore.from_settings,
}


def build_store(settings: ControlPlaneSettings) -> KVStore:
    return BACKEND_MAP[settings.storage_backend](settings)
