"""
kubeplane/tests/test_storage.py
"""

from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass
from typing import Dict, Iterator

import pytest

from kubeplane.errors import NotFoundError
from kubeplane.models.account import CloudAccount
from kubeplane.models.kube import Kube, KubeState
from kubeplane.models.providers import ProviderName
from kubeplane.models.settings import ControlPlaneSettings, StorageBackend
from kubeplane.models.task import StepStatus, TaskSnapshot
from kubeplane.storage.factory import build_store
from kubeplane.storage.kv import FileKVStore, KVStore, MemoryKVStore, check_key
from kubeplane.storage.minio import MinioKVStore
from kubeplane.storage.repository import AccountRepository, KubeRepository, TaskRepository


@dataclass
class FakeObject:
    object_name: str
    is_dir: bool = False


class FakeResponse(io.BytesIO):
    def release_conn(self) -> None:
        return None


class FakeMinio:
    """The handful of minio.Minio calls the store makes, over a dict."""

    def __init__(self) -> None:
        self.buckets: Dict[str, Dict[str, bytes]] = {}

    def bucket_exists(self, bucket_name: str) -> bool:
        return bucket_name in self.buckets

    def make_bucket(self, bucket_name: str) -> None:
        self.buckets[bucket_name] = {}

    def put_object(self, bucket_name, object_name, data, length, content_type) -> None:
        self.buckets[bucket_name][object_name] = data.read(length)

    def get_object(self, bucket_name: str, object_name: str) -> FakeResponse:
        return FakeResponse(self.buckets[bucket_name][object_name])

    def list_objects(self, bucket_name: str, prefix: str, recursive: bool) -> Iterator[FakeObject]:
        for name in self.buckets.get(bucket_name, {}):
            if name.startswith(prefix):
                yield FakeObject(name)

    def remove_object(self, bucket_name: str, object_name: str) -> None:
        self.buckets[bucket_name].pop(object_name, None)


@pytest.fixture(params=["memory", "file", "minio"])
def kv(request, tmp_path) -> KVStore:
    if request.param == "memory":
        return MemoryKVStore()
    if request.param == "file":
        return FileKVStore(str(tmp_path))
    return MinioKVStore(FakeMinio(), "kubeplane")


async def test_put_get_overwrite(kv: KVStore) -> None:
    await kv.put("tasks", "t1", b'{"v": 1}')
    assert await kv.get("tasks", "t1") == b'{"v": 1}'

    await kv.put("tasks", "t1", b'{"v": 2}')
    assert await kv.get("tasks", "t1") == b'{"v": 2}'


async def test_get_all_is_scoped_and_ordered(kv: KVStore) -> None:
    await kv.put("tasks", "b", b"2")
    await kv.put("tasks", "a", b"1")
    await kv.put("kubes", "a", b"k")

    assert await kv.get_all("tasks") == [b"1", b"2"]
    assert await kv.get_all("kubes") == [b"k"]


async def test_delete(kv: KVStore) -> None:
    await kv.put("kubes", "c1", b"x")
    await kv.delete("kubes", "c1")
    assert await kv.get_all("kubes") == []
    # deleting again is a no-op
    await kv.delete("kubes", "c1")


@pytest.mark.parametrize("factory", [MemoryKVStore, lambda: FileKVStore("/nonexistent-kv")])
async def test_missing_key(factory) -> None:
    kv = factory()
    with pytest.raises(NotFoundError, match="tasks/nope"):
        await kv.get("tasks", "nope")
    assert await kv.get_all("tasks") == []


@pytest.mark.parametrize("segment", ["", "..", "a/b", "a b"])
def test_check_key_rejects_path_tricks(segment: str) -> None:
    with pytest.raises(ValueError):
        check_key("tasks", segment)


async def test_file_store_layout(tmp_path) -> None:
    kv = FileKVStore(str(tmp_path))
    await asyncio.gather(*(kv.put("tasks", f"t{i}", b"{}") for i in range(5)))
    assert sorted(p.name for p in (tmp_path / "tasks").iterdir()) == [f"t{i}.json" for i in range(5)]


async def test_repositories_round_trip(kv: KVStore) -> None:
    tasks = TaskRepository(kv)
    snapshot = TaskSnapshot(
        id="t1",
        type="digitalocean-master",
        cluster_id="c1",
        step_statuses=[StepStatus(step="create_machine")],
        config={"clusterId": "c1"},
    )
    await tasks.put(snapshot)
    assert await tasks.load("t1") == snapshot

    kubes = KubeRepository(kv)
    kube = Kube(
        id="c1",
        name="demo",
        provider=ProviderName.digitalocean,
        region="nyc1",
        version="1.18.0",
        state=KubeState.operational,
        internal_dns="10.0.0.1",
    )
    await kubes.put(kube)
    loaded = await kubes.load("c1")
    assert loaded == kube
    assert b'"internalDNS":"10.0.0.1"' in kube.to_json()

    accounts = AccountRepository(kv)
    await accounts.put(
        CloudAccount(name="do", provider=ProviderName.digitalocean, credentials={"access_token": "x"})
    )
    assert [a.name for a in await accounts.list()] == ["do"]
    await accounts.delete("do")
    assert await accounts.list() == []


def test_build_store(tmp_path) -> None:
    memory = build_store(ControlPlaneSettings())
    assert isinstance(memory, MemoryKVStore)

    file_store = build_store(
        ControlPlaneSettings(storage_backend=StorageBackend.file, storage_dir=str(tmp_path))
    )
    assert isinstance(file_store, FileKVStore)
    assert file_store.root == str(tmp_path)

    minio_store = build_store(
        ControlPlaneSettings(storage_backend=StorageBackend.minio, minio_bucket="plane")
    )
    assert isinstance(minio_store, MinioKVStore)
    assert minio_store.bucket_name == "plane"
