"""
kubeplane/storage/repository.py

Typed adapters over the KV store for the three record kinds the control
plane knows about:

  tasks/<taskId>      TaskSnapshot
  kubes/<clusterId>   Kube
  accounts/<name>     CloudAccount
"""

from __future__ import annotations

from typing import Generic, List, Type, TypeVar

from kubeplane.models.account import CloudAccount
from kubeplane.models.base import KubeplaneModel
from kubeplane.models.kube import Kube
from kubeplane.models.task import TaskSnapshot
from kubeplane.storage.kv import KVStore

TASKS_PREFIX = "tasks"
KUBES_PREFIX = "kubes"
ACCOUNTS_PREFIX = "accounts"

M = TypeVar("M", bound=KubeplaneModel)


class Repository(Generic[M]):
    prefix: str
    model: Type[M]

    def __init__(self, kv: KVStore) -> None:
        self.kv = kv

    async def save(self, key: str, record: M) -> None:
        await self.kv.put(self.prefix, key, record.to_json())

    async def load(self, key: str) -> M:
        """Raises NotFoundError if absent."""
        return self.model.from_json(await self.kv.get(self.prefix, key))

    async def list(self) -> List[M]:
        return [self.model.from_json(v) for v in await self.kv.get_all(self.prefix)]

    async def delete(self, key: str) -> None:
        await self.kv.delete(self.prefix, key)


class TaskRepository(Repository[TaskSnapshot]):
    prefix = TASKS_PREFIX
    model = TaskSnapshot

    async def put(self, snapshot: TaskSnapshot) -> None:
        await self.save(snapshot.id, snapshot)


class KubeRepository(Repository[Kube]):
    prefix = KUBES_PREFIX
    model = Kube

    async def put(self, kube: Kube) -> None:
        await self.save(kube.id, kube)


class AccountRepository(Repository[CloudAccount]):
    prefix = ACCOUNTS_PREFIX
    model = CloudAccount

    async def put(self, account: CloudAccount) -> None:
        await self.save(account.name, account)
