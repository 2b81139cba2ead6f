"""
kubeplane/storage/kv.py

The four-operation key-value contract the control plane persists through,
plus in-memory and local-filesystem implementations.

Values are opaque bytes addressed by (prefix, key). Writes are last-write-wins
and atomic per key from a reader's point of view. A missing key raises
NotFoundError from `get`; `delete` of a missing key is a no-op.
"""

from __future__ import annotations

import asyncio
import os
import re
from abc import ABC, abstractmethod
from typing import Dict, List

import aiofiles
import aiofiles.os

from kubeplane.errors import NotFoundError

_SAFE_KEY = re.compile(r"^[A-Za-z0-9._-]+$")


def check_key(prefix: str, key: str) -> None:
    """Prefix and key must be single path segments."""
    for part in (prefix, key):
        if not _SAFE_KEY.match(part) or part in (".", ".."):
            raise ValueError(f"invalid storage path segment: {part!r}")


class KVStore(ABC):
    """Abstract key-value store."""

    @abstractmethod
    async def put(self, prefix: str, key: str, value: bytes) -> None:
        """Write or overwrite `prefix/key`."""

    @abstractmethod
    async def get(self, prefix: str, key: str) -> bytes:
        """Read `prefix/key`.

        Raises:
            NotFoundError: If nothing is stored under the key.
        """

    @abstractmethod
    async def get_all(self, prefix: str) -> List[bytes]:
        """All values under `prefix`, in key order."""

    @abstractmethod
    async def delete(self, prefix: str, key: str) -> None:
        """Remove `prefix/key` if present."""

    async def close(self) -> None:
        return None


class MemoryKVStore(KVStore):
    """Process-local store, used in tests and single-process dev setups."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, bytes]] = {}
        self._lock = asyncio.Lock()

    async def put(self, prefix: str, key: str, value: bytes) -> None:
        check_key(prefix, key)
        async with self._lock:
            self._data.setdefault(prefix, {})[key] = bytes(value)

    async def get(self, prefix: str, key: str) -> bytes:
        check_key(prefix, key)
        async with self._lock:
            try:
                return self._data[prefix][key]
            except KeyError:
                raise NotFoundError(f"{prefix}/{key} not found") from None

    async def get_all(self, prefix: str) -> List[bytes]:
        async with self._lock:
            bucket = self._data.get(prefix, {})
            return [bucket[k] for k in sorted(bucket)]

    async def delete(self, prefix: str, key: str) -> None:
        check_key(prefix, key)
        async with self._lock:
            self._data.get(prefix, {}).pop(key, None)

    def keys(self, prefix: str) -> List[str]:
        return sorted(self._data.get(prefix, {}))


class FileKVStore(KVStore):
    """
    One JSON file per key under `<root>/<prefix>/<key>.json`.

    Writes go to a temporary sibling first and are moved into place with
    os.replace, so readers see either the old or the new value.
    """

    def __init__(self, root: str) -> None:
        self.root = root

    def _path(self, prefix: str, key: str) -> str:
        check_key(prefix, key)
        return os.path.join(self.root, prefix, f"{key}.json")

    async def put(self, prefix: str, key: str, value: bytes) -> None:
        path = self._path(prefix, key)
        await aiofiles.os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp-{os.getpid()}-{id(value)}"
        async with aiofiles.open(tmp_path, "wb") as fh:
            await fh.write(value)
            await fh.flush()
        await aiofiles.os.replace(tmp_path, path)

    async def get(self, prefix: str, key: str) -> bytes:
        path = self._path(prefix, key)
        try:
            async with aiofiles.open(path, "rb") as fh:
                return await fh.read()
        except FileNotFoundError:
            raise NotFoundError(f"{prefix}/{key} not found") from None

    async def get_all(self, prefix: str) -> List[bytes]:
        directory = os.path.join(self.root, prefix)
        if not await aiofiles.os.path.isdir(directory):
            return []
        names = sorted(
            n for n in await aiofiles.os.listdir(directory) if n.endswith(".json")
        )
        values: List[bytes] = []
        for name in names:
            try:
                async with aiofiles.open(os.path.join(directory, name), "rb") as fh:
                    values.append(await fh.read())
            except FileNotFoundError:
                # Deleted between listdir and open.
                continue
        return values

    async def delete(self, prefix: str, key: str) -> None:
        try:
            await aiofiles.os.remove(self._path(prefix, key))
        except FileNotFoundError:
            pass
