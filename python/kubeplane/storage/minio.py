"""
kubeplane/storage/minio.py

KV store backed by a MinIO (S3-compatible) bucket: object `<prefix>/<key>`.

The minio client is blocking, so every call is pushed to a worker thread
with asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import io
from typing import List, Optional

from minio import Minio
from minio.error import S3Error

from kubeplane.errors import NotFoundError
from kubeplane.models.settings import ControlPlaneSettings
from kubeplane.storage.kv import KVStore, check_key

_MISSING_CODES = ("NoSuchKey", "NoSuchObject", "NoSuchBucket")


def _is_missing(ex: S3Error) -> bool:
    return ex.code in _MISSING_CODES


class MinioKVStore(KVStore):
    def __init__(self, client: Minio, bucket_name: str) -> None:
        self.client = client
        self.bucket_name = bucket_name
        self._bucket_checked = False

    @classmethod
    def from_settings(cls, settings: ControlPlaneSettings) -> MinioKVStore:
        client = Minio(
            settings.minio_url,
            access_key=settings.minio_access_key or None,
            secret_key=settings.minio_secret_key or None,
            secure=settings.minio_secure,
        )
        return cls(client, settings.minio_bucket)

    async def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return

        def do_ensure() -> None:
            if not self.client.bucket_exists(self.bucket_name):
                self.client.make_bucket(self.bucket_name)

        await asyncio.to_thread(do_ensure)
        self._bucket_checked = True

    async def put(self, prefix: str, key: str, value: bytes) -> None:
        check_key(prefix, key)
        await self._ensure_bucket()
        data = bytes(value)

        def do_put_object() -> None:
            self.client.put_object(
                bucket_name=self.bucket_name,
                object_name=f"{prefix}/{key}",
                data=io.BytesIO(data),
                length=len(data),
                content_type="application/json",
            )

        await asyncio.to_thread(do_put_object)

    async def get(self, prefix: str, key: str) -> bytes:
        check_key(prefix, key)
        value = await asyncio.to_thread(self._read_object, f"{prefix}/{key}")
        if value is None:
            raise NotFoundError(f"{prefix}/{key} not found")
        return value

    async def get_all(self, prefix: str) -> List[bytes]:
        def do_list() -> List[str]:
            try:
                return sorted(
                    obj.object_name
                    for obj in self.client.list_objects(
                        self.bucket_name, prefix=f"{prefix}/", recursive=False
                    )
                    if obj.object_name and not obj.is_dir
                )
            except S3Error as ex:
                if _is_missing(ex):
                    return []
                raise

        names = await asyncio.to_thread(do_list)
        values: List[bytes] = []
        for name in names:
            value = await asyncio.to_thread(self._read_object, name)
            if value is not None:
                values.append(value)
        return values

    async def delete(self, prefix: str, key: str) -> None:
        check_key(prefix, key)

        def do_remove() -> None:
            try:
                self.client.remove_object(self.bucket_name, f"{prefix}/{key}")
            except S3Error as ex:
                if not _is_missing(ex):
                    raise

        await asyncio.to_thread(do_remove)

    def _read_object(self, object_name: str) -> Optional[bytes]:
        response = None
        try:
            response = self.client.get_object(self.bucket_name, object_name)
            return response.read()
        except S3Error as ex:
            if _is_missing(ex):
                return None
            raise
        finally:
            if response is not None:
                response.close()
                response.release_conn()
