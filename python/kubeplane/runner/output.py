"""
kubeplane/runner/output.py

Writer-shaped sinks for step output. Each task owns exactly one sink and is
its only producer.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Any, Optional

import aiofiles
import aiofiles.os


class OutputSink(ABC):
    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Append raw bytes."""

    async def line(self, text: str) -> None:
        await self.write((text + "\n").encode("utf-8"))

    async def flush(self) -> None:
        return None

    async def close(self) -> None:
        await self.flush()


class NullSink(OutputSink):
    async def write(self, data: bytes) -> None:
        return None


class BufferSink(OutputSink):
    """Keeps everything in memory."""

    def __init__(self) -> None:
        self._buf = bytearray()

    async def write(self, data: bytes) -> None:
        self._buf.extend(data)

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def text(self) -> str:
        return self._buf.decode("utf-8", errors="replace")


class FileSink(OutputSink):
    """
    Appends to a log file, buffering in memory until `flush_bytes` is reached
    so a chatty script does not turn into one write per chunk.
    """

    def __init__(self, path: str, flush_bytes: int = 64 * 1024) -> None:
        self.path = path
        self.flush_bytes = flush_bytes
        self._pending = bytearray()
        self._fh: Optional[Any] = None

    async def _open(self) -> Any:
        if self._fh is None:
            await aiofiles.os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            self._fh = await aiofiles.open(self.path, "ab")
        return self._fh

    async def write(self, data: bytes) -> None:
        self._pending.extend(data)
        if len(self._pending) >= self.flush_bytes:
            await self.flush()

    async def flush(self) -> None:
        if not self._pending:
            return
        fh = await self._open()
        chunk, self._pending = bytes(self._pending), bytearray()
        await fh.write(chunk)
        await fh.flush()

    async def close(self) -> None:
        await self.flush()
        if self._fh is not None:
            await self._fh.close()
            self._fh = None
