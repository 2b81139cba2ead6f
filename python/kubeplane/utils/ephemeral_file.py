"""
kubeplane/utils/ephemeral_file.py

Async context manager for short-lived secret material (SSH private keys,
known_hosts files) kept in a private directory, `/dev/shm` when available.

The caller gets a dict of filename -> path for the requested names; every
file and the directory itself are removed on exit, whatever happened inside
the block.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Iterable, Optional

import aiofiles


def _default_parent() -> Optional[str]:
    return "/dev/shm" if os.path.isdir("/dev/shm") else None


@asynccontextmanager
async def ephemeral_manager(
    names: Iterable[str],
    *,
    contents: Optional[Dict[str, str]] = None,
    prefix: str = "kubeplane-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Create a private directory holding one file per name in `names`.

    Args:
        names: Filenames to reserve inside the ephemeral directory.
        contents: Optional initial text per filename; those files are written
            with mode 0600 before the block runs.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory. Defaults to `/dev/shm`
            when present, otherwise the system temp dir.

    Yields:
        Dict[str, str]: filename -> absolute path.
    """
    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir or _default_parent(), prefix=prefix)
    os.chmod(ephemeral_dir, 0o700)

    try:
        paths = {name: os.path.join(ephemeral_dir, name) for name in names}
        for name, text in (contents or {}).items():
            path = paths[name]
            async with aiofiles.open(path, "w", encoding="utf-8") as fh:
                await fh.write(text)
            os.chmod(path, 0o600)
        yield paths
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
