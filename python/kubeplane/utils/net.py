"""
kubeplane/utils/net.py

Waiting for a TCP port to accept connections.
"""

from __future__ import annotations

import asyncio
import logging

from kubeplane.errors import SSHWaitTimeout

logger = logging.getLogger(__name__)


async def port_open(host: str, port: int, connect_timeout: float = 5.0) -> bool:
    """Single connection attempt. True if the port accepted the connection."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=connect_timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_for_port(
    host: str,
    port: int = 22,
    *,
    interval: float = 5.0,
    timeout: float = 600.0,
) -> None:
    """
    Poll `host:port` until it accepts a TCP connection.

    Args:
        host: Address to dial.
        port: TCP port. Defaults to 22.
        interval: Seconds between attempts.
        timeout: Overall deadline in seconds.

    Raises:
        SSHWaitTimeout: If the port is still closed after `timeout` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempt = 0
    while True:
        attempt += 1
        if await port_open(host, port, connect_timeout=min(interval, 5.0) or 5.0):
            logger.debug("%s:%d open after %d attempt(s)", host, port, attempt)
            return
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise SSHWaitTimeout(
                f"{host}:{port} did not accept connections within {timeout:.0f}s"
            )
        await asyncio.sleep(min(interval, remaining))
