"""
kubeplane/provisioner/discovery.py

Optional etcd discovery URL, fetched once per cluster at plan time.
"""

from __future__ import annotations

import logging
from typing import Optional

import aiohttp

from kubeplane.errors import TransientProviderError
from kubeplane.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


@async_retry(retries=3, delay=1.0, backoff=2.0, retry_on=(TransientProviderError,))
async def fetch_discovery_url(
    url_template: str,
    size: int,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: float = 10.0,
) -> str:
    """
    GET `url_template.format(size=size)` and return the body (the new
    discovery URL).

    Raises:
        TransientProviderError: The endpoint is unreachable, answered with a
            non-200 status or an empty body.
    """
    url = url_template.format(size=size)
    owned = session is None
    client = session or aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout))
    try:
        async with client.get(url) as resp:
            body = (await resp.text()).strip()
            if resp.status != 200 or not body:
                raise TransientProviderError(
                    f"discovery endpoint {url} answered {resp.status}", status=resp.status
                )
    except aiohttp.ClientError as exc:
        raise TransientProviderError(f"discovery endpoint {url}: {exc}") from exc
    finally:
        if owned:
            await client.close()
    logger.info("Obtained discovery URL for %d members", size)
    return body
