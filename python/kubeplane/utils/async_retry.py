"""
kubeplane/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure,
with optional exponential backoff and a filter on which exceptions are retried.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    backoff: float = 1.0,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. The first
    retry waits `delay` seconds and every further wait is multiplied by
    `backoff` (capped at `max_delay`). Only exceptions matching `retry_on` are
    retried; anything else propagates immediately. Cancellation is never
    retried.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds before the first retry. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
        backoff (float, optional):
            Multiplier applied to the delay after every failed attempt. 1.0 keeps
            a constant delay.
        max_delay (float, optional):
            Upper bound for a single wait.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger a retry.

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int, wait: float) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for function %r failed. Error: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if remaining > 1:
                        await asyncio.sleep(wait)
                        return await attempt(
                            remaining - 1,
                            attempt_number + 1,
                            min(wait * backoff, max_delay),
                        )

                    if noisy:
                        logger.error(
                            "All %d attempts failed for function %r",
                            retries,
                            func.__qualname__,
                        )
                    raise

            return await attempt(retries, 1, delay)

        return wrapper

    return decorator
