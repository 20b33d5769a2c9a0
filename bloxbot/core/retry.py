"""Retry with exponential backoff for startup/transport failures."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn`` until it succeeds, sleeping base_delay * 2**(n-1) between tries.

    Cancellation is never retried. The last error is re-raised once the
    attempts are exhausted.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= max_attempts:
                logger.warning(
                    "%s failed after %d attempts: %s", label, attempt, exc,
                )
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.debug(
                "%s attempt %d/%d failed: %s, retrying in %.1fs",
                label, attempt, max_attempts, exc, delay,
            )
            await sleep(delay)
            attempt += 1
