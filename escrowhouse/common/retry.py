"""Bounded exponential backoff for calls to external collaborators."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from escrowhouse.common.exceptions import TransientProviderError
from escrowhouse.common.logging import get_logger
from escrowhouse.config import settings

logger = get_logger("retry")

T = TypeVar("T")


def backoff_delay(attempt: int, base: float | None = None, cap: float | None = None) -> float:
    """Delay before retry number ``attempt`` (1-based), with full jitter."""
    base = settings.RETRY_BASE_DELAY_SECONDS if base is None else base
    cap = settings.RETRY_MAX_DELAY_SECONDS if cap is None else cap
    ceiling = min(cap, base * (2 ** (attempt - 1)))
    return random.uniform(0, ceiling) if ceiling > 0 else 0.0


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    label: str,
    before_retry: Callable[[int, TransientProviderError], Awaitable[None]] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` are used up.

    Only ``TransientProviderError`` is retried; anything else propagates on the
    first failure. ``before_retry`` runs ahead of every retry, e.g. to re-query
    provider state after a timeout instead of blindly resubmitting.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except TransientProviderError as e:
            if attempt >= attempts:
                logger.warning("%s failed after %d attempts: %s", label, attempt, e)
                raise
            delay = backoff_delay(attempt)
            logger.info("%s attempt %d failed (%s); retrying in %.2fs", label, attempt, e.code, delay)
            await asyncio.sleep(delay)
            attempt += 1
            if before_retry is not None:
                await before_retry(attempt, e)
