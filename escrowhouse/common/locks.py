"""Per-entity locks.

Every command against a milestone graph (milestone, hold, dispute, mediation
case) runs while holding ``milestone:<id>``; hold releases additionally take
``hold:<id>``. Two backends:

- ``LocalLockManager``: ``asyncio.Lock`` per name, for a single process.
- ``RedisLockManager``: ``redis.asyncio`` locks with a TTL, shared by the API
  processes and the Celery workers.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from escrowhouse.common.exceptions import EntityBusy
from escrowhouse.common.logging import get_logger
from escrowhouse.config import settings

logger = get_logger("locks")


class LockManager(ABC):
    @abstractmethod
    def lock(self, name: str, timeout: float | None = None) -> AbstractAsyncContextManager[None]:
        """Async context manager holding ``name`` for the duration of the block.

        Raises ``EntityBusy`` when the lock cannot be acquired within
        ``timeout`` seconds.
        """
        ...


class LocalLockManager(LockManager):
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, name: str, timeout: float | None = None) -> AsyncIterator[None]:
        wait = settings.LOCK_WAIT_SECONDS if timeout is None else timeout
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._waiters[name] = self._waiters.get(name, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=wait)
            except asyncio.TimeoutError:
                raise EntityBusy(f"Timed out waiting for lock '{name}'") from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[name] -= 1
            if self._waiters[name] == 0:
                # asyncio locks bind to the loop that first awaited them.
                del self._waiters[name]
                self._locks.pop(name, None)

    def is_locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return bool(lock and lock.locked())


class RedisLockManager(LockManager):
    def __init__(self, redis_url: str, key_prefix: str = "escrowhouse:lock:") -> None:
        from redis import asyncio as aioredis

        self._redis = aioredis.Redis.from_url(redis_url)
        self._prefix = key_prefix

    @asynccontextmanager
    async def lock(self, name: str, timeout: float | None = None) -> AsyncIterator[None]:
        from redis.exceptions import LockError

        wait = settings.LOCK_WAIT_SECONDS if timeout is None else timeout
        redis_lock = self._redis.lock(
            f"{self._prefix}{name}",
            timeout=settings.LOCK_TTL_SECONDS,
            blocking_timeout=wait,
        )
        acquired = await redis_lock.acquire()
        if not acquired:
            raise EntityBusy(f"Timed out waiting for lock '{name}'")
        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except LockError:
                # TTL elapsed while held.
                logger.error("Lock '%s' expired before release", name)


LOCAL_ENVS = ("development", "test")


def get_lock_manager() -> LockManager:
    backend = settings.LOCK_BACKEND
    if backend == "auto":
        backend = "memory" if settings.APP_ENV in LOCAL_ENVS else "redis"
    if backend == "redis":
        return RedisLockManager(settings.REDIS_URL)
    if settings.APP_ENV not in LOCAL_ENVS:
        raise RuntimeError(
            f"LOCK_BACKEND={backend} only serializes within one process; "
            f"use LOCK_BACKEND=redis for APP_ENV={settings.APP_ENV}"
        )
    return LocalLockManager()
