"""Per-reminder locks serializing read-modify-write of a single reminder."""

from __future__ import annotations

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

logger = logging.getLogger(__name__)


class LockRegistry(ABC):
    """Hands out one mutual-exclusion lock per reminder id."""

    @abstractmethod
    def hold(self, reminder_id: int) -> Any:
        """Async context manager held while a reminder is re-read and mutated."""
        ...

    async def close(self) -> None:
        return None


class LocalLockRegistry(LockRegistry):
    """In-process locks; enough when a single process owns all mutations."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, reminder_id: int) -> asyncio.Lock:
        lock = self._locks.get(reminder_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[reminder_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, reminder_id: int) -> AsyncIterator[None]:
        lock = self._lock_for(reminder_id)
        async with lock:
            yield


class LockNotAcquired(RuntimeError):
    def __init__(self, reminder_id: int) -> None:
        self.reminder_id = reminder_id
        super().__init__(f"Could not acquire lock for reminder {reminder_id}")


class RedisLockRegistry(LockRegistry):
    """Locks shared between the daemon and Celery workers through Redis."""

    KEY_PREFIX = "nudge:reminder-lock:"

    def __init__(
        self,
        client: Any,
        timeout_s: float = 30.0,
        blocking_timeout_s: float | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout_s
        self._blocking_timeout = timeout_s if blocking_timeout_s is None else blocking_timeout_s

    @classmethod
    def from_url(cls, url: str, timeout_s: float = 30.0) -> RedisLockRegistry:
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(url), timeout_s=timeout_s)

    @asynccontextmanager
    async def hold(self, reminder_id: int) -> AsyncIterator[None]:
        lock = self._client.lock(
            f"{self.KEY_PREFIX}{reminder_id}",
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        if not await lock.acquire():
            raise LockNotAcquired(reminder_id)
        try:
            yield
        finally:
            try:
                await lock.release()
            except Exception as exc:
                # Expired under us; the work already ran, so only note it.
                logger.warning("Releasing lock for reminder %s failed: %s", reminder_id, exc)

    async def close(self) -> None:
        await self._client.aclose()
