"""
Keyed asyncio locks.

Aggregate rebuilds delete and re-insert a user's whole aggregate partition, so
two rebuilds for the same user must never interleave. Rebuilds for different
users share nothing and run concurrently.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

import structlog

logger = structlog.get_logger()


class KeyedLock:
    """One asyncio.Lock per key, created on demand and dropped once idle."""

    def __init__(self):
        self._locks: Dict[Any, asyncio.Lock] = {}
        self._waiters: Dict[Any, int] = {}

    @asynccontextmanager
    async def hold(self, key: Any) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        if lock.locked():
            logger.info("keyed_lock_waiting", key=str(key))
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: Any) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


# Process-wide registry for aggregate rebuilds; services accept an override.
aggregation_locks = KeyedLock()
