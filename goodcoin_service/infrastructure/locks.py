"""
Per-key asyncio locks for serializing ledger updates inside one process
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List
import asyncio
import logging

logger = logging.getLogger(__name__)


class KeyedLock:
    """Registry of asyncio locks keyed by string (account id, post id, ...)"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        return lock

    def _release_ref(self, key: str) -> None:
        remaining = self._waiters[key] - 1
        if remaining:
            self._waiters[key] = remaining
        else:
            del self._waiters[key]
            del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def acquire(self, *keys: str) -> AsyncIterator[None]:
        """
        Hold the locks of all given keys

        Keys are de-duplicated and taken in sorted order so that two callers
        locking overlapping sets cannot deadlock.
        """
        ordered = sorted(set(keys))
        locks = [self._lock_for(key) for key in ordered]
        held: List[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                held.append(lock)
            logger.debug(f"Acquired locks {ordered}")
            yield
        finally:
            for lock in reversed(held):
                lock.release()
            for key in ordered:
                self._release_ref(key)
