"""
Per-key serialization

Every mutation of one negotiation runs while holding that negotiation's
lock, so webhook processing and the follow-up sweep never interleave.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLocks:
    """asyncio locks created on demand, one per key"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Nobody else is queued on this key
                del self._waiters[key]
                del self._locks[key]

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
