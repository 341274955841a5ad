"""
Keyed asyncio locks.

Serializes work that shares a key (an order id) inside one process while
letting unrelated keys proceed concurrently. Cross-process exclusion is the
database's job (partial unique index on shipments.order_id).
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLockManager:
    """
    Manages per-key locks.

    Locks are dropped once nobody holds or waits on them so the map does not
    grow with every order ever shipped.
    """
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._lock = asyncio.Lock()  # Protects _locks dict creation

    @asynccontextmanager
    async def hold(self, key: str):
        """Hold the lock for `key`, creating it on first use."""
        async with self._lock:
            lock = self._locks.setdefault(key, asyncio.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            async with self._lock:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class OrderLockManager(KeyedLockManager):
    """Order-scoped critical section for shipment check-and-create."""
