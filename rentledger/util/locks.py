import asyncio
import weakref
from contextlib import asynccontextmanager


class OrderLocks:
    """Per-order-id mutexes so only one mutation per order is in flight.

    `hold()` takes every lock it is given in sorted id order; two operations that
    touch overlapping order sets therefore cannot deadlock each other. Locks live
    only while some caller holds or waits on them.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def _lock(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    def locked(self, order_id: str) -> bool:
        lock = self._locks.get(order_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, *order_ids: str):
        held: list[asyncio.Lock] = []
        try:
            for oid in sorted({i for i in order_ids if i}):
                lock = self._lock(oid)
                await lock.acquire()
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()


order_locks = OrderLocks()
