"""Per-key mutual exclusion for single-actor components.

Each logical actor (a conversation, a named bottle store) is identified by
a string key. Calls against the same key are serialized; distinct keys
never contend.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class KeyedMutex:
    """asyncio.Lock per key with LRU eviction of idle locks.

    Locks that are held or awaited are never evicted, so two holders of the
    same key always share one lock instance.
    """

    def __init__(self, max_idle: int = 100) -> None:
        self._locks: OrderedDict[str, asyncio.Lock] = OrderedDict()
        self._waiters: dict[str, int] = {}
        self._max_idle = max_idle

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Serialize the body against every other holder of ``key``."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._locks.move_to_end(key)
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
            self._evict_idle()

    def _evict_idle(self) -> None:
        if len(self._locks) <= self._max_idle:
            return
        for key in list(self._locks):
            if len(self._locks) <= self._max_idle:
                break
            if key in self._waiters or self._locks[key].locked():
                continue
            del self._locks[key]
            logger.debug("Evicted idle actor lock %s", key)
