"""Bottle store -- bounded, randomized, durable message-in-a-bottle storage.

Every store instance is a single actor: ``insert`` and ``pop_random`` hold
the instance lock and run their read-then-write sequence inside one
transaction, so no two operations interleave their storage effects.
"""

import asyncio
import logging

from sqlalchemy import delete, func, select

from driftwood.storage.database import Database
from driftwood.storage.models import Bottle

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100
ADDED_ACK = "Message successfully added"


class StorageError(RuntimeError):
    """A bottle-store invariant was violated mid-operation."""


class BottleStore:
    """Bounded collection of bottles with random eviction and retrieval."""

    def __init__(self, database: Database, name: str, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._db = database
        self.name = name
        self.capacity = capacity
        self._lock = asyncio.Lock()
        self._ready = False

    async def _ensure_ready(self) -> None:
        if not self._ready:
            await self._db.ensure_schema()
            self._ready = True

    async def insert(self, text: str) -> str:
        """Store ``text``; at capacity, evict random bottles first.

        Normally one bottle goes. A store left over capacity (capacity
        lowered since the rows were written) is trimmed back to make room.
        """
        async with self._lock:
            await self._ensure_ready()
            async with self._db.session() as session, session.begin():
                count = await session.scalar(
                    select(func.count()).select_from(Bottle).where(Bottle.store_name == self.name)
                )
                excess = count - self.capacity + 1
                if excess > 0:
                    logger.info(
                        "Bottle store %s at capacity (%d/%d), evicting %d",
                        self.name, count, self.capacity, excess,
                    )
                    victims = list(
                        await session.scalars(
                            select(Bottle.id)
                            .where(Bottle.store_name == self.name)
                            .order_by(func.random())
                            .limit(excess)
                        )
                    )
                    result = await session.execute(delete(Bottle).where(Bottle.id.in_(victims)))
                    if result.rowcount != excess:
                        raise StorageError(
                            f"Evicted {result.rowcount} of {excess} bottles from store {self.name}"
                        )
                session.add(Bottle(store_name=self.name, text=text))
            logger.debug("Inserted bottle into %s", self.name)
            return ADDED_ACK

    async def pop_random(self) -> str | None:
        """Remove and return one random bottle, or None when empty."""
        async with self._lock:
            await self._ensure_ready()
            async with self._db.session() as session, session.begin():
                row = (
                    await session.execute(
                        select(Bottle.id, Bottle.text)
                        .where(Bottle.store_name == self.name)
                        .order_by(func.random())
                        .limit(1)
                    )
                ).first()
                if row is None:
                    logger.debug("Bottle store %s is empty", self.name)
                    return None
                result = await session.execute(delete(Bottle).where(Bottle.id == row.id))
                if result.rowcount != 1:
                    raise StorageError(f"Bottle {row.id} disappeared from store {self.name}")
            logger.debug("Popped bottle %d from %s", row.id, self.name)
            return row.text

    async def count(self) -> int:
        """Number of bottles currently stored."""
        async with self._lock:
            await self._ensure_ready()
            async with self._db.session() as session:
                return await session.scalar(
                    select(func.count()).select_from(Bottle).where(Bottle.store_name == self.name)
                ) or 0


class BottleStoreDirectory:
    """Hands out exactly one BottleStore per logical name."""

    def __init__(self, database: Database, capacity: int = DEFAULT_CAPACITY) -> None:
        self._db = database
        self._capacity = capacity
        self._stores: dict[str, BottleStore] = {}

    def get(self, name: str) -> BottleStore:
        store = self._stores.get(name)
        if store is None:
            store = BottleStore(self._db, name, self._capacity)
            self._stores[name] = store
        return store
