"""Async database engine and session management."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from driftwood.config import Settings
from driftwood.storage.models import Base


class Database:
    def __init__(self, settings: Settings) -> None:
        url = settings.db_url
        engine_kwargs: dict = {"echo": settings.log_level == "debug"}
        # SQLite drivers use a single-connection pool and reject sizing args
        if not url.startswith("sqlite"):
            engine_kwargs["pool_size"] = settings.db_pool_size
            engine_kwargs["max_overflow"] = settings.db_max_overflow
        self.engine = create_async_engine(url, **engine_kwargs)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Verify connectivity and create any missing tables."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await self.ensure_schema()

    async def ensure_schema(self) -> None:
        """Create tables if absent. Safe to call repeatedly; runs DDL once."""
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._schema_ready = True

    async def disconnect(self) -> None:
        """Dispose of connection pool."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield an async session with automatic cleanup."""
        async with self.session_factory() as session:
            yield session

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()
