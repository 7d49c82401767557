"""Driftwood agent entry point.

Initializes all components and starts the server:
  Settings -> Database -> Stores -> ToolRegistry -> Backend -> Agent -> Scheduler -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from driftwood.api.agent import ConversationAgent
from driftwood.api.agent_tools import register_agent_tools
from driftwood.api.loop import OrchestratorLoop
from driftwood.api.model import AnthropicBackend, ModelBackend
from driftwood.api.tools import ToolRegistry
from driftwood.api.transcript import TranscriptResolver
from driftwood.config import Settings
from driftwood.handlers.task_scheduler import TaskScheduler
from driftwood.storage.database import Database
from driftwood.stores import (
    EXECUTE_TASK_CALLBACK,
    BottleStoreDirectory,
    ConversationStore,
    ScheduleManager,
)

logger = logging.getLogger(__name__)


async def create_components(settings: Settings, backend: ModelBackend | None = None) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. Database - connection pool + schema
    2. Stores - bottles, schedules, conversations
    3. ToolRegistry - the seven agent tools
    4. Model backend - Anthropic streaming client
    5. ConversationAgent - resolver + loop + per-conversation actors
    6. TaskScheduler - fires due tasks into the agent
    """
    database = Database(settings)
    await database.connect()

    bottles = BottleStoreDirectory(database, capacity=settings.bottle_capacity)
    schedules = ScheduleManager(database)
    conversations = ConversationStore(database)

    # Tool httpx client (separate from the model backend -- no API auth headers)
    tool_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=settings.weather_timeout, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )

    registry = ToolRegistry()
    register_agent_tools(registry, bottles, schedules, settings, tool_http)

    if backend is None:
        backend = AnthropicBackend(settings)
    await backend.start()

    agent = ConversationAgent(
        conversations,
        TranscriptResolver(registry),
        OrchestratorLoop(backend, registry, max_steps=settings.max_steps),
        max_conversations=settings.max_conversations,
    )

    task_scheduler = None
    if settings.schedule_enabled:
        task_scheduler = TaskScheduler(
            schedules, settings, callbacks={EXECUTE_TASK_CALLBACK: agent.execute_task}
        )
        await task_scheduler.start()

    return {
        "database": database,
        "bottles": bottles,
        "schedules": schedules,
        "conversations": conversations,
        "registry": registry,
        "tool_http": tool_http,
        "backend": backend,
        "agent": agent,
        "task_scheduler": task_scheduler,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Driftwood...")

    task_scheduler = components.get("task_scheduler")
    if task_scheduler:
        await task_scheduler.stop()

    backend = components.get("backend")
    if backend:
        await backend.close()

    tool_http = components.get("tool_http")
    if tool_http:
        await tool_http.aclose()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Driftwood shutdown complete.")


def build_app(settings: Settings, backend: ModelBackend | None = None) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings, backend))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Driftwood started: model=%s, max_steps=%d, bottle_capacity=%d",
            settings.model,
            settings.max_steps,
            settings.bottle_capacity,
        )
        yield

        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from driftwood.api.rest import create_app

    return create_app(
        agent=_lazy_component(components, "agent"),
        schedules=_lazy_component(components, "schedules"),
        database=_lazy_component(components, "database"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Driftwood agent")
    logger.info("Model: %s", settings.model)
    if settings.database_url:
        logger.info("Database: %s", settings.database_url.split("@")[-1])
    else:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "chat endpoints will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
