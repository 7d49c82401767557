"""Test fixtures using a throwaway SQLite database per test."""

from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio

from driftwood.api.model import StreamEvent
from driftwood.config import Settings
from driftwood.storage.database import Database

# ---------------------------------------------------------------------------
# Scripted model backend
# ---------------------------------------------------------------------------


def text_step(*chunks: str) -> list[StreamEvent]:
    """A model step that only produces text."""
    return [StreamEvent(type="text_delta", text=c) for c in chunks] + [
        StreamEvent(type="done", stop_reason="end_turn")
    ]


def tool_step(name: str, tool_input: dict, call_id: str, text: str = "") -> list[StreamEvent]:
    """A model step that requests one tool call."""
    events = [StreamEvent(type="text_delta", text=text)] if text else []
    events.append(StreamEvent(type="tool_call", tool_name=name, tool_id=call_id, tool_input=tool_input))
    events.append(StreamEvent(type="done", stop_reason="tool_use"))
    return events


class ScriptedBackend:
    """Replays canned steps and records every request it receives.

    When the script runs out, ``default`` is replayed (a plain "ok" reply
    unless a test overrides it).
    """

    def __init__(self, steps: list[list[StreamEvent]] | None = None) -> None:
        self.steps = list(steps or [])
        self.default: list[StreamEvent] = text_step("ok")
        self.calls: list[dict[str, Any]] = []
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def stream(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append({"system": system_prompt, "messages": messages, "tools": tools})
        step = self.steps.pop(0) if self.steps else self.default
        for event in step:
            yield event


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a fresh SQLite file, scheduler loop off."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'driftwood.db'}",
        ANTHROPIC_API_KEY="test-key",
        schedule_enabled=False,
        max_steps=5,
    )


@pytest_asyncio.fixture
async def db(settings):
    """Connected database with the schema created."""
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()
