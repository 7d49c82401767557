"""Conversation agent -- one logical actor per conversation id.

A turn holds the conversation's lock from load to final save:

    load -> apply decisions -> resolve -> save -> append user message
         -> orchestration loop (streamed) -> save

The transcript is saved again in ``finally`` so tool results produced
before a cancellation or backend failure survive into the next turn.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from datetime import UTC, datetime

from driftwood.actors import KeyedMutex
from driftwood.api.loop import OrchestratorLoop, StopReason, Turn
from driftwood.api.model import StreamEvent
from driftwood.api.tools import ToolContext
from driftwood.api.transcript import TranscriptResolver
from driftwood.stores.conversations import ConversationStore
from driftwood.stores.schemas import Decision, Message

logger = logging.getLogger(__name__)

SCHEDULED_TASK_PREFIX = "Running scheduled task: "

SYSTEM_PROMPT = """You are a helpful assistant that can do various tasks.

The current date and time is {now} (UTC).

If the user asks to schedule a task, use the schedule_task tool. Pick exactly one trigger:
- "scheduled" with an ISO 8601 date for a specific moment,
- "delayed" with delay_in_seconds for "in N seconds/minutes/hours",
- "cron" with a cron expression for anything recurring.
Use list_scheduled_tasks and cancel_scheduled_task to inspect or remove tasks.

If the user asks for the weather somewhere, call get_weather_information with the city name,
for example get_weather_information({{"city": "Austin"}}).

For the local time, work out the BCP 47 language tag the date should be formatted in and the
IANA timezone of the place, then call get_local_time. For Shanghai that is
get_local_time({{"language_tag": "zh-CN", "timezone": "Asia/Shanghai"}}).

If the user wants to send a message in a bottle, call create_message_in_bottle with the message.
If the user wants to receive one, call get_message_in_bottle.

Some tools need the user's approval. When a call is waiting for approval, tell the user what
you want to do and wait; do not repeat the call."""


def build_system_prompt(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return SYSTEM_PROMPT.format(now=now.strftime("%A, %Y-%m-%d %H:%M"))


class ConversationAgent:
    """Runs turns for any number of conversations, serialized per id."""

    def __init__(
        self,
        store: ConversationStore,
        resolver: TranscriptResolver,
        loop: OrchestratorLoop,
        max_conversations: int = 100,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._loop = loop
        self._locks = KeyedMutex(max_idle=max_conversations)
        # Cancel signal of the turn currently running, per conversation
        self._active: dict[str, asyncio.Event] = {}

    async def stream_turn(
        self,
        conversation_id: str,
        message: str | None = None,
        decisions: Iterable[Decision] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run one turn and stream its events.

        Raises DecisionError (before anything is stored) if a decision names
        an unknown call id.
        """
        context = ToolContext(conversation_id=conversation_id)

        async with self._locks.hold(conversation_id):
            messages = await self._store.load(conversation_id)
            if decisions:
                messages = self._resolver.apply_decisions(messages, decisions)
            messages, resolved = await self._resolver.resolve(messages, context)
            if resolved:
                await self._store.save(conversation_id, messages)
                logger.info("Resolved %d tool call(s) for %s", len(resolved), conversation_id)

            for part in resolved:
                yield StreamEvent(
                    type="tool_result",
                    tool_name=part.tool_name,
                    tool_id=part.call_id,
                    text=str(part.output or ""),
                    is_error=part.status == "errored",
                )

            if message:
                messages.append(Message.user(message))

            turn = Turn(conversation_id=conversation_id)
            cancel = cancel or asyncio.Event()
            self._active[conversation_id] = cancel
            try:
                async for event in self._loop.run(
                    messages, context, build_system_prompt(), cancel=cancel, turn=turn
                ):
                    yield event
            finally:
                self._active.pop(conversation_id, None)
                await self._store.save(conversation_id, messages)
                logger.info(
                    "Turn for %s finished after %d step(s): %s",
                    conversation_id, turn.steps, turn.stop_reason or StopReason.CANCELLED,
                )

    async def run_turn(
        self,
        conversation_id: str,
        message: str | None = None,
        decisions: Iterable[Decision] | None = None,
    ) -> str:
        """Non-streaming turn. Returns the final text."""
        text = ""
        async for event in self.stream_turn(conversation_id, message, decisions):
            if event.type == "done":
                text = event.text
        return text

    async def execute_task(self, conversation_id: str, description: str) -> None:
        """Scheduled-task callback: feed the description back in as a user turn."""
        logger.info("Executing scheduled task for %s: %s", conversation_id, description[:80])
        await self.run_turn(conversation_id, f"{SCHEDULED_TASK_PREFIX}{description}")

    def cancel(self, conversation_id: str) -> bool:
        """Signal the running turn to stop. False when nothing is running."""
        event = self._active.get(conversation_id)
        if event is None:
            return False
        event.set()
        return True

    async def get_messages(self, conversation_id: str) -> list[Message]:
        return await self._store.load(conversation_id)

    async def clear(self, conversation_id: str) -> int:
        async with self._locks.hold(conversation_id):
            return await self._store.clear(conversation_id)
