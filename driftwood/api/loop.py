"""Orchestration loop -- bounded model/tool state machine for one turn.

A generation task talks to the model backend, runs tools and writes
StreamEvents into a bounded queue. ``run`` drains that queue for the
caller, so the producer only advances as fast as the consumer reads.

Transcript changes are made on the caller's ``messages`` list in place:
each model step appends one assistant message whose tool invocations move
through auto-executing -> completed/errored, or stay pending-confirmation
until the next turn.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum

from driftwood.api.model import ModelBackend, StreamEvent
from driftwood.api.tools import ToolClass, ToolContext, ToolRegistry, ToolValidationError
from driftwood.api.transcript import cleanup, to_model_messages
from driftwood.stores.schemas import Message, TextPart, ToolInvocationPart

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 30

Emit = Callable[[StreamEvent], Awaitable[None]]


class LoopState(StrEnum):
    AWAITING_MODEL = "awaiting-model"
    MODEL_PRODUCED_TEXT = "model-produced-text"
    MODEL_REQUESTED_TOOL = "model-requested-tool"
    EXECUTING_TOOL = "executing-tool"
    AWAITING_CONFIRMATION = "awaiting-confirmation"
    DONE = "done"


class StopReason(StrEnum):
    END_TURN = "end_turn"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    MAX_STEPS = "max_steps"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class Turn:
    """Progress of a single run; one per call to ``OrchestratorLoop.run``."""

    conversation_id: str
    state: LoopState = LoopState.AWAITING_MODEL
    steps: int = 0
    last_text: str = ""
    stop_reason: StopReason | None = None
    history: list[LoopState] = field(default_factory=list)

    def advance(self, state: LoopState) -> None:
        if self.history and state == self.state:
            return
        logger.debug("Turn %s: %s -> %s", self.conversation_id, self.state, state)
        self.state = state
        self.history.append(state)


def _finish(part: ToolInvocationPart, text: str, is_error: bool) -> None:
    part.status = "errored" if is_error else "completed"
    part.output = text


def _result_event(part: ToolInvocationPart) -> StreamEvent:
    return StreamEvent(
        type="tool_result",
        tool_name=part.tool_name,
        tool_id=part.call_id,
        text=str(part.output or ""),
        is_error=part.status == "errored",
    )


class OrchestratorLoop:
    """Drives model steps and tool calls until the turn ends."""

    def __init__(
        self,
        backend: ModelBackend,
        registry: ToolRegistry,
        max_steps: int = DEFAULT_MAX_STEPS,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self._backend = backend
        self._registry = registry
        self._max_steps = max_steps

    async def run(
        self,
        messages: list[Message],
        context: ToolContext,
        system_prompt: str,
        cancel: asyncio.Event | None = None,
        turn: Turn | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one turn. The final event is always ``done`` unless the
        consumer closes the stream early.

        Setting ``cancel`` stops generation; tool calls already running
        finish and their results are written to ``messages``, not streamed.
        """
        turn = turn or Turn(conversation_id=context.conversation_id)
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=1)
        producer = asyncio.create_task(self._produce(messages, context, system_prompt, turn, queue))
        watcher = asyncio.create_task(cancel.wait()) if cancel is not None else None

        try:
            while True:
                getter = asyncio.create_task(queue.get())
                waiting = {getter, watcher} if watcher else {getter}
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if watcher is not None and watcher in done:
                    getter.cancel()
                    logger.info("Turn %s cancelled by caller", context.conversation_id)
                    await self._stop(producer)
                    turn.stop_reason = StopReason.CANCELLED
                    turn.advance(LoopState.DONE)
                    yield StreamEvent(type="done", stop_reason=turn.stop_reason, text=turn.last_text)
                    return

                event = getter.result()
                if event is None:
                    await asyncio.wait([producer])
                    return
                yield event
        finally:
            if watcher is not None:
                watcher.cancel()
            if not producer.done():
                if turn.stop_reason is None:
                    turn.stop_reason = StopReason.CANCELLED
                await self._stop(producer)

    @staticmethod
    async def _stop(producer: asyncio.Task) -> None:
        # Waits without re-raising; the producer settles running tools first
        producer.cancel()
        await asyncio.wait([producer])

    async def _produce(
        self,
        messages: list[Message],
        context: ToolContext,
        system_prompt: str,
        turn: Turn,
        queue: asyncio.Queue,
    ) -> None:
        emit: Emit = queue.put
        try:
            await self._generate(messages, context, system_prompt, turn, emit)
        except asyncio.CancelledError:
            logger.debug("Generation for %s stopped", context.conversation_id)
            raise
        except Exception as e:
            logger.exception("Orchestration failed for %s", context.conversation_id)
            turn.stop_reason = StopReason.ERROR
            turn.advance(LoopState.DONE)
            await emit(StreamEvent(type="error", text=str(e)))
            await emit(StreamEvent(type="done", stop_reason=turn.stop_reason, text=turn.last_text))
        await queue.put(None)

    async def _generate(
        self,
        messages: list[Message],
        context: ToolContext,
        system_prompt: str,
        turn: Turn,
        emit: Emit,
    ) -> None:
        tools = self._registry.tool_definitions()

        for step in range(self._max_steps):
            turn.steps = step + 1
            turn.advance(LoopState.AWAITING_MODEL)

            system_notes, api_messages = to_model_messages(cleanup(messages))
            prompt = "\n\n".join([system_prompt, *system_notes])

            # Appended on its first part so a step that yields nothing leaves no trace
            assistant = Message(role="assistant")
            text_part: TextPart | None = None
            calls: list[StreamEvent] = []
            step_text = ""

            async with aclosing(self._backend.stream(prompt, api_messages, tools)) as stream:
                async for event in stream:
                    if event.type == "text_delta":
                        if text_part is None:
                            text_part = TextPart(text="")
                            assistant.parts.append(text_part)
                            messages.append(assistant)
                        text_part.text += event.text
                        step_text += event.text
                        turn.advance(LoopState.MODEL_PRODUCED_TEXT)
                        await emit(event)
                    elif event.type == "tool_call":
                        calls.append(event)
                    elif event.type == "error":
                        logger.error("Model backend error: %s", event.text)
                        turn.stop_reason = StopReason.ERROR
                        turn.advance(LoopState.DONE)
                        await emit(event)
                        await emit(StreamEvent(type="done", stop_reason=turn.stop_reason, text=turn.last_text))
                        return

            if step_text:
                turn.last_text = step_text

            if not calls:
                turn.stop_reason = StopReason.END_TURN
                turn.advance(LoopState.DONE)
                await emit(StreamEvent(type="done", stop_reason=turn.stop_reason, text=turn.last_text))
                return

            turn.advance(LoopState.MODEL_REQUESTED_TOOL)
            if text_part is None:
                messages.append(assistant)
            pending = await self._dispatch_calls(assistant, calls, context, turn, emit)

            if pending:
                turn.stop_reason = StopReason.AWAITING_CONFIRMATION
                turn.advance(LoopState.AWAITING_CONFIRMATION)
                for part in pending:
                    await emit(StreamEvent(
                        type="confirmation_required",
                        tool_name=part.tool_name,
                        tool_id=part.call_id,
                        tool_input=part.input,
                    ))
                turn.advance(LoopState.DONE)
                await emit(StreamEvent(type="done", stop_reason=turn.stop_reason, text=turn.last_text))
                return

        logger.warning(
            "Turn %s reached max_steps=%d", context.conversation_id, self._max_steps
        )
        turn.stop_reason = StopReason.MAX_STEPS
        turn.advance(LoopState.DONE)
        await emit(StreamEvent(type="done", stop_reason=turn.stop_reason, text=turn.last_text))

    async def _dispatch_calls(
        self,
        assistant: Message,
        calls: list[StreamEvent],
        context: ToolContext,
        turn: Turn,
        emit: Emit,
    ) -> list[ToolInvocationPart]:
        """Record every requested call, run the auto-execute ones, return the pending ones."""
        pending: list[ToolInvocationPart] = []
        running: list[tuple[ToolInvocationPart, asyncio.Task]] = []

        try:
            for call in calls:
                part = ToolInvocationPart(
                    tool_name=call.tool_name,
                    input=call.tool_input,
                    call_id=call.tool_id,
                    status="auto-executing",
                )
                kind = self._registry.classify(call.tool_name)
                if kind == ToolClass.UNKNOWN:
                    logger.warning("Model requested unknown tool %s", call.tool_name)
                    _finish(part, f"Unknown tool: {call.tool_name}", is_error=True)
                elif kind == ToolClass.CONFIRMATION_REQUIRED:
                    try:
                        self._registry.validate(call.tool_name, call.tool_input)
                    except ToolValidationError as e:
                        _finish(part, str(e), is_error=True)
                    else:
                        part.status = "pending-confirmation"
                        pending.append(part)
                else:
                    task = asyncio.create_task(
                        self._registry.dispatch(call.tool_name, call.tool_input, context)
                    )
                    running.append((part, task))
                assistant.parts.append(part)

                await emit(call)
                if part.is_terminal:
                    await emit(_result_event(part))

            if running:
                turn.advance(LoopState.EXECUTING_TOOL)
            for part, task in running:
                text, is_error = await asyncio.shield(task)
                _finish(part, text, is_error)
                await emit(_result_event(part))
        except asyncio.CancelledError:
            await self._settle(running)
            raise

        return pending

    @staticmethod
    async def _settle(running: list[tuple[ToolInvocationPart, asyncio.Task]]) -> None:
        """Let dispatched tools finish and record their results after cancellation."""
        for part, task in running:
            if part.status != "auto-executing":
                continue
            text, is_error = await task
            _finish(part, text, is_error)
            logger.info("Recorded %s result for %s after cancellation", part.tool_name, part.call_id)
