"""Transcript resolution -- the tool-call protocol between turns.

A stored conversation can hold tool invocations in any status. Before the
model sees it again the transcript goes through:

1. apply_decisions: human approve/deny moves pending-confirmation parts to
   approved/denied.
2. resolve: approved parts run their execution function, denied parts get
   the fixed denial output. Both end up completed (or errored).
3. cleanup: open parts (pending-confirmation, auto-executing) are hidden
   from the model view. The stored transcript keeps them.
4. to_model_messages: Anthropic Messages format.

Every step returns new Message objects; inputs are never mutated.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from driftwood.api.tools import ToolContext, ToolRegistry, ToolValidationError
from driftwood.stores.schemas import (
    DECIDED_STATUSES,
    OPEN_STATUSES,
    Decision,
    Message,
    TextPart,
    ToolInvocationPart,
)

logger = logging.getLogger(__name__)

DENIAL_OUTPUT = "Error: User denied access to tool execution"


class DecisionError(ValueError):
    """A decision references a call id that is not in the transcript."""


def cleanup(messages: list[Message]) -> list[Message]:
    """Drop tool invocations that never reached a decided or terminal status.

    Messages left without parts are dropped entirely.
    """
    cleaned: list[Message] = []
    for message in messages:
        parts = [
            p for p in message.parts
            if not (isinstance(p, ToolInvocationPart) and p.status in OPEN_STATUSES)
        ]
        if len(parts) == len(message.parts):
            cleaned.append(message)
        elif parts:
            cleaned.append(message.model_copy(update={"parts": parts}))
    return cleaned


def pending_confirmations(messages: Iterable[Message]) -> list[ToolInvocationPart]:
    """All tool calls still waiting for a human decision, in transcript order."""
    return [
        p for m in messages for p in m.tool_parts()
        if p.status == "pending-confirmation"
    ]


def apply_decisions(messages: list[Message], decisions: Iterable[Decision]) -> list[Message]:
    """Record approve/deny decisions on pending-confirmation parts.

    Raises DecisionError if any decision names an unknown call id. Decisions
    for parts that are already decided or terminal are ignored.
    """
    by_call = {d.call_id: d for d in decisions}
    if not by_call:
        return list(messages)

    known = {p.call_id for m in messages for p in m.tool_parts()}
    pending = {id(p) for p in pending_confirmations(messages)}
    unknown = sorted(set(by_call) - known)
    if unknown:
        raise DecisionError(f"Unknown tool call id(s): {', '.join(unknown)}")

    updated: list[Message] = []
    for message in messages:
        changed = False
        parts = []
        for part in message.parts:
            decision = by_call.get(getattr(part, "call_id", None))
            if decision is not None and id(part) in pending:
                part = part.model_copy(update={"status": "approved" if decision.approved else "denied"})
                changed = True
            elif decision is not None:
                logger.debug("Ignoring decision for %s (status %s)", part.call_id, part.status)
            parts.append(part)
        updated.append(message.model_copy(update={"parts": parts}) if changed else message)
    return updated


def _result_content(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)


def to_model_messages(messages: list[Message]) -> tuple[list[str], list[dict[str, Any]]]:
    """Convert a cleaned transcript to (system_notes, Anthropic messages).

    Assistant tool invocations become tool_use blocks; their results go into
    a following user message as tool_result blocks. Consecutive messages
    with the same role are merged so roles alternate.
    """
    system_notes: list[str] = []
    api_messages: list[dict[str, Any]] = []

    def append(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if api_messages and api_messages[-1]["role"] == role:
            api_messages[-1]["content"].extend(blocks)
        else:
            api_messages.append({"role": role, "content": blocks})

    for message in messages:
        if message.role == "system":
            if message.text:
                system_notes.append(message.text)
            continue

        blocks: list[dict[str, Any]] = []
        results: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                if part.text:
                    blocks.append({"type": "text", "text": part.text})
                continue
            if part.status in OPEN_STATUSES:
                # Only terminal calls can be replayed
                continue
            blocks.append({
                "type": "tool_use",
                "id": part.call_id,
                "name": part.tool_name,
                "input": part.input,
            })
            result: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": part.call_id,
                "content": _result_content(part.output),
            }
            if part.status == "errored":
                result["is_error"] = True
            results.append(result)

        if message.role == "user":
            append("user", [b for b in blocks if b["type"] == "text"])
        else:
            append("assistant", blocks)
            append("user", results)

    return system_notes, api_messages


class TranscriptResolver:
    """Runs approved confirmation-required calls and records denials."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    cleanup = staticmethod(cleanup)
    apply_decisions = staticmethod(apply_decisions)
    to_model_messages = staticmethod(to_model_messages)

    async def _execute(self, part: ToolInvocationPart, context: ToolContext) -> ToolInvocationPart:
        try:
            output = await self._registry.execute_confirmed(part.tool_name, part.input, context)
        except ToolValidationError as e:
            return part.model_copy(update={"status": "errored", "output": str(e)})
        except Exception as e:
            logger.exception("Approved tool %s failed", part.tool_name)
            return part.model_copy(update={"status": "errored", "output": f"Tool error: {e}"})
        return part.model_copy(update={"status": "completed", "output": output})

    async def resolve(
        self,
        messages: list[Message],
        context: ToolContext,
    ) -> tuple[list[Message], list[ToolInvocationPart]]:
        """Resolve every approved/denied part, in message then part order.

        Returns the new transcript and the parts that were resolved. Terminal
        parts are left alone, so resolving twice is a no-op.
        """
        resolved: list[ToolInvocationPart] = []
        updated: list[Message] = []
        for message in messages:
            changed = False
            parts = []
            for part in message.parts:
                if not isinstance(part, ToolInvocationPart) or part.status not in DECIDED_STATUSES:
                    parts.append(part)
                    continue
                if part.status == "approved":
                    logger.info("Executing approved %s call %s", part.tool_name, part.call_id)
                    part = await self._execute(part, context)
                else:
                    logger.info("Recording denial of %s call %s", part.tool_name, part.call_id)
                    part = part.model_copy(update={"status": "completed", "output": DENIAL_OUTPUT})
                resolved.append(part)
                changed = True
                parts.append(part)
            updated.append(message.model_copy(update={"parts": parts}) if changed else message)
        return updated, resolved
