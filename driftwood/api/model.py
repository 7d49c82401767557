"""Model backend -- streams turns from the Anthropic Messages API.

The backend only talks to the model. It turns the raw SSE stream into
StreamEvents and assembles complete tool calls (tool_use blocks whose
input JSON arrives in fragments). Tool execution and transcript
bookkeeping live in the orchestration loop.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import httpx

from driftwood.config import Settings

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"


@dataclass
class StreamEvent:
    """A single streamed event.

    Raw SSE parsing produces text_delta, tool_start, tool_input_delta,
    block_stop, done and error. The backend folds the tool
    events into one ``tool_call`` per tool_use block. The loop adds
    tool_result and confirmation_required.
    """

    type: str
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    tool_input: dict = field(default_factory=dict)
    stop_reason: str = ""
    block_index: int = 0
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Wire form: the type plus every non-empty field."""
        data = asdict(self)
        data.pop("block_index")
        return {k: v for k, v in data.items() if k == "type" or v}


# content_block_delta subtypes -> (event type, payload key)
_DELTA_KINDS = {
    "text_delta": ("text_delta", "text"),
    "input_json_delta": ("tool_input_delta", "partial_json"),
}


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Map one Anthropic SSE payload to the events ``stream`` folds.

    Returns None for everything the backend does not need: pings, message
    start/stop, text block starts. The stop reason comes from
    message_delta. An error payload inside a 200 stream becomes an error
    event.
    """
    kind = data.get("type")
    index = data.get("index", 0)

    if kind == "content_block_delta":
        delta = data.get("delta", {})
        mapped = _DELTA_KINDS.get(delta.get("type"))
        if mapped is None:
            return None
        event_type, key = mapped
        return StreamEvent(type=event_type, text=delta.get(key, ""), block_index=index)

    if kind == "content_block_start":
        block = data.get("content_block", {})
        if block.get("type") != "tool_use":
            return None
        return StreamEvent(
            type="tool_start",
            tool_name=block.get("name", ""),
            tool_id=block.get("id", ""),
            block_index=index,
        )

    if kind == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=index)

    if kind == "message_delta":
        return StreamEvent(type="done", stop_reason=data.get("delta", {}).get("stop_reason") or "")

    if kind == "error":
        error = data.get("error", {})
        return StreamEvent(type="error", text=f"{error.get('type', 'unknown')}: {error.get('message', '')}")

    return None


def auth_headers(api_key: str, auth_token: str) -> tuple[dict[str, str], str]:
    """Request headers for the configured credential, plus a label for logs.

    An auth token wins over an API key. Either one may be an OAT
    subscription token (``sk-ant-oat...``), which needs Bearer auth and the
    OAuth beta headers; a plain API key goes in x-api-key.
    """
    headers = {"anthropic-version": _API_VERSION, "content-type": "application/json"}
    credential = auth_token or api_key
    if not credential:
        return headers, "none"

    if "sk-ant-oat" in credential:
        headers["authorization"] = f"Bearer {credential}"
        headers["anthropic-beta"] = "oauth-2025-04-20"
        headers["anthropic-dangerous-direct-browser-access"] = "true"
        return headers, "OAT/subscription"
    if auth_token:
        headers["authorization"] = f"Bearer {auth_token}"
        return headers, "Bearer token"
    headers["x-api-key"] = api_key
    return headers, "API key"


class ModelBackend(Protocol):
    """Anything that can stream one model step."""

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    def stream(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield text_delta, tool_call, done and error events for one step."""
        ...


class AnthropicBackend:
    """Direct httpx client for the Anthropic Messages API (streaming)."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers, auth_type = auth_headers(settings.anthropic_api_key, settings.anthropic_auth_token)
        if auth_type == "none":
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            ),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        self._owns_http = True
        logger.info("Model client initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        """Clean up the httpx client if this backend created it."""
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    def _build_api_payload(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": messages,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def _raw_events(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
    ) -> AsyncIterator[StreamEvent]:
        """Parsed SSE events straight off the wire. Only data: lines matter."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_api_payload(system_prompt, messages, tools)

        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    error_body = await response.aread()
                    yield StreamEvent(
                        type="error",
                        text=f"Anthropic API error ({response.status_code}): {error_body.decode()[:500]}",
                    )
                    return

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed SSE line: %s", line[:200])
                        continue
                    event = _parse_sse_event(data)
                    if event:
                        yield event
                        if event.type == "error":
                            return
        except httpx.HTTPError as e:
            logger.error("Model stream failed: %s", e)
            yield StreamEvent(type="error", text=f"HTTP error: {e}")

    async def stream(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one model step, folding tool_use blocks into tool_call events."""
        block_accumulators: dict[int, dict[str, Any]] = {}

        async for event in self._raw_events(system_prompt, messages, tools):
            if event.type in ("text_delta", "done", "error"):
                yield event

            elif event.type == "tool_start":
                block_accumulators[event.block_index] = {
                    "id": event.tool_id,
                    "name": event.tool_name,
                    "input_parts": [],
                }

            elif event.type == "tool_input_delta":
                acc = block_accumulators.get(event.block_index)
                if acc:
                    acc["input_parts"].append(event.text)

            elif event.type == "block_stop":
                acc = block_accumulators.pop(event.block_index, None)
                if acc:
                    input_json = "".join(acc["input_parts"])
                    try:
                        tool_input = json.loads(input_json) if input_json else {}
                    except json.JSONDecodeError:
                        logger.warning("Unparseable input JSON for tool %s", acc["name"])
                        tool_input = {}
                    if not isinstance(tool_input, dict):
                        tool_input = {}
                    yield StreamEvent(
                        type="tool_call",
                        tool_name=acc["name"],
                        tool_id=acc["id"],
                        tool_input=tool_input,
                        block_index=event.block_index,
                    )
