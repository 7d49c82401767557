"""Tests for the Anthropic streaming backend.

Tests cover:
- SSE event parsing (_parse_sse_event pure function)
- StreamEvent wire form
- Tool input JSON fragment reassembly into tool_call events
- Auth header selection
"""

import json

import httpx
import pytest

from driftwood.api.model import AnthropicBackend, StreamEvent, _parse_sse_event, auth_headers
from driftwood.config import Settings


def _sse_body(*events: dict) -> str:
    lines = []
    for event in events:
        lines.append(f"event: {event['type']}")
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")
    return "\n".join(lines) + "\n"


TOOL_TURN = _sse_body(
    {"type": "message_start", "message": {"id": "msg_1"}},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Let me "}},
    {"type": "ping"},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "check."}},
    {"type": "content_block_stop", "index": 0},
    {
        "type": "content_block_start",
        "index": 1,
        "content_block": {"type": "tool_use", "id": "toolu_01", "name": "get_local_time", "input": {}},
    },
    {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"language_tag": "en-US", '}},
    {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '"timezone": "UTC"}'}},
    {"type": "content_block_stop", "index": 1},
    {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
    {"type": "message_stop"},
)


# ---------------------------------------------------------------------------
# _parse_sse_event
# ---------------------------------------------------------------------------


class TestParseSSEEvent:

    def test_text_delta(self):
        event = _parse_sse_event(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}}
        )
        assert event is not None
        assert event.type == "text_delta"
        assert event.text == "Hello"

    def test_tool_use_start(self):
        event = _parse_sse_event({
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_9", "name": "schedule_task"},
        })
        assert event.type == "tool_start"
        assert event.tool_id == "toolu_9"
        assert event.tool_name == "schedule_task"
        assert event.block_index == 1

    def test_input_json_delta(self):
        event = _parse_sse_event(
            {"type": "content_block_delta", "index": 2, "delta": {"type": "input_json_delta", "partial_json": '{"a"'}}
        )
        assert event.type == "tool_input_delta"
        assert event.text == '{"a"'
        assert event.block_index == 2

    def test_stop_reason_from_message_delta(self):
        event = _parse_sse_event({"type": "message_delta", "delta": {"stop_reason": "end_turn"}})
        assert event.type == "done"
        assert event.stop_reason == "end_turn"

    def test_ping_skipped(self):
        assert _parse_sse_event({"type": "ping"}) is None

    def test_in_stream_error(self):
        event = _parse_sse_event({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        assert event.type == "error"
        assert event.text == "overloaded_error: Overloaded"

    def test_unknown_event_ignored(self):
        assert _parse_sse_event({"type": "message_start", "message": {}}) is None

    def test_text_block_start_skipped(self):
        assert _parse_sse_event(
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}
        ) is None


class TestStreamEvent:

    def test_to_dict_drops_empty_fields(self):
        event = StreamEvent(type="tool_result", tool_id="toolu_1", text="done", block_index=3)
        assert event.to_dict() == {"type": "tool_result", "tool_id": "toolu_1", "text": "done"}

    def test_to_dict_keeps_type_only(self):
        assert StreamEvent(type="message_stop").to_dict() == {"type": "message_stop"}


# ---------------------------------------------------------------------------
# AnthropicBackend.stream
# ---------------------------------------------------------------------------


def _backend(settings: Settings, handler) -> AnthropicBackend:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=settings.api_base_url)
    return AnthropicBackend(settings, http=http)


class TestBackendStream:

    async def test_text_and_tool_call(self, settings):
        payloads: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            payloads.append(json.loads(request.content))
            return httpx.Response(200, text=TOOL_TURN, headers={"content-type": "text/event-stream"})

        backend = _backend(settings, handler)
        events = [
            e async for e in backend.stream(
                "system", [{"role": "user", "content": "time?"}], tools=[{"name": "get_local_time"}]
            )
        ]

        assert [e.type for e in events] == ["text_delta", "text_delta", "tool_call", "done"]
        assert "".join(e.text for e in events if e.type == "text_delta") == "Let me check."
        call = events[2]
        assert call.tool_id == "toolu_01"
        assert call.tool_name == "get_local_time"
        assert call.tool_input == {"language_tag": "en-US", "timezone": "UTC"}
        assert events[3].stop_reason == "tool_use"

        payload = payloads[0]
        assert payload["stream"] is True
        assert payload["model"] == settings.model
        assert payload["system"][0]["text"] == "system"
        assert payload["tools"] == [{"name": "get_local_time"}]

    async def test_tool_without_input(self):
        body = _sse_body(
            {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": "t1", "name": "list_scheduled_tasks"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
        )
        settings = Settings(ANTHROPIC_API_KEY="k")
        backend = _backend(settings, lambda request: httpx.Response(200, text=body))
        events = [e async for e in backend.stream("s", [])]
        assert events[0].type == "tool_call"
        assert events[0].tool_input == {}

    async def test_http_error_status(self, settings):
        backend = _backend(settings, lambda request: httpx.Response(429, text='{"error": "rate limited"}'))
        events = [e async for e in backend.stream("s", [])]
        assert len(events) == 1
        assert events[0].type == "error"
        assert "429" in events[0].text

    async def test_in_stream_error_stops(self, settings):
        body = _sse_body(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "never"}},
        )
        backend = _backend(settings, lambda request: httpx.Response(200, text=body))
        events = [e async for e in backend.stream("s", [])]
        assert [e.type for e in events] == ["text_delta", "error"]

    async def test_transport_error_becomes_event(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        backend = _backend(settings, handler)
        events = [e async for e in backend.stream("s", [])]
        assert events[0].type == "error"
        assert "refused" in events[0].text

    async def test_not_started(self, settings):
        backend = AnthropicBackend(settings)
        with pytest.raises(RuntimeError, match="call start"):
            async for _ in backend.stream("s", []):
                pass


class TestAuthHeaders:

    async def test_api_key(self):
        backend = AnthropicBackend(Settings(ANTHROPIC_API_KEY="sk-ant-api-123", ANTHROPIC_AUTH_TOKEN=""))
        await backend.start()
        try:
            headers = backend._http.headers
            assert headers["x-api-key"] == "sk-ant-api-123"
            assert "authorization" not in headers
            assert headers["anthropic-version"] == "2023-06-01"
        finally:
            await backend.close()

    async def test_oat_token_as_api_key(self):
        backend = AnthropicBackend(Settings(ANTHROPIC_API_KEY="sk-ant-oat01-abc", ANTHROPIC_AUTH_TOKEN=""))
        await backend.start()
        try:
            headers = backend._http.headers
            assert headers["authorization"] == "Bearer sk-ant-oat01-abc"
            assert headers["anthropic-beta"] == "oauth-2025-04-20"
            assert "x-api-key" not in headers
        finally:
            await backend.close()

    async def test_auth_token_wins(self):
        backend = AnthropicBackend(Settings(ANTHROPIC_API_KEY="key", ANTHROPIC_AUTH_TOKEN="tok"))
        await backend.start()
        try:
            assert backend._http.headers["authorization"] == "Bearer tok"
        finally:
            await backend.close()
        assert backend._http is None


class TestAuthHeaderSelection:

    @pytest.mark.parametrize(
        ("api_key", "auth_token", "label"),
        [
            ("sk-ant-api-1", "", "API key"),
            ("", "tok", "Bearer token"),
            ("sk-ant-oat01-x", "", "OAT/subscription"),
            ("key", "sk-ant-oat01-y", "OAT/subscription"),
            ("", "", "none"),
        ],
    )
    def test_labels(self, api_key, auth_token, label):
        _, auth_type = auth_headers(api_key, auth_token)
        assert auth_type == label

    def test_oat_auth_token_uses_token_not_key(self):
        headers, _ = auth_headers("key", "sk-ant-oat01-y")
        assert headers["authorization"] == "Bearer sk-ant-oat01-y"
        assert headers["anthropic-beta"] == "oauth-2025-04-20"
        assert "x-api-key" not in headers

    def test_no_credentials_sends_version_only(self):
        headers, _ = auth_headers("", "")
        assert headers == {"anthropic-version": "2023-06-01", "content-type": "application/json"}
