"""Tests for the REST API (httpx ASGITransport against real components)."""

import json

import httpx
import pytest_asyncio

from driftwood.api.rest import create_app
from driftwood.main import create_components, shutdown_components
from tests.conftest import ScriptedBackend, text_step, tool_step


def _events(response: httpx.Response) -> list[dict]:
    return [
        json.loads(chunk.removeprefix("data: "))
        for chunk in response.text.split("\n\n")
        if chunk.strip()
    ]


@pytest_asyncio.fixture
async def components(settings):
    components = await create_components(settings, backend=ScriptedBackend())
    yield components
    await shutdown_components(components)


@pytest_asyncio.fixture
async def client(components):
    app = create_app(
        agent=components["agent"],
        schedules=components["schedules"],
        database=components["database"],
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestChat:

    async def test_streams_turn(self, client, components):
        components["backend"].steps = [text_step("Hello", " there")]

        response = await client.post("/agents/chat/c1", json={"message": "hi"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _events(response)
        assert [e["type"] for e in events] == ["text_delta", "text_delta", "done"]
        assert events[-1] == {"type": "done", "text": "Hello there", "stop_reason": "end_turn"}

    async def test_confirmation_round_trip(self, client, components):
        components["backend"].steps = [
            tool_step("create_message_in_bottle", {"message": "ahoy"}, "call_1"),
            text_step("Sent."),
        ]

        events = _events(await client.post("/agents/chat/c1", json={"message": "send ahoy"}))
        assert events[-2]["type"] == "confirmation_required"
        assert events[-2]["tool_id"] == "call_1"
        assert events[-1]["stop_reason"] == "awaiting_confirmation"

        response = await client.post(
            "/agents/chat/c1", json={"decisions": [{"call_id": "call_1", "approved": True}]}
        )
        events = _events(response)
        assert events[0]["type"] == "tool_result"
        assert events[0]["text"] == "Message successfully added"
        assert events[-1]["text"] == "Sent."

    async def test_unknown_decision_is_400(self, client):
        response = await client.post(
            "/agents/chat/c1", json={"decisions": [{"call_id": "ghost", "approved": True}]}
        )
        assert response.status_code == 400
        assert "ghost" in response.json()["error"]

    async def test_empty_request_is_400(self, client):
        response = await client.post("/agents/chat/c1", json={})
        assert response.status_code == 400
        assert "message" in response.json()["error"]

    async def test_invalid_json_is_400(self, client):
        response = await client.post(
            "/agents/chat/c1", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON body"}

    async def test_cancel_idle_conversation(self, client):
        response = await client.post("/agents/chat/c1/cancel")
        assert response.json() == {"conversation_id": "c1", "cancelled": False}


class TestTranscriptEndpoints:

    async def test_messages_and_clear(self, client):
        await client.post("/agents/chat/c1", json={"message": "hi"})

        response = await client.get("/agents/chat/c1/messages")
        assert response.status_code == 200
        body = response.json()
        assert body["conversation_id"] == "c1"
        assert [m["role"] for m in body["messages"]] == ["user", "assistant"]
        assert body["messages"][0]["parts"] == [{"type": "text", "text": "hi"}]

        response = await client.delete("/agents/chat/c1")
        assert response.json() == {"status": "cleared", "conversation_id": "c1", "removed": 2}
        assert (await client.get("/agents/chat/c1/messages")).json()["messages"] == []

    async def test_schedules_listing(self, client, components):
        components["backend"].steps = [
            tool_step(
                "schedule_task",
                {"when": {"type": "cron", "cron": "0 9 * * *"}, "description": "morning"},
                "call_1",
            ),
            text_step("Scheduled."),
        ]
        await client.post("/agents/chat/c1", json={"message": "every morning"})

        response = await client.get("/agents/chat/c1/schedules")
        tasks = response.json()["tasks"]
        assert len(tasks) == 1
        assert tasks[0]["description"] == "morning"
        assert (await client.get("/agents/chat/other/schedules")).json()["tasks"] == []


class TestMisc:

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_unknown_route_is_json_404(self, client):
        response = await client.get("/nowhere")
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}


class TestComponents:

    async def test_wiring(self, components):
        assert components["backend"].started
        assert components["task_scheduler"] is None
        assert len(components["registry"].names()) == 7
