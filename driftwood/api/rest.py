"""REST API for the Driftwood agent.

Endpoints:
  POST   /agents/chat/{conversation_id}            - Run a turn, SSE event stream
  POST   /agents/chat/{conversation_id}/cancel     - Stop the running turn
  GET    /agents/chat/{conversation_id}/messages   - Stored transcript
  GET    /agents/chat/{conversation_id}/schedules  - Scheduled tasks
  DELETE /agents/chat/{conversation_id}            - Clear the transcript
  GET    /health                                   - Health check (DB connectivity)

Anything else is a JSON 404.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator
from sqlalchemy import text
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from driftwood.api.agent import ConversationAgent
from driftwood.api.transcript import DecisionError
from driftwood.storage.database import Database
from driftwood.stores.schedules import ScheduleManager
from driftwood.stores.schemas import Decision

logger = logging.getLogger(__name__)


class ChatRequest(BaseModel):
    message: str | None = None
    decisions: list[Decision] = Field(default_factory=list)

    @model_validator(mode="after")
    def _has_content(self) -> "ChatRequest":
        if not self.message and not self.decisions:
            raise ValueError("Provide a message, decisions, or both")
        return self


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


def create_app(
    agent: ConversationAgent,
    schedules: ScheduleManager,
    database: Database,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> Response:
        """POST /agents/chat/{conversation_id} - SSE streaming turn."""
        conversation_id = request.path_params["conversation_id"]
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        try:
            chat_request = ChatRequest.model_validate(body)
        except ValidationError as e:
            errors = "; ".join(err["msg"] for err in e.errors())
            return JSONResponse({"error": errors}, status_code=400)

        events = agent.stream_turn(
            conversation_id,
            message=chat_request.message,
            decisions=chat_request.decisions,
        )
        # Pull the first event here so bad decisions still get a 400
        try:
            first = await anext(events)
        except DecisionError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except StopAsyncIteration:
            first = None
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        async def event_generator():
            try:
                if first is not None:
                    yield _sse(first.to_dict())
                async for event in events:
                    yield _sse(event.to_dict())
            except Exception as e:
                logger.error("Stream error: %s", e)
                yield _sse({"type": "error", "text": str(e)})
            finally:
                await events.aclose()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def cancel_chat(request: Request) -> JSONResponse:
        """POST /agents/chat/{conversation_id}/cancel - Stop the running turn."""
        conversation_id = request.path_params["conversation_id"]
        cancelled = agent.cancel(conversation_id)
        return JSONResponse({"conversation_id": conversation_id, "cancelled": cancelled})

    async def get_messages(request: Request) -> JSONResponse:
        """GET /agents/chat/{conversation_id}/messages - Stored transcript."""
        conversation_id = request.path_params["conversation_id"]
        try:
            messages = await agent.get_messages(conversation_id)
        except Exception as e:
            logger.error("Get messages error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({
            "conversation_id": conversation_id,
            "messages": [m.model_dump(mode="json") for m in messages],
        })

    async def list_schedules(request: Request) -> JSONResponse:
        """GET /agents/chat/{conversation_id}/schedules - Scheduled tasks."""
        conversation_id = request.path_params["conversation_id"]
        try:
            tasks = await schedules.list(conversation_id)
        except Exception as e:
            logger.error("List schedules error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({
            "conversation_id": conversation_id,
            "tasks": [t.model_dump(mode="json") for t in tasks],
        })

    async def clear_chat(request: Request) -> JSONResponse:
        """DELETE /agents/chat/{conversation_id} - Clear a conversation."""
        conversation_id = request.path_params["conversation_id"]
        try:
            removed = await agent.clear(conversation_id)
        except Exception as e:
            logger.error("Clear chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({"status": "cleared", "conversation_id": conversation_id, "removed": removed})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    async def not_found(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse({"error": "Not found"}, status_code=404)

    routes = [
        Route("/agents/chat/{conversation_id}", chat, methods=["POST"]),
        Route("/agents/chat/{conversation_id}", clear_chat, methods=["DELETE"]),
        Route("/agents/chat/{conversation_id}/cancel", cancel_chat, methods=["POST"]),
        Route("/agents/chat/{conversation_id}/messages", get_messages),
        Route("/agents/chat/{conversation_id}/schedules", list_schedules),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes, "exception_handlers": {404: not_found}}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
