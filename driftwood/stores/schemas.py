"""Pydantic DTOs for transcripts, scheduled tasks, and triggers.

These models define the public contract shared by the stores, the
transcript resolver, and the orchestration loop.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal
from uuid import uuid4

from croniter import croniter
from pydantic import AliasChoices, BaseModel, Field, field_validator

Role = Literal["user", "assistant", "system"]
ToolStatus = Literal[
    "pending-confirmation",
    "approved",
    "denied",
    "auto-executing",
    "completed",
    "errored",
]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "errored"})
DECIDED_STATUSES: frozenset[str] = frozenset({"approved", "denied"})
OPEN_STATUSES: frozenset[str] = frozenset({"pending-confirmation", "auto-executing"})


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid4().hex}"


# --- Transcript ---


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolInvocationPart(BaseModel):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    call_id: str
    status: ToolStatus
    output: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


ContentPart = Annotated[TextPart | ToolInvocationPart, Field(discriminator="type")]


class Message(BaseModel):
    """A single transcript message."""

    id: str = Field(default_factory=lambda: new_id("msg_"))
    role: Role
    parts: list[ContentPart] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return _utc(value)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", parts=[TextPart(text=text)])

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def tool_parts(self) -> list[ToolInvocationPart]:
        return [p for p in self.parts if isinstance(p, ToolInvocationPart)]


class Decision(BaseModel):
    """A human approve/deny decision for one pending tool call."""

    call_id: str
    approved: bool


# --- Scheduling ---


class ScheduledTrigger(BaseModel):
    """Fire once at an absolute timestamp."""

    type: Literal["scheduled"]
    date: datetime

    @field_validator("date")
    @classmethod
    def _date_utc(cls, value: datetime) -> datetime:
        return _utc(value)


class DelayedTrigger(BaseModel):
    """Fire once after a delay in seconds."""

    type: Literal["delayed"]
    delay_in_seconds: int = Field(
        gt=0,
        validation_alias=AliasChoices("delay_in_seconds", "delayInSeconds"),
    )


class CronTrigger(BaseModel):
    """Fire repeatedly on a cron expression until cancelled."""

    type: Literal["cron"]
    cron: str

    @field_validator("cron")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value


Trigger = Annotated[ScheduledTrigger | DelayedTrigger | CronTrigger, Field(discriminator="type")]


class ScheduledTask(BaseModel):
    """A registered deferred invocation."""

    id: str
    conversation_id: str
    callback: str
    description: str
    trigger_type: Literal["scheduled", "delayed", "cron"]
    fire_at: datetime | None = None
    delay_seconds: int | None = None
    cron_expr: str | None = None
    next_fire_at: datetime
    last_fired_at: datetime | None = None
    fire_count: int = 0
    created_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("fire_at", "next_fire_at", "last_fired_at", "created_at")
    @classmethod
    def _times_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value)

    @property
    def is_recurring(self) -> bool:
        return self.trigger_type == "cron"

    @property
    def trigger_value(self) -> str:
        if self.trigger_type == "cron":
            return self.cron_expr or ""
        if self.trigger_type == "delayed":
            return f"{self.delay_seconds}s"
        return self.fire_at.isoformat() if self.fire_at else ""
