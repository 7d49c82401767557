"""SQLAlchemy ORM models for the Driftwood tables.

Column types stay portable (generic JSON with a JSONB variant) so the same
models run on PostgreSQL in production and SQLite in tests.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


class Bottle(Base):
    """One message in a bottle, scoped to a named store."""

    __tablename__ = "bottles"
    __table_args__ = (
        Index("ix_bottles_store_name", "store_name"),
        # SQLite otherwise reuses the rowid of a deleted top row
        {"sqlite_autoincrement": True},
    )

    # Ids only ever increase; deleted ids are never handed out again
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_name: Mapped[str] = mapped_column(String(100), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ScheduledTaskRow(Base):
    """Deferred invocation registered by the schedule_task tool."""

    __tablename__ = "scheduled_tasks"
    __table_args__ = (
        CheckConstraint(
            "trigger_type IN ('scheduled', 'delayed', 'cron')",
            name="chk_scheduled_task_trigger",
        ),
        Index("ix_scheduled_tasks_conversation", "conversation_id"),
        Index("ix_scheduled_tasks_next_fire", "next_fire_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(200), nullable=False)
    callback: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(20), nullable=False)
    fire_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delay_seconds: Mapped[int | None] = mapped_column(Integer)
    cron_expr: Mapped[str | None] = mapped_column(String(200))
    next_fire_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_fired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fire_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ChatMessage(Base):
    """One transcript message; parts hold the text/tool-invocation union."""

    __tablename__ = "chat_messages"
    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'assistant', 'system')",
            name="chk_chat_message_role",
        ),
        Index("ix_chat_messages_conversation", "conversation_id", "position"),
    )

    conversation_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    parts: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
