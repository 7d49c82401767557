"""Conversation store -- durable transcripts keyed by conversation id."""

import logging

from sqlalchemy import delete, select

from driftwood.storage.database import Database
from driftwood.storage.models import ChatMessage
from driftwood.stores.schemas import Message

logger = logging.getLogger(__name__)


class ConversationStore:
    """Loads and saves whole transcripts.

    Callers serialize access per conversation id; the store itself only
    guarantees that one save is applied atomically.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    async def load(self, conversation_id: str) -> list[Message]:
        """Return the transcript in order (empty for a new conversation)."""
        await self._db.ensure_schema()
        async with self._db.session() as session:
            result = await session.execute(
                select(ChatMessage)
                .where(ChatMessage.conversation_id == conversation_id)
                .order_by(ChatMessage.position)
            )
            return [
                Message(id=row.id, role=row.role, parts=row.parts, created_at=row.created_at)
                for row in result.scalars()
            ]

    async def save(self, conversation_id: str, messages: list[Message]) -> None:
        """Replace the stored transcript with ``messages`` in one transaction."""
        await self._db.ensure_schema()
        async with self._db.session() as session, session.begin():
            await session.execute(
                delete(ChatMessage).where(ChatMessage.conversation_id == conversation_id)
            )
            for position, message in enumerate(messages):
                session.add(
                    ChatMessage(
                        conversation_id=conversation_id,
                        id=message.id,
                        position=position,
                        role=message.role,
                        parts=[p.model_dump(mode="json") for p in message.parts],
                        created_at=message.created_at,
                    )
                )
        logger.debug("Saved %d message(s) for conversation %s", len(messages), conversation_id)

    async def clear(self, conversation_id: str) -> int:
        """Delete a conversation's transcript. Returns the number of rows removed."""
        await self._db.ensure_schema()
        async with self._db.session() as session, session.begin():
            result = await session.execute(
                delete(ChatMessage).where(ChatMessage.conversation_id == conversation_id)
            )
        logger.info("Cleared conversation %s (%d messages)", conversation_id, result.rowcount)
        return result.rowcount
