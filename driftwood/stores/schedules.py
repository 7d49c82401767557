"""Schedule manager -- CRUD and due-task operations for deferred invocations."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from croniter import croniter
from sqlalchemy import delete, select

from driftwood.storage.database import Database
from driftwood.storage.models import ScheduledTaskRow
from driftwood.stores.schemas import (
    CronTrigger,
    DelayedTrigger,
    ScheduledTask,
    ScheduledTrigger,
    Trigger,
    new_id,
)

logger = logging.getLogger(__name__)

EXECUTE_TASK_CALLBACK = "execute_task"


def next_cron_fire(cron_expr: str, after: datetime) -> datetime:
    return croniter(cron_expr, after).get_next(datetime)


class ScheduleManager:
    """Manages scheduled tasks, scoped per conversation."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(
        self,
        conversation_id: str,
        trigger: Trigger,
        description: str,
        callback: str = EXECUTE_TASK_CALLBACK,
    ) -> ScheduledTask:
        """Register a task. Raises ValueError for an unusable trigger."""
        now = datetime.now(UTC)
        row = ScheduledTaskRow(
            id=new_id(),
            conversation_id=conversation_id,
            callback=callback,
            description=description,
            trigger_type=trigger.type,
            fire_count=0,
            created_at=now,
        )
        if isinstance(trigger, ScheduledTrigger):
            row.fire_at = trigger.date
            row.next_fire_at = trigger.date
        elif isinstance(trigger, DelayedTrigger):
            row.delay_seconds = trigger.delay_in_seconds
            row.next_fire_at = now + timedelta(seconds=trigger.delay_in_seconds)
        elif isinstance(trigger, CronTrigger):
            if not croniter.is_valid(trigger.cron):
                raise ValueError(f"Invalid cron expression: {trigger.cron!r}")
            row.cron_expr = trigger.cron
            row.next_fire_at = next_cron_fire(trigger.cron, now)
        else:
            raise ValueError(f"Unsupported trigger: {trigger!r}")

        await self._db.ensure_schema()
        async with self._db.session() as session:
            session.add(row)
            await session.commit()
            task = ScheduledTask.model_validate(row)
        logger.info(
            "Created %s task %s for %s: %s (next: %s)",
            task.trigger_type, task.id[:8], conversation_id, description[:80], task.next_fire_at,
        )
        return task

    async def list(self, conversation_id: str) -> list[ScheduledTask]:
        """All tasks for a conversation, soonest first."""
        await self._db.ensure_schema()
        async with self._db.session() as session:
            result = await session.execute(
                select(ScheduledTaskRow)
                .where(ScheduledTaskRow.conversation_id == conversation_id)
                .order_by(ScheduledTaskRow.next_fire_at)
            )
            return [ScheduledTask.model_validate(row) for row in result.scalars()]

    async def get(self, task_id: str) -> ScheduledTask | None:
        await self._db.ensure_schema()
        async with self._db.session() as session:
            row = await session.get(ScheduledTaskRow, task_id)
            return ScheduledTask.model_validate(row) if row else None

    async def cancel(self, conversation_id: str, task_id: str) -> bool:
        """Delete a task. Returns False when no such task exists."""
        await self._db.ensure_schema()
        async with self._db.session() as session, session.begin():
            result = await session.execute(
                delete(ScheduledTaskRow)
                .where(ScheduledTaskRow.id == task_id)
                .where(ScheduledTaskRow.conversation_id == conversation_id)
            )
        if result.rowcount:
            logger.info("Cancelled task %s", task_id[:8])
            return True
        logger.info("Cancel requested for unknown task %s", task_id[:8])
        return False

    async def get_due(self, now: datetime) -> list[ScheduledTask]:
        """All tasks whose next_fire_at <= now, across conversations."""
        await self._db.ensure_schema()
        async with self._db.session() as session:
            result = await session.execute(
                select(ScheduledTaskRow)
                .where(ScheduledTaskRow.next_fire_at <= now)
                .order_by(ScheduledTaskRow.next_fire_at)
            )
            return [ScheduledTask.model_validate(row) for row in result.scalars()]

    async def mark_fired(self, task_id: str, fired_at: datetime) -> None:
        """Delete a fired one-shot task or advance a cron task."""
        async with self._db.session() as session, session.begin():
            row = await session.get(ScheduledTaskRow, task_id)
            if row is None:
                return
            if row.cron_expr:
                row.fire_count += 1
                row.last_fired_at = fired_at
                row.next_fire_at = next_cron_fire(row.cron_expr, fired_at)
                logger.info(
                    "Advanced task %s (fire #%d, next: %s)",
                    task_id[:8], row.fire_count, row.next_fire_at,
                )
            else:
                await session.delete(row)
                logger.info("Removed one-shot task %s after firing", task_id[:8])
