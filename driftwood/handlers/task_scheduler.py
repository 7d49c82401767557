"""Task Scheduler -- fires due scheduled tasks through named callbacks.

Runs a periodic check loop that:
1. Queries tasks whose next_fire_at <= now
2. Removes one-shot tasks and advances cron tasks
3. Invokes the task's callback with (conversation_id, description)

Tasks are marked fired before their callback runs, so a failing callback
is logged and not retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from driftwood.config import Settings
from driftwood.stores.schedules import ScheduleManager

logger = logging.getLogger(__name__)

TaskCallback = Callable[[str, str], Awaitable[None]]


class TaskScheduler:
    """Background scheduler that checks for due tasks and fires them.

    Runs a single asyncio task that wakes every schedule_check_interval
    seconds to fire any overdue tasks.
    """

    def __init__(
        self,
        schedules: ScheduleManager,
        settings: Settings,
        callbacks: dict[str, TaskCallback],
    ) -> None:
        self._schedules = schedules
        self._settings = settings
        self._callbacks = callbacks
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Start the scheduler check loop."""
        self._running = True
        self._task = asyncio.create_task(self._check_loop(), name="task-scheduler")
        logger.info(
            "Task scheduler started (check_interval=%ds)",
            self._settings.schedule_check_interval,
        )

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Task scheduler stopped")

    # ------------------------------------------------------------------
    # Check loop
    # ------------------------------------------------------------------

    async def _check_loop(self) -> None:
        """Periodic loop: sleep -> fire due tasks -> repeat."""
        while self._running:
            try:
                await asyncio.sleep(self._settings.schedule_check_interval)
                fired = await self._fire_due_tasks()
                if fired:
                    logger.info("Fired %d due task(s)", fired)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Schedule check failed")

    async def _fire_due_tasks(self, now: datetime | None = None) -> int:
        """Fire every due task. Returns the number of tasks fired."""
        now = now or datetime.now(UTC)
        due = await self._schedules.get_due(now)
        if not due:
            return 0

        fired = 0
        for task in due:
            callback = self._callbacks.get(task.callback)
            if callback is None:
                logger.error("Task %s names unknown callback %r", task.id[:8], task.callback)
                await self._schedules.mark_fired(task.id, now)
                continue

            await self._schedules.mark_fired(task.id, now)
            try:
                await callback(task.conversation_id, task.description)
                fired += 1
                logger.debug(
                    "Fired task %s (%s): %s",
                    task.id[:8], task.trigger_type, task.description[:80],
                )
            except Exception:
                logger.exception("Callback for task %s failed", task.id[:8])

        return fired
