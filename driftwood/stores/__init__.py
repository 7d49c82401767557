"""Stores -- durable state owned by Driftwood actors.

Public API: the three managers plus the shared schema types.
"""

from driftwood.stores.bottles import BottleStore, BottleStoreDirectory, StorageError
from driftwood.stores.conversations import ConversationStore
from driftwood.stores.schedules import EXECUTE_TASK_CALLBACK, ScheduleManager
from driftwood.stores.schemas import (
    ContentPart,
    CronTrigger,
    Decision,
    DelayedTrigger,
    Message,
    ScheduledTask,
    ScheduledTrigger,
    TextPart,
    ToolInvocationPart,
    ToolStatus,
    Trigger,
)

__all__ = [
    "BottleStore",
    "BottleStoreDirectory",
    "ConversationStore",
    "EXECUTE_TASK_CALLBACK",
    "ScheduleManager",
    "StorageError",
    # Transcript
    "ContentPart",
    "Decision",
    "Message",
    "TextPart",
    "ToolInvocationPart",
    "ToolStatus",
    # Scheduling
    "CronTrigger",
    "DelayedTrigger",
    "ScheduledTask",
    "ScheduledTrigger",
    "Trigger",
]
