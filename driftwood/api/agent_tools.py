"""Driftwood agent tools and their registration.

Auto-execute (run as soon as the model asks):
  - get_local_time: format "now" for a timezone and BCP 47 locale
  - schedule_task / list_scheduled_tasks / cancel_scheduled_task

Confirmation-required (run only after a human approves the call):
  - create_message_in_bottle / get_message_in_bottle: BottleStore access
  - get_weather_information: Open-Meteo lookup

Every tool returns plain text. Expected failures come back as text so the
model can relay them; ToolValidationError marks bad input.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from babel import Locale, UnknownLocaleError
from babel.dates import format_date, format_time, get_datetime_format
from pydantic import BaseModel, Field

from driftwood.api.tools import ToolContext, ToolDefinition, ToolName, ToolRegistry, ToolValidationError
from driftwood.api.weather import get_weather
from driftwood.config import Settings
from driftwood.stores.bottles import BottleStoreDirectory
from driftwood.stores.schedules import ScheduleManager
from driftwood.stores.schemas import Trigger

logger = logging.getLogger(__name__)

NO_BOTTLES_MESSAGE = "No currently existing messages in bottles"
NO_SCHEDULED_TASKS_MESSAGE = "No scheduled tasks found."


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class CreateMessageInBottleInput(BaseModel):
    message: str = Field(min_length=1, description="The message to seal in the bottle")


class GetMessageInBottleInput(BaseModel):
    pass


class GetWeatherInformationInput(BaseModel):
    city: str = Field(min_length=1, description="City name, e.g. 'Austin'")
    latitude: float | None = Field(None, ge=-90, le=90, description="Optional latitude of the city")
    longitude: float | None = Field(None, ge=-180, le=180, description="Optional longitude of the city")


class GetLocalTimeInput(BaseModel):
    language_tag: str = Field(description="BCP 47 language tag for formatting, e.g. 'zh-CN'")
    timezone: str = Field(description="IANA timezone name, e.g. 'Asia/Shanghai'")


class ScheduleTaskInput(BaseModel):
    when: Trigger = Field(
        description=(
            "When to run: {type: 'scheduled', date: ISO 8601}, "
            "{type: 'delayed', delay_in_seconds: int}, or {type: 'cron', cron: expression}"
        )
    )
    description: str = Field(min_length=1, description="What to do when the task fires")


class ListScheduledTasksInput(BaseModel):
    pass


class CancelScheduledTaskInput(BaseModel):
    task_id: str = Field(min_length=1, description="The ID of the task to cancel")


# ---------------------------------------------------------------------------
# Local time
# ---------------------------------------------------------------------------


def format_local_time(language_tag: str, timezone: str, now: datetime | None = None) -> str:
    """Full date and long time in ``timezone``, formatted for ``language_tag``."""
    try:
        tz = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ToolValidationError(f"Unknown timezone: {timezone}") from e
    try:
        locale = Locale.parse(language_tag, sep="-")
    except (UnknownLocaleError, ValueError, TypeError) as e:
        raise ToolValidationError(f"Unknown language tag: {language_tag}") from e

    local = (now or datetime.now(tz)).astimezone(tz)
    pattern = get_datetime_format("full", locale=locale)
    return (
        pattern.replace("'", "")
        .replace("{0}", format_time(local, "long", tzinfo=tz, locale=locale))
        .replace("{1}", format_date(local, "full", locale=locale))
    )


# ---------------------------------------------------------------------------
# Tool closures
# ---------------------------------------------------------------------------


def create_agent_tools(
    bottles: BottleStoreDirectory,
    schedules: ScheduleManager,
    settings: Settings,
    http: httpx.AsyncClient,
) -> dict[str, Any]:
    """Create tool closures with stores and clients captured in closure context."""

    store_name = settings.bottle_store_name

    async def create_message_in_bottle(args: CreateMessageInBottleInput, context: ToolContext) -> str:
        return await bottles.get(store_name).insert(args.message)

    async def get_message_in_bottle(args: GetMessageInBottleInput, context: ToolContext) -> str:
        text = await bottles.get(store_name).pop_random()
        return NO_BOTTLES_MESSAGE if text is None else text

    async def get_weather_information(args: GetWeatherInformationInput, context: ToolContext) -> str:
        return await get_weather(
            args.city, args.latitude, args.longitude, _settings=settings, _http=http
        )

    async def get_local_time(args: GetLocalTimeInput, context: ToolContext) -> str:
        logger.info("Getting local time for %s", args.timezone)
        return format_local_time(args.language_tag, args.timezone)

    async def schedule_task(args: ScheduleTaskInput, context: ToolContext) -> str:
        try:
            task = await schedules.create(context.conversation_id, args.when, args.description)
        except ValueError as e:
            return f"Error scheduling task: {e}"
        except Exception as e:
            logger.exception("schedule_task tool failed")
            return f"Error scheduling task: {e}"
        return (
            f'Task scheduled for type "{task.trigger_type}" : {task.trigger_value}\n'
            f"ID: {task.id}\n"
            f"Next fire: {task.next_fire_at.isoformat()}"
        )

    async def list_scheduled_tasks(args: ListScheduledTasksInput, context: ToolContext) -> str:
        try:
            tasks = await schedules.list(context.conversation_id)
        except Exception as e:
            logger.exception("Error listing scheduled tasks")
            return f"Error listing scheduled tasks: {e}"
        if not tasks:
            return NO_SCHEDULED_TASKS_MESSAGE
        lines = ["Scheduled tasks:"]
        for task in tasks:
            lines.append(
                f"- [{task.trigger_type}] {task.id} | {task.description[:80]} "
                f"(trigger: {task.trigger_value}, next: {task.next_fire_at.strftime('%Y-%m-%d %H:%M:%S UTC')})"
            )
        return "\n".join(lines)

    async def cancel_scheduled_task(args: CancelScheduledTaskInput, context: ToolContext) -> str:
        try:
            cancelled = await schedules.cancel(context.conversation_id, args.task_id)
        except Exception as e:
            logger.exception("Error canceling scheduled task")
            return f"Error canceling task {args.task_id}: {e}"
        if cancelled:
            return f"Task {args.task_id} has been successfully canceled."
        return f"Task {args.task_id} not found."

    return {
        ToolName.CREATE_MESSAGE_IN_BOTTLE: create_message_in_bottle,
        ToolName.GET_MESSAGE_IN_BOTTLE: get_message_in_bottle,
        ToolName.GET_WEATHER_INFORMATION: get_weather_information,
        ToolName.GET_LOCAL_TIME: get_local_time,
        ToolName.SCHEDULE_TASK: schedule_task,
        ToolName.LIST_SCHEDULED_TASKS: list_scheduled_tasks,
        ToolName.CANCEL_SCHEDULED_TASK: cancel_scheduled_task,
    }


def register_agent_tools(
    registry: ToolRegistry,
    bottles: BottleStoreDirectory,
    schedules: ScheduleManager,
    settings: Settings,
    http: httpx.AsyncClient,
) -> None:
    """Create the agent tools and register them with the registry.

    Called once at startup.
    """
    closures = create_agent_tools(bottles, schedules, settings, http)

    # Confirmation-required: catalog entry without execute, implementation in executions
    registry.register(
        ToolDefinition(
            name=ToolName.CREATE_MESSAGE_IN_BOTTLE,
            description="Create a message in a bottle for users to later find",
            input_model=CreateMessageInBottleInput,
            requires_confirmation=True,
        ),
        execution=closures[ToolName.CREATE_MESSAGE_IN_BOTTLE],
    )
    registry.register(
        ToolDefinition(
            name=ToolName.GET_MESSAGE_IN_BOTTLE,
            description="Obtain a message in a bottle which was previously created",
            input_model=GetMessageInBottleInput,
            requires_confirmation=True,
        ),
        execution=closures[ToolName.GET_MESSAGE_IN_BOTTLE],
    )
    registry.register(
        ToolDefinition(
            name=ToolName.GET_WEATHER_INFORMATION,
            description="Show the weather at a given city to the user",
            input_model=GetWeatherInformationInput,
            requires_confirmation=True,
        ),
        execution=closures[ToolName.GET_WEATHER_INFORMATION],
    )

    # Auto-execute
    registry.register(
        ToolDefinition(
            name=ToolName.GET_LOCAL_TIME,
            description="Get the local time and date for a specified location",
            input_model=GetLocalTimeInput,
            execute=closures[ToolName.GET_LOCAL_TIME],
        )
    )
    registry.register(
        ToolDefinition(
            name=ToolName.SCHEDULE_TASK,
            description="Schedule a task to be executed at a later time",
            input_model=ScheduleTaskInput,
            execute=closures[ToolName.SCHEDULE_TASK],
        )
    )
    registry.register(
        ToolDefinition(
            name=ToolName.LIST_SCHEDULED_TASKS,
            description="List all tasks that have been scheduled",
            input_model=ListScheduledTasksInput,
            execute=closures[ToolName.LIST_SCHEDULED_TASKS],
        )
    )
    registry.register(
        ToolDefinition(
            name=ToolName.CANCEL_SCHEDULED_TASK,
            description="Cancel a scheduled task using its ID",
            input_model=CancelScheduledTaskInput,
            execute=closures[ToolName.CANCEL_SCHEDULED_TASK],
        )
    )
