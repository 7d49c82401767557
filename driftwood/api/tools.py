"""Tool registry for direct Anthropic API integration.

Provides:
- ToolName: the closed set of tool kinds the model may call
- ToolDefinition: immutable catalog entry with a pydantic input model
- ToolRegistry: classifies, validates and dispatches tool calls

Confirmation-required tools have no execute function in the catalog.
Their implementations live in ``ToolRegistry.executions`` and are only
called after a human approves the specific call.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


class ToolName(StrEnum):
    CREATE_MESSAGE_IN_BOTTLE = "create_message_in_bottle"
    GET_MESSAGE_IN_BOTTLE = "get_message_in_bottle"
    GET_WEATHER_INFORMATION = "get_weather_information"
    GET_LOCAL_TIME = "get_local_time"
    SCHEDULE_TASK = "schedule_task"
    LIST_SCHEDULED_TASKS = "list_scheduled_tasks"
    CANCEL_SCHEDULED_TASK = "cancel_scheduled_task"


class ToolClass(StrEnum):
    AUTO_EXECUTE = "auto-execute"
    CONFIRMATION_REQUIRED = "confirmation-required"
    UNKNOWN = "unknown"


class ToolValidationError(ValueError):
    """Unknown tool name or input that does not match the tool's schema."""


@dataclass(frozen=True)
class ToolContext:
    """Per-call context handed to tool implementations."""

    conversation_id: str


ToolFunction = Callable[[Any, ToolContext], Awaitable[str]]


@dataclass(frozen=True)
class ToolDefinition:
    name: ToolName
    description: str
    input_model: type[BaseModel]
    requires_confirmation: bool = False
    execute: ToolFunction | None = None

    def __post_init__(self) -> None:
        if self.requires_confirmation and self.execute is not None:
            raise ValueError(f"{self.name}: confirmation-required tools carry no execute function")
        if not self.requires_confirmation and self.execute is None:
            raise ValueError(f"{self.name}: auto-execute tools need an execute function")

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()


def _format_validation_error(name: str, exc: PydanticValidationError) -> str:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in exc.errors()
    )
    return f"Invalid input for {name}: {problems}"


class ToolRegistry:
    """Static catalog of tool definitions plus the confirmation execution map.

    Built once at startup. ``dispatch`` keeps the (result_text, is_error)
    contract used by the orchestration loop.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self.executions: dict[str, ToolFunction] = {}

    def register(self, definition: ToolDefinition, execution: ToolFunction | None = None) -> None:
        """Add a tool. Confirmation-required tools must supply ``execution``."""
        if definition.name in self._tools:
            raise ValueError(f"Tool already registered: {definition.name}")
        if definition.requires_confirmation:
            if execution is None:
                raise ValueError(f"{definition.name}: confirmation-required tools need an execution")
            self.executions[definition.name] = execution
        self._tools[definition.name] = definition

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def classify(self, name: str) -> ToolClass:
        definition = self._tools.get(name)
        if definition is None:
            return ToolClass.UNKNOWN
        if definition.requires_confirmation:
            return ToolClass.CONFIRMATION_REQUIRED
        return ToolClass.AUTO_EXECUTE

    def schema(self, name: str) -> dict[str, Any]:
        definition = self._tools.get(name)
        if definition is None:
            raise ToolValidationError(f"Unknown tool: {name}")
        return definition.input_schema

    def validate(self, name: str, raw_input: dict[str, Any] | None) -> BaseModel:
        """Parse raw model input into the tool's input model."""
        definition = self._tools.get(name)
        if definition is None:
            raise ToolValidationError(f"Unknown tool: {name}")
        try:
            return definition.input_model.model_validate(raw_input or {})
        except PydanticValidationError as e:
            raise ToolValidationError(_format_validation_error(name, e)) from e

    async def invoke(self, name: str, args: BaseModel, context: ToolContext) -> str:
        """Run an auto-execute tool. Confirmation-required tools are refused."""
        definition = self._tools.get(name)
        if definition is None:
            raise ToolValidationError(f"Unknown tool: {name}")
        if definition.execute is None:
            raise ToolValidationError(f"Tool {name} requires human confirmation")
        return await definition.execute(args, context)

    async def execute_confirmed(self, name: str, raw_input: dict[str, Any], context: ToolContext) -> str:
        """Run the execution function of an approved confirmation-required call."""
        execution = self.executions.get(name)
        if execution is None:
            raise ToolValidationError(f"No execution registered for tool: {name}")
        args = self.validate(name, raw_input)
        return await execution(args, context)

    async def dispatch(self, name: str, raw_input: dict[str, Any] | None, context: ToolContext) -> tuple[str, bool]:
        """Validate and run an auto-execute tool, returning (result_text, is_error)."""
        try:
            args = self.validate(name, raw_input)
            result = await self.invoke(name, args, context)
            return result, False
        except ToolValidationError as e:
            return str(e), True
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return f"Tool error: {e}", True

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [
            {
                "name": str(definition.name),
                "description": definition.description,
                "input_schema": definition.input_schema,
            }
            for definition in self._tools.values()
        ]
