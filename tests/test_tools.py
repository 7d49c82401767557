"""Tests for the tool registry: classification, validation, dispatch."""

import pytest
from pydantic import BaseModel, Field

from driftwood.api.tools import (
    ToolClass,
    ToolContext,
    ToolDefinition,
    ToolName,
    ToolRegistry,
    ToolValidationError,
)

CONTEXT = ToolContext(conversation_id="conv-1")


class ZoneInput(BaseModel):
    timezone: str = Field(min_length=1)


class NoteInput(BaseModel):
    message: str


@pytest.fixture
def registry():
    registry = ToolRegistry()

    async def local_time(args: ZoneInput, context: ToolContext) -> str:
        if args.timezone == "boom":
            raise RuntimeError("clock broke")
        return f"noon in {args.timezone} for {context.conversation_id}"

    async def save_note(args: NoteInput, context: ToolContext) -> str:
        return f"saved {args.message}"

    registry.register(
        ToolDefinition(
            name=ToolName.GET_LOCAL_TIME,
            description="Local time",
            input_model=ZoneInput,
            execute=local_time,
        )
    )
    registry.register(
        ToolDefinition(
            name=ToolName.CREATE_MESSAGE_IN_BOTTLE,
            description="Save a note",
            input_model=NoteInput,
            requires_confirmation=True,
        ),
        execution=save_note,
    )
    return registry


class TestDefinitions:

    def test_confirmation_tool_cannot_carry_execute(self):
        async def run(args, context):
            return ""

        with pytest.raises(ValueError, match="confirmation-required"):
            ToolDefinition(
                name=ToolName.GET_MESSAGE_IN_BOTTLE,
                description="x",
                input_model=NoteInput,
                requires_confirmation=True,
                execute=run,
            )

    def test_auto_tool_needs_execute(self):
        with pytest.raises(ValueError, match="auto-execute"):
            ToolDefinition(name=ToolName.SCHEDULE_TASK, description="x", input_model=NoteInput)

    def test_duplicate_registration_rejected(self, registry):
        async def run(args, context):
            return ""

        with pytest.raises(ValueError, match="already registered"):
            registry.register(
                ToolDefinition(
                    name=ToolName.GET_LOCAL_TIME, description="x", input_model=ZoneInput, execute=run
                )
            )

    def test_confirmation_tool_needs_execution(self):
        registry = ToolRegistry()
        with pytest.raises(ValueError, match="need an execution"):
            registry.register(
                ToolDefinition(
                    name=ToolName.GET_WEATHER_INFORMATION,
                    description="x",
                    input_model=NoteInput,
                    requires_confirmation=True,
                )
            )


class TestClassify:

    def test_classes(self, registry):
        assert registry.classify("get_local_time") == ToolClass.AUTO_EXECUTE
        assert registry.classify("create_message_in_bottle") == ToolClass.CONFIRMATION_REQUIRED
        assert registry.classify("launch_rockets") == ToolClass.UNKNOWN

    def test_contains_and_names(self, registry):
        assert "get_local_time" in registry
        assert "launch_rockets" not in registry
        assert registry.names() == ["get_local_time", "create_message_in_bottle"]
        assert set(registry.executions) == {"create_message_in_bottle"}

    def test_schema(self, registry):
        schema = registry.schema("get_local_time")
        assert schema["properties"]["timezone"]["type"] == "string"
        assert schema["required"] == ["timezone"]
        with pytest.raises(ToolValidationError):
            registry.schema("launch_rockets")

    def test_tool_definitions_anthropic_format(self, registry):
        defs = registry.tool_definitions()
        assert [d["name"] for d in defs] == ["get_local_time", "create_message_in_bottle"]
        assert set(defs[0]) == {"name", "description", "input_schema"}
        assert defs[1]["input_schema"]["required"] == ["message"]


class TestValidate:

    def test_valid(self, registry):
        args = registry.validate("get_local_time", {"timezone": "UTC"})
        assert args.timezone == "UTC"

    def test_invalid_input(self, registry):
        with pytest.raises(ToolValidationError, match="Invalid input for get_local_time: timezone"):
            registry.validate("get_local_time", {"timezone": ""})

    def test_missing_input_treated_as_empty(self, registry):
        with pytest.raises(ToolValidationError, match="Field required"):
            registry.validate("get_local_time", None)

    def test_unknown_tool(self, registry):
        with pytest.raises(ToolValidationError, match="Unknown tool: launch_rockets"):
            registry.validate("launch_rockets", {})


class TestInvokeAndDispatch:

    async def test_invoke_auto_tool(self, registry):
        args = registry.validate("get_local_time", {"timezone": "UTC"})
        assert await registry.invoke("get_local_time", args, CONTEXT) == "noon in UTC for conv-1"

    async def test_invoke_refuses_confirmation_tool(self, registry):
        args = registry.validate("create_message_in_bottle", {"message": "hi"})
        with pytest.raises(ToolValidationError, match="requires human confirmation"):
            await registry.invoke("create_message_in_bottle", args, CONTEXT)

    async def test_execute_confirmed(self, registry):
        result = await registry.execute_confirmed("create_message_in_bottle", {"message": "hi"}, CONTEXT)
        assert result == "saved hi"

    async def test_execute_confirmed_rejects_auto_tool(self, registry):
        with pytest.raises(ToolValidationError, match="No execution registered"):
            await registry.execute_confirmed("get_local_time", {"timezone": "UTC"}, CONTEXT)

    async def test_dispatch_success(self, registry):
        assert await registry.dispatch("get_local_time", {"timezone": "UTC"}, CONTEXT) == (
            "noon in UTC for conv-1",
            False,
        )

    async def test_dispatch_unknown_tool(self, registry):
        text, is_error = await registry.dispatch("launch_rockets", {}, CONTEXT)
        assert is_error
        assert text == "Unknown tool: launch_rockets"

    async def test_dispatch_invalid_input(self, registry):
        text, is_error = await registry.dispatch("get_local_time", {}, CONTEXT)
        assert is_error
        assert text.startswith("Invalid input for get_local_time")

    async def test_dispatch_exception_becomes_error_text(self, registry):
        text, is_error = await registry.dispatch("get_local_time", {"timezone": "boom"}, CONTEXT)
        assert is_error
        assert text == "Tool error: clock broke"
