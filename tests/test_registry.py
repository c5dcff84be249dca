"""Tests for the tool registry."""

import pytest
from pydantic import Field

from chatmem.errors import NotPermitted
from chatmem.tools.base import BaseTool, ToolContext, ToolParams, ToolResult
from chatmem.tools.registry import ToolRegistry


class AddParams(ToolParams):
    a: int = Field(description="First number")
    b: int = Field(default=1, description="Second number")


class AddTool(BaseTool):
    name = "add"
    description = "Add two numbers"
    params_model = AddParams

    async def run(self, ctx: ToolContext | None, a: int, b: int) -> ToolResult:
        return ToolResult(data={"sum": a + b})


class WhoAmITool(BaseTool):
    name = "whoami"
    description = "Report the caller"

    async def run(self, ctx: ToolContext | None) -> ToolResult:
        if ctx is None:
            return ToolResult(error="No caller")
        return ToolResult(data={"user": ctx.user_id, "guild": ctx.guild_id})


class FailingTool(BaseTool):
    name = "boom"
    description = "Always fails"

    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    async def run(self, ctx: ToolContext | None) -> ToolResult:
        raise self.exc


# -- Fixtures ----------------------------------------------------------------


@pytest.fixture
def reg() -> ToolRegistry:
    """Registry with the add and whoami tools."""
    registry = ToolRegistry()
    registry.register(AddTool())
    registry.register(WhoAmITool())
    return registry


# -- Registration ------------------------------------------------------------


def test_register_tools(reg: ToolRegistry) -> None:
    assert reg.tool_names == ["add", "whoami"]
    assert isinstance(reg.get("add"), AddTool)
    assert reg.get("missing") is None


def test_register_rejects_duplicate_names(reg: ToolRegistry) -> None:
    with pytest.raises(ValueError, match="already registered"):
        reg.register(AddTool())


def test_register_rejects_unnamed_tool(reg: ToolRegistry) -> None:
    class Unnamed(BaseTool):
        async def run(self, ctx: ToolContext | None) -> ToolResult:
            return ToolResult()

    with pytest.raises(ValueError, match="has no name"):
        reg.register(Unnamed())


# -- Schema generation -------------------------------------------------------


def test_schema_for_tool_with_params(reg: ToolRegistry) -> None:
    schema = next(s for s in reg.get_schemas() if s["name"] == "add")

    assert schema["description"] == "Add two numbers"
    props = schema["input_schema"]["properties"]
    assert props["a"]["type"] == "integer"
    assert schema["input_schema"]["required"] == ["a"]


def test_schema_for_tool_without_params(reg: ToolRegistry) -> None:
    schema = next(s for s in reg.get_schemas() if s["name"] == "whoami")

    assert schema["input_schema"]["type"] == "object"
    assert schema["input_schema"]["properties"] == {}


# -- Execution ---------------------------------------------------------------


async def test_execute_with_params(reg: ToolRegistry) -> None:
    result = await reg.execute("add", {"a": 3, "b": 7})

    assert result.success
    assert result.data == {"sum": 10}


async def test_execute_applies_defaults(reg: ToolRegistry) -> None:
    result = await reg.execute("add", {"a": 3})

    assert result.data == {"sum": 4}


async def test_execute_unknown_tool(reg: ToolRegistry) -> None:
    result = await reg.execute("nonexistent", {})

    assert result.error == "Unknown tool: nonexistent"


async def test_execute_with_invalid_params(reg: ToolRegistry) -> None:
    result = await reg.execute("add", {"a": "not_a_number"})

    assert not result.success
    assert result.error.startswith("Invalid arguments for add: a:")


async def test_execute_with_missing_params(reg: ToolRegistry) -> None:
    result = await reg.execute("add", {})

    assert result.error.startswith("Invalid arguments for add: a:")


async def test_domain_errors_are_reported_verbatim(reg: ToolRegistry) -> None:
    reg.register(FailingTool(NotPermitted("allow_delete")))

    result = await reg.execute("boom", {})

    assert result.error == "Operation not permitted: allow_delete is disabled"


async def test_unexpected_errors_are_reported_generically(reg: ToolRegistry) -> None:
    reg.register(FailingTool(RuntimeError("kaboom")))

    result = await reg.execute("boom", {})

    assert result.error == "Tool 'boom' failed. Check logs for details."


# -- Call context ------------------------------------------------------------


async def test_context_is_passed_to_tool(reg: ToolRegistry) -> None:
    result = await reg.execute("whoami", {}, ToolContext(user_id="u1", guild_id="g1"))

    assert result.data == {"user": "u1", "guild": "g1"}


async def test_context_is_optional(reg: ToolRegistry) -> None:
    result = await reg.execute("whoami", {})

    assert result.error == "No caller"


# -- ToolResult serialization ------------------------------------------------


def test_tool_result_success_serialization() -> None:
    r = ToolResult(data={"key": "val"})
    assert r.success
    assert r.to_content() == '{"key": "val"}'


def test_tool_result_error_serialization() -> None:
    r = ToolResult(error="something broke")
    assert not r.success
    assert r.to_content() == '{"error": "something broke"}'
