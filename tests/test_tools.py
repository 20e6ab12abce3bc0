"""Tests for AgentTool definitions and ToolSet dispatch."""

import pytest
from pydantic import BaseModel, ValidationError

from rein.cancellation import CancellationToken
from rein.tools import AgentTool, ToolSet


class AddInput(BaseModel):
    a: int
    b: int


class AddOutput(BaseModel):
    sum: int


def _add(args: AddInput, token: CancellationToken) -> dict:
    return {"sum": args.a + args.b}


async def _echo(args: dict, token: CancellationToken) -> dict:
    return {"echo": args, "cancelled": token.cancelled}


ADD = AgentTool(
    name="add",
    description="Add two integers",
    execute=_add,
    input_model=AddInput,
    output_model=AddOutput,
)
ECHO = AgentTool(
    name="echo",
    description="Echo the input",
    execute=_echo,
    input_schema={"type": "object", "properties": {"text": {"type": "string"}}},
    strict=True,
)


class TestDefinitions:
    def test_schema_from_input_model(self):
        definition = ToolSet([ADD]).definitions()[0]
        assert definition["name"] == "add"
        assert definition["input_schema"]["properties"]["a"]["type"] == "integer"
        assert "strict" not in definition

    def test_raw_schema_and_strict(self):
        definition = ToolSet([ECHO]).definitions()[0]
        assert definition["input_schema"]["properties"] == {"text": {"type": "string"}}
        assert definition["strict"] is True

    def test_default_schema(self):
        tool = AgentTool(name="noop", description="", execute=lambda args, token: None)
        assert tool.json_schema() == {"type": "object", "properties": {}}

    def test_register_replaces(self):
        tools = ToolSet([ECHO])
        tools.register(AgentTool(name="echo", description="v2", execute=_echo))
        assert len(tools) == 1
        assert tools.definitions()[0]["description"] == "v2"


class TestInvoke:
    @pytest.mark.asyncio
    async def test_sync_tool_with_models(self):
        result = await ToolSet([ADD]).invoke("add", {"a": 2, "b": 3}, CancellationToken())
        assert result == {"sum": 5}

    @pytest.mark.asyncio
    async def test_async_tool(self):
        result = await ToolSet([ECHO]).invoke("echo", {"text": "hi"}, CancellationToken())
        assert result == {"echo": {"text": "hi"}, "cancelled": False}

    @pytest.mark.asyncio
    async def test_invalid_input(self):
        with pytest.raises(ValidationError):
            await ToolSet([ADD]).invoke("add", {"a": "x"}, CancellationToken())

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        with pytest.raises(KeyError):
            await ToolSet([ADD]).invoke("missing", {}, CancellationToken())

    @pytest.mark.asyncio
    async def test_contains(self):
        tools = ToolSet([ADD])
        assert "add" in tools
        assert "echo" not in tools
