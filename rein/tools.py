"""Tool definitions and the dispatcher the model provider calls them through.

Provides:
- AgentTool: a named callable with pydantic-described input/output
- ToolSet: renders tool definitions for the API and invokes tools with
  validated input

Schema validation is pydantic's job; ToolSet only wires it in.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

if TYPE_CHECKING:
    from rein.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentTool:
    """A tool the model may call.

    ``execute`` receives the validated input (an ``input_model`` instance
    when one is given, else the raw dict) and the turn's cancellation token.
    It may be sync or async.
    """

    name: str
    description: str
    execute: Callable[[Any, "CancellationToken"], Any]
    input_model: type[BaseModel] | None = None
    output_model: type[BaseModel] | None = None
    input_schema: dict[str, Any] | None = field(default=None, hash=False)
    strict: bool = False

    def json_schema(self) -> dict[str, Any]:
        if self.input_model is not None:
            return self.input_model.model_json_schema()
        if self.input_schema is not None:
            return dict(self.input_schema)
        return {"type": "object", "properties": {}}


class ToolSet:
    """Registers tools and dispatches tool calls from the model."""

    def __init__(self, tools: Iterable[AgentTool] = ()) -> None:
        self._tools: dict[str, AgentTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: AgentTool) -> None:
        if tool.name in self._tools:
            logger.warning("Tool %s registered twice, replacing", tool.name)
        self._tools[tool.name] = tool

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        definitions = []
        for tool in self._tools.values():
            definition: dict[str, Any] = {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.json_schema(),
            }
            if tool.strict:
                definition["strict"] = True
            definitions.append(definition)
        return definitions

    async def invoke(self, name: str, args: Any, token: "CancellationToken") -> Any:
        """Run a tool and return its JSON-safe output.

        Raises KeyError for unknown tools, pydantic.ValidationError for bad
        input or output, and whatever the tool itself raises.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(f"Unknown tool: {name}")

        tool_input = tool.input_model.model_validate(args or {}) if tool.input_model else args
        result = tool.execute(tool_input, token)
        if inspect.isawaitable(result):
            result = await result

        if tool.output_model is not None:
            result = tool.output_model.model_validate(result)
        if isinstance(result, BaseModel):
            return result.model_dump(mode="json")
        return result
