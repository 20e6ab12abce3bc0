"""Pydantic DTOs for messages, prompts and agent configuration.

These models define the data contract between the run-loop, the model
streaming provider and event subscribers. All message types are frozen:
snapshots handed to subscribers cannot be mutated back into the context.
"""

from __future__ import annotations

import copy
from enum import StrEnum
from typing import Annotated, Any, Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field, InstanceOf, model_validator

from rein.tools import AgentTool


class FinishReason(StrEnum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content-filter"
    TOOL_CALLS = "tool-calls"
    ERROR = "error"
    OTHER = "other"
    UNKNOWN = "unknown"


# Turns that ended with one of these produced a usable assistant message.
CLEAN_FINISH_REASONS = frozenset({FinishReason.STOP, FinishReason.TOOL_CALLS})


class StartCause(StrEnum):
    START = "start"
    RECOVER = "recover"
    STEER = "steer"
    FOLLOW_UP = "follow-up"


class DequeueMode(StrEnum):
    FIFO = "fifo"  # one prompt per turn (default)
    ALL = "all"  # drain the whole queue into one turn


# --- Content parts ---


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class TextPart(_Frozen):
    type: Literal["text"] = "text"
    text: str = ""


class ReasoningPart(_Frozen):
    type: Literal["reasoning"] = "reasoning"
    text: str = ""


class ToolCallPart(_Frozen):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: Any = None


class ToolResultOutput(_Frozen):
    """Tool output tagged as a success value or a serialized error."""

    type: Literal["json", "error-json"] = "json"
    value: Any = None


class ToolResultPart(_Frozen):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: ToolResultOutput

    @property
    def is_error(self) -> bool:
        return self.output.type == "error-json"


AssistantPart = Annotated[TextPart | ReasoningPart | ToolCallPart, Field(discriminator="type")]


# --- Messages ---


class UserMessage(_Frozen):
    role: Literal["user"] = "user"
    content: str | tuple[TextPart, ...]

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content)


class AssistantMessage(_Frozen):
    role: Literal["assistant"] = "assistant"
    content: tuple[AssistantPart, ...] = ()

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def reasoning(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, ReasoningPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.content if isinstance(p, ToolCallPart)]


class ToolMessage(_Frozen):
    role: Literal["tool"] = "tool"
    content: tuple[ToolResultPart, ...]


Message = Annotated[UserMessage | AssistantMessage | ToolMessage, Field(discriminator="role")]


# --- Prompts ---


class Prompt(_Frozen):
    """Input for one turn: plain text or an explicit list of messages.

    Exactly one of ``text`` / ``messages`` is set.
    """

    text: str | None = None
    messages: tuple[Message, ...] | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "Prompt":
        if (self.text is None) == (self.messages is None):
            raise ValueError("Prompt needs exactly one of 'text' or 'messages'")
        return self

    @classmethod
    def coerce(cls, value: "Prompt | str | Sequence[Any] | dict[str, Any]") -> "Prompt":
        """Build a Prompt from a string, message sequence, dict or Prompt.

        Always returns a fresh instance, so later caller-side changes to the
        input never reach a queued prompt.
        """
        if isinstance(value, Prompt):
            return value.model_copy(deep=True)
        if isinstance(value, str):
            return cls(text=value)
        if isinstance(value, dict):
            return cls.model_validate(copy.deepcopy(value))
        return cls.model_validate({"messages": [_as_data(m) for m in value]})

    def to_messages(self) -> tuple[UserMessage | AssistantMessage | ToolMessage, ...]:
        """Context entries for this prompt: messages in order, or one user message."""
        if self.messages is not None:
            return tuple(self.messages)
        return (UserMessage(content=self.text or ""),)

    def describe(self) -> str:
        if self.text is not None:
            return repr(self.text[:80])
        return f"<{len(self.messages or ())} messages>"


def _as_data(message: Any) -> Any:
    if isinstance(message, BaseModel):
        return message.model_dump()
    return copy.deepcopy(message)


# --- Usage ---


class Usage(BaseModel):
    """Token usage reported by the provider. Passed through opaquely."""

    model_config = ConfigDict(frozen=True, extra="allow")

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    reasoning_tokens: int | None = None
    cached_input_tokens: int | None = None

    def merge(self, other: "Usage | None") -> "Usage":
        """Field-wise sum; a field stays None only if both sides are None."""
        if other is None:
            return self
        values: dict[str, int | None] = {}
        for name in type(self).model_fields:
            a, b = getattr(self, name), getattr(other, name)
            values[name] = None if a is None and b is None else (a or 0) + (b or 0)
        return Usage(**values)


# --- Agent configuration ---


class AgentProps(BaseModel):
    """Complete agent configuration. Replaced wholesale, never mutated."""

    model_config = ConfigDict(frozen=True)

    model: str
    provider_options: dict[str, dict[str, Any]] = Field(default_factory=dict)
    system_prompt: str | None = None
    tools: tuple[InstanceOf[AgentTool], ...] = ()
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    steering_mode: DequeueMode = DequeueMode.FIFO
    follow_up_mode: DequeueMode = DequeueMode.FIFO

    def apply(self, patch: "AgentPatch") -> "AgentProps":
        """Return new props with every field the patch sets, all at once."""
        update: dict[str, Any] = {}
        for name, value in patch.changes().items():
            if name in ("model", "steering_mode", "follow_up_mode") and value is None:
                continue  # required fields cannot be cleared
            if name == "provider_options":
                value = copy.deepcopy(value) if value else {}
            elif name == "tools":
                value = tuple(value or ())
            update[name] = value
        return self.model_copy(update=update)

    def copy_out(self) -> "AgentProps":
        return self.model_copy(update={"provider_options": copy.deepcopy(self.provider_options)})


class AgentPatch(BaseModel):
    """Incremental configuration update.

    Only explicitly passed fields count as changes, so ``system_prompt=None``
    clears the system prompt while omitting it leaves it alone.
    """

    model_config = ConfigDict(extra="forbid")

    model: str | None = None
    provider_options: dict[str, dict[str, Any]] | None = None
    system_prompt: str | None = None
    tools: tuple[InstanceOf[AgentTool], ...] | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    steering_mode: DequeueMode | None = None
    follow_up_mode: DequeueMode | None = None

    def changes(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}

    def merge(self, later: "AgentPatch") -> "AgentPatch":
        """Combine two patches; fields set by ``later`` win."""
        return AgentPatch.model_validate({**self.changes(), **later.changes()})

    def __bool__(self) -> bool:
        return bool(self.model_fields_set)
