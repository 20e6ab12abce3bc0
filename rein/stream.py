"""Contract between the run-loop and a model streaming provider.

A provider turns a StreamRequest into one ordered, single-pass sequence of
StreamParts that ends with exactly one of ``finish``, ``error`` or
``abort``. Tool execution happens inside the provider and surfaces as
``tool-result`` / ``tool-error`` parts in the same sequence.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from rein.cancellation import CancellationToken, CancelReason
from rein.schemas import AssistantMessage, FinishReason, ToolMessage, Usage, UserMessage
from rein.tools import AgentTool


class PartType(StrEnum):
    START = "start"
    START_STEP = "start-step"
    REASONING_START = "reasoning-start"
    REASONING_DELTA = "reasoning-delta"
    REASONING_END = "reasoning-end"
    TEXT_START = "text-start"
    TEXT_DELTA = "text-delta"
    TEXT_END = "text-end"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    TOOL_ERROR = "tool-error"
    FINISH_STEP = "finish-step"
    FINISH = "finish"
    ERROR = "error"
    ABORT = "abort"


@dataclass
class StreamPart:
    """A single incremental event from the model stream.

    ``type`` is a PartType value for known kinds; providers may emit other
    strings, which the folder logs and skips.
    """

    type: str
    id: str = ""
    text: str = ""
    tool_call_id: str = ""
    tool_name: str = ""
    input: Any = None
    output: Any = None
    error: Any = None
    finish_reason: FinishReason | None = None
    usage: Usage | None = None
    reason: CancelReason | None = None


@dataclass
class StreamRequest:
    """Everything a provider needs for one model call."""

    model: str
    messages: Sequence[UserMessage | AssistantMessage | ToolMessage]
    token: CancellationToken
    system_prompt: str | None = None
    tools: Sequence[AgentTool] = ()
    provider_options: dict[str, dict[str, Any]] = field(default_factory=dict)
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None


class StreamProvider(Protocol):
    """The model streaming collaborator."""

    def stream(self, request: StreamRequest) -> AsyncIterator[StreamPart]: ...
