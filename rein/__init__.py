"""rein: client-side run-loop for agents over a streaming model backend.

Public API: Agent + the types needed to feed it prompts, configure it,
plug in a provider and consume its events.
"""

from rein.agent import Agent
from rein.cancellation import CancellationToken, CancelKind, CancelReason
from rein.config import Settings
from rein.errors import ProtocolViolation, ProviderError, ReservedAbortReasonError, serialize_error
from rein.events import AgentEvent, EventBus, EventType
from rein.log import AgentLogger, configure_logging
from rein.schemas import (
    AgentPatch,
    AgentProps,
    AssistantMessage,
    DequeueMode,
    FinishReason,
    Prompt,
    ReasoningPart,
    StartCause,
    TextPart,
    ToolCallPart,
    ToolMessage,
    ToolResultOutput,
    ToolResultPart,
    Usage,
    UserMessage,
)
from rein.stream import PartType, StreamPart, StreamProvider, StreamRequest
from rein.tools import AgentTool, ToolSet

__all__ = [
    "Agent",
    # Configuration
    "AgentPatch",
    "AgentProps",
    "DequeueMode",
    "Settings",
    # Messages
    "AssistantMessage",
    "Prompt",
    "ReasoningPart",
    "TextPart",
    "ToolCallPart",
    "ToolMessage",
    "ToolResultOutput",
    "ToolResultPart",
    "UserMessage",
    # Events
    "AgentEvent",
    "EventBus",
    "EventType",
    "FinishReason",
    "StartCause",
    "Usage",
    # Provider contract
    "CancelKind",
    "CancelReason",
    "CancellationToken",
    "PartType",
    "StreamPart",
    "StreamProvider",
    "StreamRequest",
    # Tools
    "AgentTool",
    "ToolSet",
    # Errors
    "ProtocolViolation",
    "ProviderError",
    "ReservedAbortReasonError",
    "serialize_error",
    # Logging
    "AgentLogger",
    "configure_logging",
]
