"""Conversation context: the ordered message history of an agent.

The context is append-only apart from two operations owned by the
run-loop: sealing the in-flight assistant message once its turn is over,
and dropping a trailing unfinished assistant message before a retry.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal

from rein.errors import ProtocolViolation
from rein.schemas import (
    AssistantMessage,
    AssistantPart,
    Prompt,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolMessage,
    UserMessage,
)

ContextMessage = UserMessage | AssistantMessage | ToolMessage
StreamedKind = Literal["text", "reasoning"]


class AssistantMessageBuilder:
    """Owned, mutable form of the assistant message being streamed.

    Lives in the context while its turn runs. Readers only ever see
    snapshots, so nothing outside the builder can change a message that
    is still being assembled.
    """

    def __init__(self) -> None:
        self._parts: list[AssistantPart] = []
        self._open: list[int] = []  # indices of started, not yet ended parts

    def open_part(self, kind: StreamedKind) -> None:
        part = TextPart() if kind == "text" else ReasoningPart()
        self._parts.append(part)
        self._open.append(len(self._parts) - 1)

    def append_delta(self, kind: StreamedKind, text: str) -> None:
        index = self._last_open(kind)
        if index is None:
            raise ProtocolViolation(f"{kind}-delta, but no open {kind} part in message")
        part = self._parts[index]
        self._parts[index] = part.model_copy(update={"text": part.text + text})

    def close_part(self, kind: StreamedKind) -> None:
        index = self._last_open(kind)
        if index is not None:
            self._open.remove(index)

    def add_tool_call(self, tool_call_id: str, tool_name: str, tool_input: object) -> None:
        self._parts.append(
            ToolCallPart(tool_call_id=tool_call_id, tool_name=tool_name, input=tool_input)
        )

    def snapshot(self) -> AssistantMessage:
        return AssistantMessage(content=tuple(self._parts))

    def _last_open(self, kind: StreamedKind) -> int | None:
        for index in reversed(self._open):
            if self._parts[index].type == kind:
                return index
        return None

    def __len__(self) -> int:
        return len(self._parts)


class ConversationContext:
    """Full session history passed to each model call."""

    def __init__(self) -> None:
        self._entries: list[ContextMessage | AssistantMessageBuilder] = []

    def append(self, message: ContextMessage) -> None:
        self._entries.append(message)

    def append_prompt(self, prompt: Prompt) -> None:
        """Spread a message prompt in order, or add a text prompt as one user message."""
        self._entries.extend(prompt.to_messages())

    def open_assistant(self) -> AssistantMessageBuilder:
        """Append a new empty in-flight assistant message and return its builder."""
        builder = AssistantMessageBuilder()
        self._entries.append(builder)
        return builder

    def is_last(self, builder: AssistantMessageBuilder) -> bool:
        return bool(self._entries) and self._entries[-1] is builder

    def seal(self, builders: Iterable[AssistantMessageBuilder]) -> None:
        """Freeze the given in-flight builders into their final messages.

        Builders owned by another turn are left alone.
        """
        owned = {id(b) for b in builders}
        self._entries = [
            e.snapshot() if isinstance(e, AssistantMessageBuilder) and id(e) in owned else e for e in self._entries
        ]

    def pop_trailing_assistant(self) -> AssistantMessage | None:
        """Drop the last message if it is an assistant message; return it."""
        if self._entries and self.last_role == "assistant":
            entry = self._entries.pop()
            return entry.snapshot() if isinstance(entry, AssistantMessageBuilder) else entry
        return None

    @property
    def last_role(self) -> str | None:
        if not self._entries:
            return None
        last = self._entries[-1]
        return "assistant" if isinstance(last, AssistantMessageBuilder) else last.role

    def messages(self) -> tuple[ContextMessage, ...]:
        return tuple(
            e.snapshot() if isinstance(e, AssistantMessageBuilder) else e for e in self._entries
        )

    def clear(self) -> None:
        self._entries = []

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)
