"""In-process event bus for agent events.

Events are delivered synchronously to every current subscriber at
publish time, in publish order. Listener errors are isolated: one broken
listener never crashes the run-loop or blocks other listeners.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from rein.schemas import (
    AssistantMessage,
    FinishReason,
    Prompt,
    StartCause,
    ToolMessage,
    Usage,
)

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    SESSION_START = "session-start"
    SESSION_END = "session-end"

    TURN_START = "turn-start"
    TURN_FINISH = "turn-finish"
    TURN_ERROR = "turn-error"
    TURN_ABORT = "turn-abort"
    TURN_STEER = "turn-steer"

    REASONING_START = "reasoning-start"
    REASONING_UPDATE = "reasoning-update"
    REASONING_END = "reasoning-end"

    TEXT_START = "text-start"
    TEXT_UPDATE = "text-update"
    TEXT_END = "text-end"

    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    TOOL_ERROR = "tool-error"


@dataclass(frozen=True)
class AgentEvent:
    """A typed event published by an agent.

    ``message`` is an immutable snapshot: the assistant message being built
    for content events, the new tool message for tool results.
    """

    type: EventType
    agent_id: str
    session_id: str
    turn_id: str | None = None
    message: AssistantMessage | ToolMessage | None = None
    start_cause: StartCause | None = None
    prompts: tuple[Prompt, ...] = ()
    finish_reason: FinishReason | None = None
    total_usage: Usage | None = None
    error: Any = None
    reason: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


EventListener = Callable[[AgentEvent], None]


class _Subscription:
    __slots__ = ("listener", "types")

    def __init__(self, listener: EventListener, types: frozenset[EventType] | None) -> None:
        self.listener = listener
        self.types = types


class EventBus:
    """Synchronous fan-out to subscribed listeners, owned by one agent."""

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self,
        listener: EventListener,
        types: Iterable[EventType | str] | None = None,
    ) -> Callable[[], None]:
        """Register a listener, optionally for some event types only.

        Returns an unsubscribe callable; calling it twice is harmless.
        """
        subscription = _Subscription(
            listener,
            frozenset(EventType(t) for t in types) if types is not None else None,
        )
        self._subscriptions.append(subscription)
        logger.debug("Subscribed listener %s", getattr(listener, "__qualname__", listener))

        def unsubscribe() -> None:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: AgentEvent) -> None:
        """Deliver to a snapshot of current subscribers.

        Listeners added or removed during delivery take effect from the
        next event.
        """
        for subscription in list(self._subscriptions):
            if subscription.types is not None and event.type not in subscription.types:
                continue
            self._safe_handle(subscription.listener, event)

    def _safe_handle(self, listener: EventListener, event: AgentEvent) -> None:
        try:
            listener(event)
        except Exception:
            logger.exception(
                "Listener %s failed for event %s",
                getattr(listener, "__qualname__", listener),
                event.type,
            )

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)
