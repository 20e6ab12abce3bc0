"""Stream folder: turns one model stream into context mutations and events.

Each StreamPart is folded in arrival order and produces at most one
published event, so subscribers see exactly the provider's sequence.
Per turn the in-flight message moves no-message -> building -> closed.

Protocol violations (a delta with nothing to apply it to, a steering
abort with no steering queued) raise ProtocolViolation and stop the fold.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from rein.cancellation import STEER_CANCEL, CancellationToken
from rein.context import AssistantMessageBuilder, ConversationContext, StreamedKind
from rein.errors import ProtocolViolation, serialize_error
from rein.events import AgentEvent, EventType
from rein.log import AgentLogger
from rein.queues import PromptQueue
from rein.schemas import (
    DequeueMode,
    FinishReason,
    Prompt,
    StartCause,
    ToolMessage,
    ToolResultOutput,
    ToolResultPart,
    Usage,
)
from rein.stream import PartType, StreamPart


@dataclass
class TurnState:
    """Bookkeeping for one model call and its streamed response."""

    id: str
    session_id: str
    cause: StartCause
    prompts: list[Prompt]
    finish_reason: FinishReason | None = None
    usage: Usage | None = None
    abort_reason: str | None = None
    # Prompts that replace the batch after a steering abort.
    redirect: list[Prompt] = field(default_factory=list)
    terminal: PartType | None = None  # finish | error | abort once seen

    @property
    def steered(self) -> bool:
        return bool(self.redirect)


class StreamFolder:
    """Folds the parts of one turn's stream."""

    def __init__(
        self,
        *,
        agent_id: str,
        turn: TurnState,
        context: ConversationContext,
        steering: PromptQueue,
        steering_mode: Callable[[], DequeueMode],
        token: CancellationToken,
        publish: Callable[[AgentEvent], None],
        log: AgentLogger,
    ) -> None:
        self._agent_id = agent_id
        self.turn = turn
        self._context = context
        self._steering = steering
        self._steering_mode = steering_mode
        self._token = token
        self._publish = publish
        self._log = log
        self._builder: AssistantMessageBuilder | None = None
        self._last_builder: AssistantMessageBuilder | None = None
        self.builders: list[AssistantMessageBuilder] = []  # opened by this turn
        self._handlers: dict[str, Callable[[StreamPart], None]] = {
            PartType.START: self._on_start,
            PartType.START_STEP: self._on_start_step,
            PartType.REASONING_START: lambda p: self._on_content_start(p, "reasoning"),
            PartType.REASONING_DELTA: lambda p: self._on_content_delta(p, "reasoning"),
            PartType.REASONING_END: lambda p: self._on_content_end(p, "reasoning"),
            PartType.TEXT_START: lambda p: self._on_content_start(p, "text"),
            PartType.TEXT_DELTA: lambda p: self._on_content_delta(p, "text"),
            PartType.TEXT_END: lambda p: self._on_content_end(p, "text"),
            PartType.TOOL_CALL: self._on_tool_call,
            PartType.TOOL_RESULT: self._on_tool_result,
            PartType.TOOL_ERROR: self._on_tool_result,
            PartType.FINISH_STEP: self._on_finish_step,
            PartType.FINISH: self._on_finish,
            PartType.ERROR: self._on_error,
            PartType.ABORT: self._on_abort,
        }

    def fold(self, part: StreamPart) -> None:
        handler = self._handlers.get(part.type)
        if handler is None:
            self._log.warning("stream, unsupported part type=%s", part.type)
            return
        handler(part)

    # ------------------------------------------------------------------
    # Part handlers
    # ------------------------------------------------------------------

    def _on_start(self, part: StreamPart) -> None:
        self._builder = None
        self._last_builder = None
        self._emit(
            EventType.TURN_START,
            start_cause=self.turn.cause,
            prompts=tuple(self.turn.prompts),
        )
        self.turn.prompts = []  # consumed into context

    def _on_start_step(self, part: StreamPart) -> None:
        # Tool results landed after the in-flight message: later content
        # belongs in a new assistant message after them.
        if self._builder is not None and not self._context.is_last(self._builder):
            self._log.debug("stream, start-step, closing turnMessage after tool results")
            self._builder = None

    def _on_content_start(self, part: StreamPart, kind: StreamedKind) -> None:
        builder = self._ensure_builder(part.type)
        builder.open_part(kind)
        self._emit(_START_EVENTS[kind], message=builder.snapshot())

    def _on_content_delta(self, part: StreamPart, kind: StreamedKind) -> None:
        builder = self._require_builder(part.type)
        builder.append_delta(kind, part.text)
        self._emit(_UPDATE_EVENTS[kind], message=builder.snapshot())

    def _on_content_end(self, part: StreamPart, kind: StreamedKind) -> None:
        builder = self._require_builder(part.type)
        builder.close_part(kind)
        self._emit(_END_EVENTS[kind], message=builder.snapshot())

    def _on_tool_call(self, part: StreamPart) -> None:
        builder = self._ensure_builder(part.type)
        builder.add_tool_call(part.tool_call_id, part.tool_name, part.input)
        self._emit(EventType.TOOL_CALL, message=builder.snapshot())

    def _on_tool_result(self, part: StreamPart) -> None:
        if part.type == PartType.TOOL_ERROR:
            output = ToolResultOutput(type="error-json", value=serialize_error(part.error))
            event_type = EventType.TOOL_ERROR
        else:
            output = ToolResultOutput(type="json", value=part.output)
            event_type = EventType.TOOL_RESULT

        message = ToolMessage(
            content=(
                ToolResultPart(
                    tool_call_id=part.tool_call_id,
                    tool_name=part.tool_name,
                    output=output,
                ),
            )
        )
        self._context.append(message)
        self._emit(event_type, message=message)

    def _on_finish_step(self, part: StreamPart) -> None:
        if self._steering:
            self._log.debug("stream, finish-step, abort for steering")
            self._token.cancel(STEER_CANCEL)

    def _on_finish(self, part: StreamPart) -> None:
        builder = self._builder or self._last_builder
        self.turn.terminal = PartType.FINISH
        self.turn.finish_reason = part.finish_reason or FinishReason.UNKNOWN
        self.turn.usage = part.usage
        if builder is None:
            self._log.warning("stream, finish without assistant message")
        self._emit(
            EventType.TURN_FINISH,
            message=builder.snapshot() if builder else None,
            finish_reason=self.turn.finish_reason,
            total_usage=part.usage,
        )

    def _on_error(self, part: StreamPart) -> None:
        self.turn.terminal = PartType.ERROR
        self._log.warning("stream, turn error: %s", part.error)
        self._emit(EventType.TURN_ERROR, message=self._snapshot(), error=part.error)

    def _on_abort(self, part: StreamPart) -> None:
        self.turn.terminal = PartType.ABORT
        if part.reason is not None and part.reason.is_steer:
            if not self._steering:
                raise ProtocolViolation("abort for steering, but no pending steering prompts")
            self.turn.redirect = self._steering.dequeue(self._steering_mode())
            self._emit(
                EventType.TURN_STEER,
                message=self._snapshot(),
                prompts=tuple(self.turn.redirect),
            )
            return

        self.turn.abort_reason = part.reason.message if part.reason else None
        self._emit(EventType.TURN_ABORT, message=self._snapshot(), reason=self.turn.abort_reason)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_builder(self, part_type: str) -> AssistantMessageBuilder:
        if self._builder is None:
            self._builder = self._context.open_assistant()
            self._last_builder = self._builder
            self.builders.append(self._builder)
            self._log.debug("stream, %s, new turnMessage", part_type)
        return self._builder

    def _require_builder(self, part_type: str) -> AssistantMessageBuilder:
        if self._builder is None:
            raise ProtocolViolation(f"{part_type}, but turnMessage not exists")
        return self._builder

    def _snapshot(self):
        builder = self._builder or self._last_builder
        return builder.snapshot() if builder else None

    def _emit(self, event_type: EventType, **fields: Any) -> None:
        self._publish(
            AgentEvent(
                type=event_type,
                agent_id=self._agent_id,
                session_id=self.turn.session_id,
                turn_id=self.turn.id,
                **fields,
            )
        )


_START_EVENTS = {"text": EventType.TEXT_START, "reasoning": EventType.REASONING_START}
_UPDATE_EVENTS = {"text": EventType.TEXT_UPDATE, "reasoning": EventType.REASONING_UPDATE}
_END_EVENTS = {"text": EventType.TEXT_END, "reasoning": EventType.REASONING_END}
