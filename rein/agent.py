"""Agent run-loop: sessions, turns, steering, follow-ups and recovery.

One Agent drives a single logical thread of control. A session starts
with start() or recover() and loops over turns until no prompt is left:

    apply deferred props -> append batch to context -> stream model call
    -> fold parts -> pick next batch (steering redirect > steering >
    follow-up) -> repeat

steer(), follow_up(), abort() and update_props() are meant to be called
while a turn is suspended waiting for the next stream part.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from rein.cancellation import CancellationToken, CancelReason
from rein.config import Settings
from rein.context import ConversationContext
from rein.errors import ProtocolViolation, ReservedAbortReasonError
from rein.events import AgentEvent, EventBus, EventListener, EventType
from rein.folder import StreamFolder, TurnState
from rein.log import AgentLogger
from rein.queues import PromptQueue
from rein.schemas import (
    CLEAN_FINISH_REASONS,
    AgentPatch,
    AgentProps,
    FinishReason,
    Message,
    Prompt,
    StartCause,
    Usage,
)
from rein.stream import PartType, StreamProvider, StreamRequest

logger = logging.getLogger(__name__)

PromptLike = Prompt | str | Sequence[Message] | dict[str, Any]

# Stages (last published event) at which props may change immediately.
# None is the initial stage, before anything was published.
SAFE_STAGES = frozenset({
    None,
    EventType.SESSION_START,
    EventType.SESSION_END,
    EventType.TURN_FINISH,
    EventType.TURN_ERROR,
    EventType.TURN_ABORT,
    EventType.TURN_STEER,
})


def _new_id() -> str:
    return uuid4().hex[:10]


@dataclass
class _Session:
    id: str
    cause: StartCause
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    aborted: bool = False
    error: BaseException | None = None
    finish_reason: FinishReason | None = None
    total_usage: Usage | None = None
    task: asyncio.Task | None = None


class Agent:
    """Client-side orchestrator for a streaming model backend."""

    def __init__(
        self,
        provider: StreamProvider,
        *,
        model: str,
        id: str | None = None,
        provider_options: dict[str, dict[str, Any]] | None = None,
        system_prompt: str | None = None,
        tools: Iterable[Any] = (),
        temperature: float | None = None,
        top_p: float | None = None,
        top_k: int | None = None,
        steering_mode: str = "fifo",
        follow_up_mode: str = "fifo",
        logger: logging.Logger | None = None,
    ) -> None:
        self._id = id or _new_id()
        self._provider = provider
        self._log = AgentLogger(logger or logging.getLogger(__name__), self._id)

        self._props = AgentProps(model=model)
        self._pending_patch: AgentPatch | None = None
        self._stage: EventType | None = None

        self._bus = EventBus()
        self._context = ConversationContext()
        self._steering = PromptQueue("steering")
        self._follow_up = PromptQueue("follow-up")

        self._token = CancellationToken()
        self._session: _Session | None = None
        self._last_finish_reason: FinishReason | None = None

        self.update_props(
            provider_options=provider_options,
            system_prompt=system_prompt,
            tools=tuple(tools),
            temperature=temperature,
            top_p=top_p,
            top_k=top_k,
            steering_mode=steering_mode,
            follow_up_mode=follow_up_mode,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        provider: StreamProvider | None = None,
        **overrides: Any,
    ) -> "Agent":
        """Build an agent whose defaults come from settings.

        Without an explicit provider the bundled Anthropic provider is used.
        """
        if provider is None:
            from rein.providers.anthropic import AnthropicProvider

            provider = AnthropicProvider(settings)

        kwargs: dict[str, Any] = {
            "model": settings.model,
            "id": settings.agent_id,
            "provider_options": settings.provider_options,
            "steering_mode": settings.steering_mode,
            "follow_up_mode": settings.follow_up_mode,
        }
        kwargs.update(overrides)
        return cls(provider, **kwargs)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def is_running(self) -> bool:
        """True while a session is in progress."""
        return self._session is not None

    @property
    def context(self) -> tuple[Message, ...]:
        return self._context.messages()

    @property
    def props(self) -> AgentProps:
        return self._props.copy_out()

    @property
    def pending_steering(self) -> int:
        return len(self._steering)

    @property
    def pending_follow_up(self) -> int:
        return len(self._follow_up)

    @property
    def last_finish_reason(self) -> FinishReason | None:
        return self._last_finish_reason

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_props(self, patch: AgentPatch | None = None, **fields: Any) -> bool:
        """Incrementally update agent props.

        Applied at once when idle or at a safe stage; otherwise merged into
        a pending patch that is applied as a whole at the next safe point.
        Returns True if applied now, False if deferred.
        """
        update = patch if patch is not None else AgentPatch()
        if fields:
            update = update.merge(AgentPatch.model_validate(fields))

        if self.is_running and self._stage not in SAFE_STAGES:
            self._log.info("updateProps, pending until next turn")
            self._pending_patch = self._pending_patch.merge(update) if self._pending_patch else update
            return False

        if self._pending_patch:
            update = self._pending_patch.merge(update)
            self._pending_patch = None
        self._apply(update)
        return True

    def _apply(self, patch: AgentPatch) -> None:
        if not patch:
            return
        self._props = self._props.apply(patch)
        for name in sorted(patch.model_fields_set):
            self._log.info("updateProps, %s=%r", name, getattr(self._props, name))

    def _apply_pending_props(self) -> None:
        if self._pending_patch:
            patch, self._pending_patch = self._pending_patch, None
            self._apply(patch)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def start(self, prompt: PromptLike) -> bool:
        """Start a new session with the given prompt.

        Returns False if a session is running; call wait_for_idle() or
        abort() first.
        """
        prompt = Prompt.coerce(prompt)
        self._log.info("start, prompt=%s", prompt.describe())

        if self.is_running:
            self._log.warning("start, skipped, waitForIdle() or abort() first")
            return False

        self._steering.clear()
        self._follow_up.clear()
        self._launch([prompt], StartCause.START)
        return True

    def steer(self, prompt: PromptLike) -> bool:
        """Redirect the running session at the next step boundary."""
        prompt = Prompt.coerce(prompt)
        self._log.info("steer, prompt=%s", prompt.describe())

        if not self.is_running:
            self._log.warning("steer, skipped, use start() instead")
            return False

        self._steering.push(prompt)
        return True

    def follow_up(self, prompt: PromptLike) -> bool:
        """Queue a prompt to run once the current batch is exhausted."""
        prompt = Prompt.coerce(prompt)
        self._log.info("followUp, prompt=%s", prompt.describe())

        if not self.is_running:
            self._log.warning("followUp, skipped, use start() instead")
            return False

        self._follow_up.push(prompt)
        return True

    def abort(self, reason: str | None = None) -> None:
        """Abort the current session immediately.

        The model call is cancelled and wait_for_idle() resolves at once.
        No session-end event follows; the turn still reports turn-abort.
        """
        if isinstance(reason, CancelReason):
            if reason.is_steer:
                raise ReservedAbortReasonError(
                    "abort reason is reserved for steer() and cannot be passed to abort()"
                )
            reason = reason.message
        elif reason is not None and not isinstance(reason, str):
            raise TypeError(f"abort reason must be a string, got {type(reason).__name__}")

        self._log.info("abort, reason=%s", reason)
        self._token.cancel(CancelReason.external(reason))

        session = self._session
        if session is not None:
            session.aborted = True
            self._release(session)

    def recover(self) -> bool:
        """Resume after an error or abort using the context and queued prompts.

        Returns False if running, the context is empty, or there is nothing
        to resume.
        """
        self._log.info("recover")

        if self.is_running:
            self._log.warning("recover, skipped, waitForIdle() or abort() first")
            return False

        if not self._context:
            self._log.warning("recover, skipped, no context to recover")
            return False

        # Failed mid user/tool message: retry with the context as is.
        if self._context.last_role != "assistant":
            self._log.debug("recover, retry with current context")
            self._launch([], StartCause.RECOVER)
            return True

        if self._last_finish_reason not in CLEAN_FINISH_REASONS:
            self._log.debug(
                "recover, lastTurnFinishReason=%s, re-generate last turn with current context",
                self._last_finish_reason,
            )
            self._context.pop_trailing_assistant()
            self._launch([], StartCause.RECOVER)
            return True

        prompts = self._steering.dequeue(self._props.steering_mode)
        if prompts:
            self._log.debug("recover, recover with pending steering prompts")
            self._launch(prompts, StartCause.RECOVER)
            return True

        prompts = self._follow_up.dequeue(self._props.follow_up_mode)
        if prompts:
            self._log.debug("recover, recover with pending follow-up prompts")
            self._launch(prompts, StartCause.RECOVER)
            return True

        self._log.warning("recover, no pending prompts to recover")
        return False

    def reset(self) -> bool:
        """Clear context, queues and turn bookkeeping. Fails while running."""
        self._log.info("reset")

        if self.is_running:
            self._log.warning("reset, skipped, waitForIdle() or abort() first")
            return False

        self._stage = None
        self._last_finish_reason = None
        self._steering.clear()
        self._follow_up.clear()
        self._context.clear()
        return True

    def subscribe(
        self,
        listener: EventListener,
        types: Iterable[EventType | str] | None = None,
    ) -> Callable[[], None]:
        """Subscribe to agent events. Returns an unsubscribe function."""
        return self._bus.subscribe(listener, types)

    async def wait_for_idle(self) -> None:
        """Wait until the current session has ended or been aborted."""
        session = self._session
        if session is not None:
            await session.idle.wait()

    # ------------------------------------------------------------------
    # Run-loop
    # ------------------------------------------------------------------

    def _launch(self, prompts: list[Prompt], cause: StartCause) -> None:
        session = _Session(id=_new_id(), cause=cause)
        self._session = session
        session.task = asyncio.get_running_loop().create_task(
            self._run_session(session, prompts),
            name=f"rein-session-{session.id}",
        )

    def _release(self, session: _Session) -> None:
        if self._session is session:
            self._session = None
        session.idle.set()

    async def _run_session(self, session: _Session, prompts: list[Prompt]) -> None:
        try:
            self._emit(EventType.SESSION_START, session, start_cause=session.cause)
            await self._loop(session, prompts)
        except ProtocolViolation as e:
            self._log.error("loop, protocol violation: %s", e, exc_info=True)
            session.error = e
        except Exception as e:
            self._log.exception("loop, unexpected failure")
            session.error = e
        finally:
            if not session.aborted:
                self._apply_pending_props()
                self._emit(
                    EventType.SESSION_END,
                    session,
                    start_cause=session.cause,
                    finish_reason=session.finish_reason,
                    total_usage=session.total_usage,
                    error=session.error,
                )
                self._release(session)

    async def _loop(self, session: _Session, prompts: list[Prompt]) -> None:
        pending = list(prompts)
        cause = session.cause
        recovering = cause == StartCause.RECOVER

        # Recovery runs one turn even with no new input.
        while recovering or pending:
            recovering = False
            self._apply_pending_props()

            for prompt in pending:
                self._context.append_prompt(prompt)

            if not self._context:
                self._log.warning("loop, skipped, no context to run")
                break

            turn = await self._run_turn(session, pending, cause)
            if session.aborted:
                if turn.steered:
                    # Aborted after the steering checkpoint: keep the prompts for recover().
                    self._steering.requeue(turn.redirect)
                return

            if turn.steered:
                pending, cause = turn.redirect, StartCause.STEER
                continue

            if turn.terminal != PartType.FINISH:
                self._log.info("loop, turn ended with %s, continue with queued prompts", turn.terminal)

            pending = self._steering.dequeue(self._props.steering_mode)
            cause = StartCause.STEER
            if not pending:
                pending = self._follow_up.dequeue(self._props.follow_up_mode)
                cause = StartCause.FOLLOW_UP

    async def _run_turn(self, session: _Session, prompts: list[Prompt], cause: StartCause) -> TurnState:
        turn = TurnState(id=_new_id(), session_id=session.id, cause=cause, prompts=list(prompts))
        self._token = token = CancellationToken()
        props = self._props

        request = StreamRequest(
            model=props.model,
            messages=self._context.messages(),
            token=token,
            system_prompt=props.system_prompt,
            tools=props.tools,
            provider_options=props.provider_options,
            temperature=props.temperature,
            top_p=props.top_p,
            top_k=props.top_k,
        )
        self._log.info("run, turn=%s, messages=%d", turn.id, len(request.messages))

        folder = StreamFolder(
            agent_id=self._id,
            turn=turn,
            context=self._context,
            steering=self._steering,
            steering_mode=lambda: self._props.steering_mode,
            token=token,
            publish=lambda event: self._publish(event, session),
            log=self._log,
        )

        self._last_finish_reason = None
        stream = self._provider.stream(request)
        try:
            async for part in stream:
                self._log.debug("stream, part=%s", part.type)
                folder.fold(part)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            self._context.seal(folder.builders)

        session.finish_reason = turn.finish_reason
        if turn.usage is not None:
            session.total_usage = turn.usage.merge(session.total_usage)
        # An aborted session no longer owns the agent; a newer one may be running.
        if self._session is session:
            self._last_finish_reason = turn.finish_reason
        return turn

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, event_type: EventType, session: _Session, **fields: Any) -> None:
        self._publish(AgentEvent(type=event_type, agent_id=self._id, session_id=session.id, **fields), session)

    def _publish(self, event: AgentEvent, session: _Session) -> None:
        if self._session is session:
            self._stage = event.type
        self._bus.publish(event)
