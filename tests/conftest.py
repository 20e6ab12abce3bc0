"""Shared fixtures: a scripted model provider and event recording."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence

import pytest

from rein.agent import Agent
from rein.events import AgentEvent
from rein.schemas import FinishReason, Usage
from rein.stream import PartType, StreamPart, StreamRequest

_TERMINAL = {PartType.FINISH, PartType.ERROR, PartType.ABORT}


class Gate:
    """Pause point inside a script. The stream waits until opened or cancelled."""

    def __init__(self) -> None:
        self.reached = asyncio.Event()
        self.opened = asyncio.Event()

    def open(self) -> None:
        self.opened.set()


class ScriptedProvider:
    """Replays one scripted part list per stream() call.

    After every non-terminal part the token is checked; once cancelled the
    stream yields ``abort`` with the token's reason and stops. With
    ``follow_token=False`` scripts replay verbatim and gates wait for
    ``open()`` only.
    """

    def __init__(self, *scripts: Sequence[StreamPart | Gate], follow_token: bool = True) -> None:
        self.scripts = list(scripts)
        self.follow_token = follow_token
        self.requests: list[StreamRequest] = []

    async def stream(self, request: StreamRequest) -> AsyncGenerator[StreamPart, None]:
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else text_turn("ok")
        token = request.token
        for item in script:
            if isinstance(item, Gate):
                item.reached.set()
                if self.follow_token:
                    await _first_of(item.opened.wait(), token.wait())
                else:
                    await item.opened.wait()
            else:
                yield item
                if item.type in _TERMINAL:
                    return
            if self.follow_token and token.cancelled:
                yield StreamPart(type=PartType.ABORT, reason=token.reason)
                return


async def _first_of(*aws) -> None:
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def part(type: str, **fields) -> StreamPart:
    return StreamPart(type=type, **fields)


def text_turn(
    *deltas: str,
    finish_reason: FinishReason = FinishReason.STOP,
    usage: Usage | None = None,
    steps: bool = True,
) -> list[StreamPart]:
    """start, [start-step], text-start, deltas, text-end, [finish-step], finish."""
    parts = [part(PartType.START)]
    if steps:
        parts.append(part(PartType.START_STEP))
    parts.append(part(PartType.TEXT_START, id="t0"))
    parts.extend(part(PartType.TEXT_DELTA, id="t0", text=d) for d in deltas)
    parts.append(part(PartType.TEXT_END, id="t0"))
    if steps:
        parts.append(part(PartType.FINISH_STEP, finish_reason=finish_reason))
    parts.append(part(PartType.FINISH, finish_reason=finish_reason, usage=usage))
    return parts


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[AgentEvent] = []

    def __call__(self, event: AgentEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [str(e.type) for e in self.events]

    def of(self, event_type: str) -> list[AgentEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


def make_agent(provider: ScriptedProvider, recorder: EventRecorder | None = None, **kwargs) -> Agent:
    agent = Agent(provider, model="test-model", id="agent-1", **kwargs)
    if recorder is not None:
        agent.subscribe(recorder)
    return agent
