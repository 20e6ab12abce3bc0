"""Tests for EventBus delivery, filtering and listener isolation."""

import logging

from rein.events import AgentEvent, EventBus, EventType


def _event(event_type: EventType = EventType.TURN_START) -> AgentEvent:
    return AgentEvent(type=event_type, agent_id="test-agent", session_id="sess-1")


class TestEventBus:
    def test_delivers_in_publish_order(self):
        bus = EventBus()
        received = []
        bus.subscribe(received.append)

        bus.publish(_event(EventType.SESSION_START))
        bus.publish(_event(EventType.SESSION_END))
        assert [e.type for e in received] == [EventType.SESSION_START, EventType.SESSION_END]

    def test_type_filter(self):
        bus = EventBus()
        received = []
        bus.subscribe(received.append, types=["turn-finish", EventType.TURN_ERROR])

        bus.publish(_event(EventType.TURN_START))
        bus.publish(_event(EventType.TURN_FINISH))
        bus.publish(_event(EventType.TURN_ERROR))
        assert [e.type for e in received] == [EventType.TURN_FINISH, EventType.TURN_ERROR]

    def test_unsubscribe_is_idempotent(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        unsubscribe()

        bus.publish(_event())
        assert received == []
        assert bus.listener_count == 0

    def test_listener_error_isolated(self, caplog):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        with caplog.at_level(logging.ERROR, logger="rein.events"):
            bus.publish(_event())

        assert len(received) == 1
        assert "failed for event turn-start" in caplog.text

    def test_subscribe_during_publish_applies_to_next_event(self):
        bus = EventBus()
        late = []

        def subscriber(event):
            bus.subscribe(late.append)

        bus.subscribe(subscriber)
        bus.publish(_event(EventType.SESSION_START))
        assert late == []

        bus.publish(_event(EventType.SESSION_END))
        assert [e.type for e in late] == [EventType.SESSION_END]

    def test_event_has_timestamp(self):
        assert _event().timestamp.tzinfo is not None
