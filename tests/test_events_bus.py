import asyncio

import pytest

from chronicle.bus import EventBus
from chronicle.errors import NotFoundError, TransientCapabilityError, ValidationError
from chronicle.events import (
    TOPIC_MEMORY_CREATED,
    TOPIC_REACTIVATION_SCHEDULED,
    TOPIC_TRACK_ANALYTICS,
    MemoryCreated,
    TrackAnalytics,
    parse_event,
)


def _bus(**kwargs):
    kwargs.setdefault("max_attempts", 3)
    return EventBus(backoff_seconds=0, jitter_seconds=0, **kwargs)


def test_parse_event_validates_payloads():
    event = parse_event(TOPIC_MEMORY_CREATED, {"memoryId": "mem_1", "title": "T", "type": "decision"})
    assert event == MemoryCreated(memory_id="mem_1", title="T", type="decision")
    assert parse_event(TOPIC_MEMORY_CREATED, event) is event

    with pytest.raises(ValidationError):
        parse_event(TOPIC_MEMORY_CREATED, {"title": "T", "type": "decision"})
    with pytest.raises(ValidationError):
        parse_event("memory-exploded", {"memoryId": "mem_1"})
    with pytest.raises(ValidationError):
        parse_event(TOPIC_REACTIVATION_SCHEDULED, {"memoryId": "mem_1", "scheduledFor": "x", "immediate": "yes"})
    with pytest.raises(ValidationError):
        parse_event(TOPIC_MEMORY_CREATED, ["not", "a", "map"])


def test_track_analytics_flattens_metadata():
    event = TrackAnalytics(
        event="memory_created",
        timestamp="2026-01-01T12:00:00Z",
        memory_id="mem_1",
        metadata={"type": "failure"},
        event_id="evt-1",
    )
    wire = event.to_dict()
    assert wire == {
        "type": "failure",
        "event": "memory_created",
        "memoryId": "mem_1",
        "timestamp": "2026-01-01T12:00:00Z",
        "eventId": "evt-1",
    }
    assert parse_event(TOPIC_TRACK_ANALYTICS, wire) == event


def test_invalid_emit_delivers_nothing():
    bus = _bus()
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe(TOPIC_MEMORY_CREATED, handler)

    async def scenario():
        with pytest.raises(ValidationError):
            await bus.emit(TOPIC_MEMORY_CREATED, {"memoryId": ""})
        await bus.drain(timeout=5)

    asyncio.run(scenario())
    assert received == []
    assert bus.events() == []


def test_every_subscriber_receives_the_event():
    bus = _bus()
    seen = []

    async def first(event):
        seen.append(("first", event.memory_id))

    async def second(event):
        seen.append(("second", event.memory_id))

    bus.subscribe(TOPIC_MEMORY_CREATED, first)
    bus.subscribe(TOPIC_MEMORY_CREATED, second, name="second_handler")
    assert bus.subscribers(TOPIC_MEMORY_CREATED) == ["first", "second_handler"]

    async def scenario():
        await bus.emit(TOPIC_MEMORY_CREATED, MemoryCreated(memory_id="mem_1", title="T", type="context"))
        await bus.drain(timeout=5)

    asyncio.run(scenario())
    assert sorted(seen) == [("first", "mem_1"), ("second", "mem_1")]


def test_retryable_errors_are_retried_then_dead_lettered():
    bus = _bus(max_attempts=3)
    attempts = []

    async def flaky(event):
        attempts.append(event.memory_id)
        raise TransientCapabilityError("provider offline", capability="analysis")

    bus.subscribe(TOPIC_MEMORY_CREATED, flaky)

    async def scenario():
        await bus.emit(TOPIC_MEMORY_CREATED, {"memoryId": "mem_1", "title": "T", "type": "future"})
        await bus.drain(timeout=5)

    asyncio.run(scenario())
    assert len(attempts) == 3
    letter = bus.dead_letters[0]
    assert letter.handler == "flaky"
    assert letter.attempts == 3
    assert letter.payload == {"memoryId": "mem_1", "title": "T", "type": "future"}


def test_terminal_errors_are_not_retried():
    bus = _bus(max_attempts=5)
    attempts = []

    async def missing(event):
        attempts.append(1)
        raise NotFoundError("gone", entity_id=event.memory_id)

    async def broken(event):
        attempts.append(2)
        raise KeyError("bug")

    bus.subscribe(TOPIC_MEMORY_CREATED, missing)
    bus.subscribe(TOPIC_MEMORY_CREATED, broken)

    async def scenario():
        await bus.emit(TOPIC_MEMORY_CREATED, {"memoryId": "mem_1", "title": "T", "type": "future"})
        await bus.drain(timeout=5)

    asyncio.run(scenario())
    assert sorted(attempts) == [1, 2]
    assert sorted(letter.handler for letter in bus.dead_letters) == ["broken", "missing"]
