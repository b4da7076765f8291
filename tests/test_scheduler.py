import asyncio
from datetime import timedelta

import pytest

from chronicle.bus import EventBus
from chronicle.db import session_scope
from chronicle.events import TOPIC_REACTIVATION_SCHEDULED
from chronicle.models import Memory, MemorySchedule
from chronicle.services.scheduler import ReactivationScheduler, get_record, persist_record
from chronicle.timeutil import isoformat


@pytest.fixture
def bus():
    return EventBus(max_attempts=1, backoff_seconds=0, jitter_seconds=0)


@pytest.fixture
def scheduler(db_engine, bus, clock):
    return ReactivationScheduler(bus, clock=clock, poll_seconds=5, lease_seconds=60)


def _add_memory(memory_id, clock, status="scheduled", trigger_date=None):
    with session_scope() as db:
        db.add(
            Memory(
                id=memory_id,
                title=f"Memory {memory_id}",
                description="Revisit the cache eviction policy",
                type="future",
                status=status,
                trigger_type="date" if trigger_date else "none",
                trigger_date=trigger_date,
                team_id="default",
                tags=[],
                created_at=clock.now,
                updated_at=clock.now,
                version=1,
            )
        )


def test_past_deadline_fires_without_persisting(scheduler, bus, clock, db_session):
    result = asyncio.run(scheduler.schedule("mem_past", clock.now - timedelta(seconds=1)))

    assert result["status"] == "fired"
    assert result["immediate"] is True
    events = bus.events(TOPIC_REACTIVATION_SCHEDULED)
    assert len(events) == 1
    assert events[0].immediate is True
    assert events[0].delay_ms is None
    assert get_record(db_session, "mem_past") is None


def test_future_deadline_is_persisted_and_dispatched_once_due(scheduler, bus, clock, db_session):
    async def scenario():
        result = await scheduler.schedule("mem_soon", clock.now + timedelta(seconds=1))
        early = await scheduler.run_due()
        clock.advance(seconds=1)
        due = await scheduler.run_due()
        again = await scheduler.run_due()
        return result, early, due, again

    result, early, due, again = asyncio.run(scenario())

    assert result["status"] == "scheduled"
    assert result["delayMs"] == 1000
    assert early == 0
    assert due == 1
    assert again == 0

    events = bus.events(TOPIC_REACTIVATION_SCHEDULED)
    assert len(events) == 1
    assert events[0].memory_id == "mem_soon"
    assert events[0].delay_ms == 1000
    assert not events[0].immediate

    record = get_record(db_session, "mem_soon")
    assert record["dispatchCount"] == 1
    assert record["dispatchedAt"] == isoformat(clock.now)


def test_expired_lease_is_dispatched_again(scheduler, bus, clock, db_session):
    async def scenario():
        await scheduler.schedule("mem_lease", clock.now + timedelta(seconds=1))
        clock.advance(seconds=2)
        first = await scheduler.run_due()
        clock.advance(seconds=30)
        held = await scheduler.run_due()
        clock.advance(seconds=31)
        retried = await scheduler.run_due()
        return first, held, retried

    assert asyncio.run(scenario()) == (1, 0, 1)
    assert len(bus.events(TOPIC_REACTIVATION_SCHEDULED)) == 2
    assert get_record(db_session, "mem_lease")["dispatchCount"] == 2


def test_rescheduling_replaces_the_pending_record(scheduler, clock, db_session):
    first = clock.now + timedelta(hours=1)
    second = clock.now + timedelta(hours=3)

    async def scenario():
        await scheduler.schedule("mem_move", first)
        await scheduler.schedule("mem_move", second)

    asyncio.run(scenario())

    assert db_session.query(MemorySchedule).filter_by(memory_id="mem_move").count() == 1
    record = get_record(db_session, "mem_move")
    assert record["scheduledFor"] == isoformat(second)
    assert record["delayMs"] == 3 * 3600 * 1000


def test_cancel_removes_the_record(scheduler, clock, db_session):
    async def scenario():
        await scheduler.schedule("mem_cancel", clock.now + timedelta(days=1))
        return await scheduler.cancel("mem_cancel"), await scheduler.cancel("mem_cancel")

    assert asyncio.run(scenario()) == (True, False)
    assert get_record(db_session, "mem_cancel") is None


def test_rearm_releases_leases_and_recovers_orphans(scheduler, clock, db_session):
    leased_for = clock.now + timedelta(minutes=10)
    orphan_for = clock.now + timedelta(hours=2)
    _add_memory("mem_leased", clock, trigger_date=leased_for)
    _add_memory("mem_orphan", clock, trigger_date=orphan_for)
    _add_memory("mem_plain", clock, status="active")
    with session_scope() as db:
        persist_record(db, "mem_leased", leased_for, clock.now, 600_000)
        db.query(MemorySchedule).filter_by(memory_id="mem_leased").update({"dispatched_at": clock.now})

    result = asyncio.run(scheduler.rearm())

    assert result == {"status": "ok", "pending": 1, "rescheduled": 1}
    assert get_record(db_session, "mem_leased")["dispatchedAt"] is None
    assert get_record(db_session, "mem_orphan")["scheduledFor"] == isoformat(orphan_for)
    assert get_record(db_session, "mem_plain") is None


def test_next_deadline_and_status(scheduler, clock):
    async def scenario():
        await scheduler.schedule("mem_a", clock.now + timedelta(minutes=30))
        await scheduler.schedule("mem_b", clock.now + timedelta(minutes=5))
        return await scheduler.next_deadline()

    deadline = asyncio.run(scenario())
    assert deadline == clock.now + timedelta(minutes=5)

    status = scheduler.status()
    assert status["pending"] == 2
    assert status["overdue"] == 0
    assert status["in_flight"] == 0
    assert status["running"] is False


def test_dispatch_tick_recovers_memories_without_a_record(scheduler, bus, clock, db_session):
    trigger = clock.now + timedelta(minutes=10)
    _add_memory("mem_stranded", clock, trigger_date=trigger)

    async def scenario():
        fresh = await scheduler.run_due()
        clock.advance(minutes=2)
        recovered = await scheduler.run_due()
        clock.advance(minutes=10)
        due = await scheduler.run_due()
        return fresh, recovered, due

    fresh, recovered, due = asyncio.run(scenario())

    assert (fresh, recovered, due) == (0, 0, 1)
    assert get_record(db_session, "mem_stranded")["scheduledFor"] == isoformat(trigger)
    events = bus.events(TOPIC_REACTIVATION_SCHEDULED)
    assert [event.memory_id for event in events] == ["mem_stranded"]
    assert events[0].scheduled_for == isoformat(trigger)


def test_overdue_stranded_memory_fires_on_next_tick(scheduler, bus, clock, db_session):
    _add_memory("mem_overdue", clock, trigger_date=clock.now + timedelta(minutes=1))
    clock.advance(hours=1)

    assert asyncio.run(scheduler.run_due()) == 1
    events = bus.events(TOPIC_REACTIVATION_SCHEDULED)
    assert len(events) == 1
    assert events[0].immediate is True
    assert get_record(db_session, "mem_overdue") is None
