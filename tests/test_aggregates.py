import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from chronicle.db import DB, session_scope
from chronicle.errors import ValidationError
from chronicle.events import TrackAnalytics
from chronicle.models import AnalyticsEvent
from chronicle.services.analytics import ANALYTICS_SOURCE, AnalyticsAggregator, daily_metrics, record_event
from chronicle.services.counters import (
    ANALYTICS_NAMESPACE,
    DELETION_NAMESPACE,
    bucket_for,
    get_bucket,
    increment_counters,
    list_buckets,
)
from chronicle.timeutil import isoformat


def test_bucket_keys_use_family_and_utc_day(clock):
    assert bucket_for(ANALYTICS_NAMESPACE, clock.now) == "daily-metrics-2026-01-01"
    assert bucket_for(DELETION_NAMESPACE, "2026-02-03") == "deletion-metrics-2026-02-03"


def test_concurrent_increments_are_not_lost(db_engine, clock):
    bucket = bucket_for(ANALYTICS_NAMESPACE, clock.now)

    def bump(_):
        for _ in range(25):
            with session_scope() as db:
                increment_counters(db, ANALYTICS_NAMESPACE, bucket, {"memory_created": 1}, now=clock.now)

    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(bump, range(8)))

    with session_scope() as db:
        assert get_bucket(db, ANALYTICS_NAMESPACE, bucket) == {"memory_created": 200}


def test_zero_increments_are_skipped(db_session, clock):
    bucket = bucket_for(ANALYTICS_NAMESPACE, clock.now)
    increment_counters(db_session, ANALYTICS_NAMESPACE, bucket, {"idle": 0}, now=clock.now)
    db_session.commit()
    assert get_bucket(db_session, ANALYTICS_NAMESPACE, bucket) == {}


def test_analytics_events_are_deduplicated_by_event_id(db_engine, clock):
    event = TrackAnalytics(
        event="memory_created",
        memory_id="mem_1",
        timestamp=isoformat(clock.now),
        metadata={"type": "decision"},
    )
    with session_scope() as db:
        assert record_event(db, event, clock.now) is True
    with session_scope() as db:
        assert record_event(db, event, clock.now) is False

    with session_scope() as db:
        rows = db.query(AnalyticsEvent).all()
        assert len(rows) == 1
        assert rows[0].source == ANALYTICS_SOURCE
        assert rows[0].metadata_ == {"type": "decision"}
        assert daily_metrics(db, clock.now)["counts"] == {"memory_created": 1}


def test_oversized_analytics_metadata_is_rejected(db_session, clock, monkeypatch):
    monkeypatch.setattr("chronicle.validators.MAX_METADATA_BYTES", 32)
    event = TrackAnalytics(
        event="memory_created",
        timestamp=isoformat(clock.now),
        metadata={"note": "x" * 64},
    )
    with pytest.raises(ValidationError):
        record_event(db_session, event, clock.now)
    assert db_session.query(AnalyticsEvent).count() == 0

def test_aggregator_never_raises(clock, monkeypatch):
    monkeypatch.setattr(DB, "SessionLocal", None)
    aggregator = AnalyticsAggregator(clock=clock)
    event = TrackAnalytics(event="question_answered", timestamp=isoformat(clock.now))
    asyncio.run(aggregator.handle(event))


def test_list_buckets_groups_by_day(db_session, clock):
    for day in ("2026-01-01", "2026-01-02"):
        increment_counters(
            db_session,
            DELETION_NAMESPACE,
            bucket_for(DELETION_NAMESPACE, day),
            {"total_deletions": 2},
            now=clock.now,
        )
    db_session.commit()

    listed = list_buckets(db_session, DELETION_NAMESPACE, limit=1)
    assert listed["buckets"] == {"deletion-metrics-2026-01-02": {"total_deletions": 2}}
