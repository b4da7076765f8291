"""
Analytics aggregator (best-effort side channel).

Raw events are recorded once per ``eventId`` and the daily counter is only
incremented when that insert wins, so replayed events are not double
counted. Nothing here ever raises into the event bus.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Optional

import chronicle.config as config
from chronicle.db import dialect_insert, session_scope
from chronicle.errors import ValidationError
from chronicle.events import TrackAnalytics
from chronicle.models import AnalyticsEvent
from chronicle.services.counters import (
    ANALYTICS_NAMESPACE,
    bucket_for,
    get_bucket,
    increment_counters,
)
from chronicle.timeutil import isoformat, parse_timestamp, utcnow
from chronicle.validators import validate_metadata

ANALYTICS_SOURCE = "chronicle-app"


def record_event(db, event: TrackAnalytics, now: datetime) -> bool:
    """Insert the raw event and bump its daily counter. False on replay."""
    validate_metadata(event.metadata, "metadata")
    try:
        occurred_at = parse_timestamp(event.timestamp)
    except ValidationError:
        occurred_at = now
    stmt = dialect_insert(db, AnalyticsEvent).values(
        event_id=event.event_id,
        event=event.event,
        memory_id=event.memory_id,
        timestamp=occurred_at,
        metadata=dict(event.metadata),
        tracked_at=now,
        source=ANALYTICS_SOURCE,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["event_id"])
    inserted = db.execute(stmt).rowcount != 0
    if inserted:
        increment_counters(
            db,
            ANALYTICS_NAMESPACE,
            bucket_for(ANALYTICS_NAMESPACE, now),
            {event.event: 1},
            now=now,
        )
    return inserted


class AnalyticsAggregator:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def _record(self, event: TrackAnalytics) -> bool:
        with session_scope() as db:
            return record_event(db, event, self.clock())

    async def handle(self, event: TrackAnalytics) -> None:
        try:
            inserted = await asyncio.to_thread(self._record, event)
        except Exception as exc:
            config.logger.warning(
                "analytics_aggregation_failed",
                extra={"event": event.event, "memory_id": event.memory_id, "error": str(exc)},
            )
            return
        if inserted:
            config.logger.info(
                "analytics_event_tracked",
                extra={"event": event.event, "memory_id": event.memory_id},
            )
        else:
            config.logger.info(
                "analytics_event_duplicate",
                extra={"event": event.event, "event_id": event.event_id},
            )


def daily_metrics(db, day: Optional[datetime] = None) -> dict:
    moment = day or utcnow()
    bucket = bucket_for(ANALYTICS_NAMESPACE, moment)
    return {"status": "ok", "bucket": bucket, "day": isoformat(moment)[:10], "counts": get_bucket(db, ANALYTICS_NAMESPACE, bucket)}


__all__ = ["AnalyticsAggregator", "record_event", "daily_metrics", "ANALYTICS_SOURCE"]
