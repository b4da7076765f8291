"""
Daily aggregate counters.

Every increment is a single INSERT .. ON CONFLICT DO UPDATE statement, so
concurrent writers never lose updates and no read-modify-write happens in
Python.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Mapping, Optional

from chronicle.db import dialect_insert
from chronicle.models import AggregateCounter
from chronicle.timeutil import day_bucket, utcnow

ANALYTICS_NAMESPACE = "analytics-aggregates"
UPDATE_NAMESPACE = "update-aggregates"
DELETION_NAMESPACE = "deletion-aggregates"
NOTIFICATION_NAMESPACE = "notification-aggregates"

ANALYTICS_FAMILY = "daily-metrics"
UPDATE_FAMILY = "update-metrics"
DELETION_FAMILY = "deletion-metrics"
NOTIFICATION_FAMILY = "notification-metrics"

NAMESPACE_FAMILIES = {
    ANALYTICS_NAMESPACE: ANALYTICS_FAMILY,
    UPDATE_NAMESPACE: UPDATE_FAMILY,
    DELETION_NAMESPACE: DELETION_FAMILY,
    NOTIFICATION_NAMESPACE: NOTIFICATION_FAMILY,
}


def bucket_for(namespace: str, day: Optional[date | datetime | str] = None) -> str:
    try:
        family = NAMESPACE_FAMILIES[namespace]
    except KeyError as exc:
        raise ValueError(f"unknown counter namespace: {namespace}") from exc
    return day_bucket(family, day)


def increment_counters(
    db,
    namespace: str,
    bucket_key: str,
    increments: Mapping[str, int],
    now: Optional[datetime] = None,
) -> None:
    """Atomically add each increment to its counter, creating rows as needed."""
    rows = [
        {
            "namespace": namespace,
            "bucket_key": bucket_key,
            "counter": counter,
            "value": int(amount),
            "updated_at": now or utcnow(),
        }
        for counter, amount in increments.items()
        if amount
    ]
    if not rows:
        return
    stmt = dialect_insert(db, AggregateCounter).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["namespace", "bucket_key", "counter"],
        set_={
            "value": AggregateCounter.value + stmt.excluded.value,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)


def get_bucket(db, namespace: str, bucket_key: str) -> dict[str, int]:
    rows = (
        db.query(AggregateCounter)
        .filter(
            AggregateCounter.namespace == namespace,
            AggregateCounter.bucket_key == bucket_key,
        )
        .order_by(AggregateCounter.counter.asc())
        .all()
    )
    return {row.counter: int(row.value) for row in rows}


def list_buckets(db, namespace: str, limit: int = 30) -> dict:
    rows = (
        db.query(AggregateCounter)
        .filter(AggregateCounter.namespace == namespace)
        .order_by(AggregateCounter.bucket_key.desc(), AggregateCounter.counter.asc())
        .all()
    )
    buckets: dict[str, dict[str, int]] = {}
    for row in rows:
        if row.bucket_key not in buckets and len(buckets) >= limit:
            continue
        buckets.setdefault(row.bucket_key, {})[row.counter] = int(row.value)
    return {"status": "ok", "namespace": namespace, "buckets": buckets}


__all__ = [
    "ANALYTICS_NAMESPACE",
    "UPDATE_NAMESPACE",
    "DELETION_NAMESPACE",
    "NOTIFICATION_NAMESPACE",
    "bucket_for",
    "increment_counters",
    "get_bucket",
    "list_buckets",
]
