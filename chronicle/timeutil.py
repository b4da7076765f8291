"""
UTC timestamp helpers shared by models, events, and services.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from chronicle.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def parse_timestamp(value, field: str = "timestamp") -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be an ISO-8601 timestamp", field=field, error_type="invalid_type")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(
            f"{field} must be an ISO-8601 timestamp",
            field=field,
            error_type="invalid_format",
        ) from exc
    return ensure_utc(parsed)


def utc_day(value: Optional[datetime] = None) -> str:
    moment = ensure_utc(value) if value is not None else utcnow()
    return moment.date().isoformat()


def day_bucket(family: str, day: Optional[date | str] = None) -> str:
    """Bucket key for a metric family on a UTC calendar day."""
    if day is None:
        day = utc_day()
    elif isinstance(day, datetime):
        day = utc_day(day)
    elif isinstance(day, date):
        day = day.isoformat()
    return f"{family}-{day}"


def milliseconds_between(start: datetime, end: datetime) -> int:
    delta = ensure_utc(end) - ensure_utc(start)
    return int(delta.total_seconds() * 1000)
