"""
Event topics and typed payloads exchanged between pipeline stages.

Every payload is a frozen dataclass. ``to_dict`` renders the camelCase wire
shape and ``from_dict`` validates an incoming map at the bus boundary.
Delivery is at-least-once, so every consumer must tolerate replays.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from chronicle.errors import ValidationError

TOPIC_MEMORY_CREATED = "memory-created"
TOPIC_MEMORY_ANALYZED = "memory-analyzed"
TOPIC_MEMORY_EMBEDDED = "memory-embedded"
TOPIC_REACTIVATION_SCHEDULED = "memory-reactivation-scheduled"
TOPIC_MEMORY_REACTIVATED = "memory-reactivated"
TOPIC_NOTIFICATION_SENT = "notification-sent"
TOPIC_MEMORY_UPDATED = "memory-updated"
TOPIC_MEMORY_DELETED = "memory-deleted"
TOPIC_TRACK_ANALYTICS = "track-analytics"


def _require_str(data: dict, key: str, topic: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{topic}: {key} must be a non-empty string", field=key, error_type="required")
    return value


def _optional_str(data: dict, key: str, topic: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{topic}: {key} must be a string", field=key, error_type="invalid_type")
    return value


def _optional_int(data: dict, key: str, topic: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{topic}: {key} must be a number", field=key, error_type="invalid_type")
    return int(value)


def _str_list(data: dict, key: str, topic: str) -> tuple[str, ...]:
    value = data.get(key)
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"{topic}: {key} must be a list of strings", field=key, error_type="invalid_type")
    return tuple(value)


def _require_dict(data: dict, key: str, topic: str) -> dict:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ValidationError(f"{topic}: {key} must be an object", field=key, error_type="invalid_type")
    return value


def _drop_none(values: dict) -> dict:
    return {key: value for key, value in values.items() if value is not None}


@dataclass(frozen=True)
class Analysis:
    summary: str
    category: str
    lessons: tuple[str, ...] = ()
    root_cause: Optional[str] = None

    def to_dict(self) -> dict:
        return _drop_none({
            "summary": self.summary,
            "category": self.category,
            "rootCause": self.root_cause,
            "lessons": list(self.lessons),
        })

    @classmethod
    def from_dict(cls, data: dict, topic: str = "analysis") -> "Analysis":
        return cls(
            summary=_require_str(data, "summary", topic),
            category=_require_str(data, "category", topic),
            root_cause=_optional_str(data, "rootCause", topic),
            lessons=_str_list(data, "lessons", topic),
        )


@dataclass(frozen=True)
class MemoryCreated:
    topic: ClassVar[str] = TOPIC_MEMORY_CREATED

    memory_id: str
    title: str
    type: str

    def to_dict(self) -> dict:
        return {"memoryId": self.memory_id, "title": self.title, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryCreated":
        return cls(
            memory_id=_require_str(data, "memoryId", cls.topic),
            title=_require_str(data, "title", cls.topic),
            type=_require_str(data, "type", cls.topic),
        )


@dataclass(frozen=True)
class MemoryAnalyzed:
    topic: ClassVar[str] = TOPIC_MEMORY_ANALYZED

    memory_id: str
    analysis: Analysis
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "memoryId": self.memory_id,
            "analysis": self.analysis.to_dict(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryAnalyzed":
        return cls(
            memory_id=_require_str(data, "memoryId", cls.topic),
            analysis=Analysis.from_dict(_require_dict(data, "analysis", cls.topic), cls.topic),
            timestamp=_require_str(data, "timestamp", cls.topic),
        )


@dataclass(frozen=True)
class MemoryEmbedded:
    topic: ClassVar[str] = TOPIC_MEMORY_EMBEDDED

    memory_id: str
    embedding_id: str
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "memoryId": self.memory_id,
            "embeddingId": self.embedding_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryEmbedded":
        return cls(
            memory_id=_require_str(data, "memoryId", cls.topic),
            embedding_id=_require_str(data, "embeddingId", cls.topic),
            timestamp=_require_str(data, "timestamp", cls.topic),
        )


@dataclass(frozen=True)
class ReactivationScheduled:
    topic: ClassVar[str] = TOPIC_REACTIVATION_SCHEDULED

    memory_id: str
    scheduled_for: str
    delay_ms: Optional[int] = None
    immediate: Optional[bool] = None

    def to_dict(self) -> dict:
        return _drop_none({
            "memoryId": self.memory_id,
            "scheduledFor": self.scheduled_for,
            "delayMs": self.delay_ms,
            "immediate": self.immediate,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "ReactivationScheduled":
        immediate = data.get("immediate")
        if immediate is not None and not isinstance(immediate, bool):
            raise ValidationError(
                f"{cls.topic}: immediate must be a boolean",
                field="immediate",
                error_type="invalid_type",
            )
        return cls(
            memory_id=_require_str(data, "memoryId", cls.topic),
            scheduled_for=_require_str(data, "scheduledFor", cls.topic),
            delay_ms=_optional_int(data, "delayMs", cls.topic),
            immediate=immediate,
        )


@dataclass(frozen=True)
class MemoryReactivated:
    topic: ClassVar[str] = TOPIC_MEMORY_REACTIVATED

    memory_id: str
    title: str
    reanalysis: str
    reactivated_at: str

    def to_dict(self) -> dict:
        return {
            "memoryId": self.memory_id,
            "title": self.title,
            "reanalysis": self.reanalysis,
            "reactivatedAt": self.reactivated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryReactivated":
        reanalysis = data.get("reanalysis")
        if not isinstance(reanalysis, str):
            raise ValidationError(
                f"{cls.topic}: reanalysis must be a string",
                field="reanalysis",
                error_type="invalid_type",
            )
        return cls(
            memory_id=_require_str(data, "memoryId", cls.topic),
            title=_require_str(data, "title", cls.topic),
            reanalysis=reanalysis,
            reactivated_at=_require_str(data, "reactivatedAt", cls.topic),
        )


@dataclass(frozen=True)
class NotificationSent:
    topic: ClassVar[str] = TOPIC_NOTIFICATION_SENT

    memory_id: str
    channels: tuple[str, ...]
    sent_at: str

    def to_dict(self) -> dict:
        return {"memoryId": self.memory_id, "channels": list(self.channels), "sentAt": self.sent_at}

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationSent":
        return cls(
            memory_id=_require_str(data, "memoryId", cls.topic),
            channels=_str_list(data, "channels", cls.topic),
            sent_at=_require_str(data, "sentAt", cls.topic),
        )


@dataclass(frozen=True)
class MemoryUpdated:
    topic: ClassVar[str] = TOPIC_MEMORY_UPDATED

    memory_id: str
    updates: dict
    timestamp: str
    previous_status: Optional[str] = None

    def to_dict(self) -> dict:
        return _drop_none({
            "memoryId": self.memory_id,
            "updates": dict(self.updates),
            "timestamp": self.timestamp,
            "previousStatus": self.previous_status,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryUpdated":
        return cls(
            memory_id=_require_str(data, "memoryId", cls.topic),
            updates=dict(_require_dict(data, "updates", cls.topic)),
            timestamp=_require_str(data, "timestamp", cls.topic),
            previous_status=_optional_str(data, "previousStatus", cls.topic),
        )


@dataclass(frozen=True)
class MemoryDeleted:
    topic: ClassVar[str] = TOPIC_MEMORY_DELETED

    memory_id: str
    title: str
    timestamp: str
    status: Optional[str] = None

    def to_dict(self) -> dict:
        return _drop_none({
            "memoryId": self.memory_id,
            "title": self.title,
            "timestamp": self.timestamp,
            "status": self.status,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryDeleted":
        return cls(
            memory_id=_require_str(data, "memoryId", cls.topic),
            title=_require_str(data, "title", cls.topic),
            timestamp=_require_str(data, "timestamp", cls.topic),
            status=_optional_str(data, "status", cls.topic),
        )


@dataclass(frozen=True)
class TrackAnalytics:
    topic: ClassVar[str] = TOPIC_TRACK_ANALYTICS

    event: str
    timestamp: str
    memory_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = dict(self.metadata)
        payload.update(_drop_none({
            "event": self.event,
            "memoryId": self.memory_id,
            "timestamp": self.timestamp,
            "eventId": self.event_id,
        }))
        return payload

    @classmethod
    def from_dict(cls, data: dict) -> "TrackAnalytics":
        metadata = {
            key: value
            for key, value in data.items()
            if key not in {"event", "memoryId", "timestamp", "eventId"}
        }
        event_id = _optional_str(data, "eventId", cls.topic)
        kwargs = {}
        if event_id:
            kwargs["event_id"] = event_id
        return cls(
            event=_require_str(data, "event", cls.topic),
            timestamp=_require_str(data, "timestamp", cls.topic),
            memory_id=_optional_str(data, "memoryId", cls.topic),
            metadata=metadata,
            **kwargs,
        )


EVENT_TYPES = {
    cls.topic: cls
    for cls in (
        MemoryCreated,
        MemoryAnalyzed,
        MemoryEmbedded,
        ReactivationScheduled,
        MemoryReactivated,
        NotificationSent,
        MemoryUpdated,
        MemoryDeleted,
        TrackAnalytics,
    )
}


def parse_event(topic: str, data) -> Any:
    """Validate a raw payload (or pass through a typed one) for ``topic``."""
    event_cls = EVENT_TYPES.get(topic)
    if event_cls is None:
        raise ValidationError(f"Unknown event topic: {topic}", field="topic", error_type="invalid_choice")
    if isinstance(data, event_cls):
        return data
    if not isinstance(data, dict):
        raise ValidationError(f"{topic}: payload must be an object", field="payload", error_type="invalid_type")
    return event_cls.from_dict(data)


__all__ = [
    "TOPIC_MEMORY_CREATED",
    "TOPIC_MEMORY_ANALYZED",
    "TOPIC_MEMORY_EMBEDDED",
    "TOPIC_REACTIVATION_SCHEDULED",
    "TOPIC_MEMORY_REACTIVATED",
    "TOPIC_NOTIFICATION_SENT",
    "TOPIC_MEMORY_UPDATED",
    "TOPIC_MEMORY_DELETED",
    "TOPIC_TRACK_ANALYTICS",
    "Analysis",
    "MemoryCreated",
    "MemoryAnalyzed",
    "MemoryEmbedded",
    "ReactivationScheduled",
    "MemoryReactivated",
    "NotificationSent",
    "MemoryUpdated",
    "MemoryDeleted",
    "TrackAnalytics",
    "EVENT_TYPES",
    "parse_event",
]
