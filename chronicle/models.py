"""
Chronicle Database Models
PostgreSQL (+ optional pgvector) or SQLite schema
"""

from enum import Enum as PyEnum
import uuid

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, DateTime,
    CheckConstraint, Index, UniqueConstraint, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

import chronicle.config as config
from chronicle.timeutil import ensure_utc, utcnow

DB_BACKEND = config.DB_BACKEND
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

try:
    from pgvector.sqlalchemy import Vector as PgVector
    PGVECTOR_AVAILABLE = True
except ImportError:
    PgVector = None
    PGVECTOR_AVAILABLE = False

if (
    DB_BACKEND == "postgres"
    and VECTOR_BACKEND_EFFECTIVE == "pgvector"
    and PGVECTOR_AVAILABLE
):
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
else:
    EMBEDDING_COLUMN_TYPE = JSON

JSON_TYPE = JSONB if DB_BACKEND == "postgres" else JSON


def _uuid_default() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class MemoryType(str, PyEnum):
    future = "future"
    decision = "decision"
    failure = "failure"
    context = "context"


class MemoryStatus(str, PyEnum):
    active = "active"
    scheduled = "scheduled"
    triggered = "triggered"
    archived = "archived"


class TriggerType(str, PyEnum):
    none = "none"
    date = "date"
    event = "event"


class NotificationStatus(str, PyEnum):
    pending = "pending"
    sent = "sent"


def _values_sql(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# =============================================================================
# Memories
# =============================================================================

class Memory(Base):
    __tablename__ = "memories"

    id = Column(String(64), primary_key=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    trigger_type = Column(String(20), nullable=False, default=TriggerType.none.value)
    trigger_date = Column(UTCDateTime)
    team_id = Column(String(100), nullable=False)
    tags = Column(JSON_TYPE, default=list)
    severity = Column(String(20))

    # AI-derived (written by the analyze stage)
    ai_summary = Column(Text)
    ai_category = Column(String(100))
    root_cause = Column(Text)
    key_lessons = Column(JSON_TYPE)
    analyzed_at = Column(UTCDateTime)

    # Written by the embed stage
    embedding_id = Column(String(64))

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, nullable=False)
    triggered_at = Column(UTCDateTime)

    # Compare-and-swap token; bumped on every write
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(f"type IN ({_values_sql(MemoryType)})", name="ck_memories_type"),
        CheckConstraint(f"status IN ({_values_sql(MemoryStatus)})", name="ck_memories_status"),
        CheckConstraint(f"trigger_type IN ({_values_sql(TriggerType)})", name="ck_memories_trigger_type"),
        Index("ix_memories_status", "status"),
        Index("ix_memories_team_id", "team_id"),
        Index("ix_memories_created_at", "created_at"),
    )


# =============================================================================
# Reactivation schedules (time-ordered index of pending fires)
# =============================================================================

class MemorySchedule(Base):
    __tablename__ = "memory_schedules"

    memory_id = Column(String(64), primary_key=True)
    scheduled_for = Column(UTCDateTime, nullable=False)
    scheduled_at = Column(UTCDateTime, nullable=False)
    delay_ms = Column(BigInteger, nullable=False)
    dispatched_at = Column(UTCDateTime)
    dispatch_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_memory_schedules_scheduled_for", "scheduled_for"),
    )


# =============================================================================
# Analysis history (append-only)
# =============================================================================

class MemoryAnalysis(Base):
    __tablename__ = "memory_analysis_history"

    id = Column(Integer, primary_key=True)
    memory_id = Column(String(64), nullable=False)
    analysis = Column(JSON_TYPE, nullable=False)
    analyzed_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_memory_analysis_history_memory", "memory_id", "analyzed_at"),
    )


class MemoryReanalysis(Base):
    __tablename__ = "memory_reanalysis"

    id = Column(Integer, primary_key=True)
    memory_id = Column(String(64), nullable=False)
    reanalysis = Column(Text, nullable=False)
    reactivated_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_memory_reanalysis_memory", "memory_id", "reactivated_at"),
    )


# =============================================================================
# Notification history
# =============================================================================

class NotificationRecord(Base):
    __tablename__ = "notification_history"

    id = Column(Integer, primary_key=True)
    memory_id = Column(String(64), nullable=False)
    occurrence = Column(String(64), nullable=False)  # reactivatedAt of the fire
    notification_type = Column(String(50), nullable=False, default="memory_reactivated")
    title = Column(String(500))
    channels = Column(JSON_TYPE, nullable=False, default=list)
    message = Column(Text)
    status = Column(String(20), nullable=False, default=NotificationStatus.pending.value)
    claimed_at = Column(UTCDateTime)
    sent_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("memory_id", "occurrence", name="uq_notification_history_occurrence"),
        Index("ix_notification_history_memory", "memory_id"),
    )


# =============================================================================
# Audit log (append-only, survives entity deletion)
# =============================================================================

class AuditEntry(Base):
    __tablename__ = "audit_log"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    entity_id = Column(String(255), nullable=False)
    action = Column(String(50), nullable=False)
    actor_type = Column(String(50), nullable=False, default="system")
    payload = Column(JSON_TYPE)
    timestamp = Column(UTCDateTime, nullable=False)
    recorded_at = Column(UTCDateTime, default=utcnow, nullable=False)
    dedupe_key = Column(String(255), unique=True)

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_id", "recorded_at"),
        Index("ix_audit_log_action", "action"),
    )


# =============================================================================
# Analytics
# =============================================================================

class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True)
    event_id = Column(String(64), nullable=False, unique=True)
    event = Column(String(100), nullable=False)
    memory_id = Column(String(64))
    timestamp = Column(UTCDateTime, nullable=False)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    tracked_at = Column(UTCDateTime, default=utcnow, nullable=False)
    source = Column(String(50), nullable=False, default="chronicle")

    __table_args__ = (
        Index("ix_analytics_events_event", "event", "tracked_at"),
    )


class AggregateCounter(Base):
    __tablename__ = "aggregate_counters"

    namespace = Column(String(100), primary_key=True)   # analytics-aggregates, ...
    bucket_key = Column(String(150), primary_key=True)  # <family>-<UTC day>
    counter = Column(String(100), primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow, nullable=False)


# =============================================================================
# Vector store
# =============================================================================

class MemoryEmbedding(Base):
    __tablename__ = "memory_embeddings"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    memory_id = Column(String(64), nullable=False, unique=True)
    team_id = Column(String(100), nullable=False)
    model_version = Column(String(100), nullable=False)
    embedding = Column(EMBEDDING_COLUMN_TYPE, nullable=False)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_memory_embeddings_team", "team_id"),
    )


__all__ = [
    "Base",
    "UTCDateTime",
    "MemoryType",
    "MemoryStatus",
    "TriggerType",
    "NotificationStatus",
    "Memory",
    "MemorySchedule",
    "MemoryAnalysis",
    "MemoryReanalysis",
    "NotificationRecord",
    "AuditEntry",
    "AnalyticsEvent",
    "AggregateCounter",
    "MemoryEmbedding",
    "PGVECTOR_AVAILABLE",
]
