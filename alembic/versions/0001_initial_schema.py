"""Create memory lifecycle tables.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

import chronicle.config as config


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _embedding_type(is_postgres: bool, json_type):
    if is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from pgvector.sqlalchemy import Vector

        return Vector(config.EMBEDDING_DIM)
    return json_type


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON

    op.create_table(
        "memories",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("trigger_type", sa.String(length=20), nullable=False, server_default="none"),
        sa.Column("trigger_date", sa.DateTime()),
        sa.Column("team_id", sa.String(length=100), nullable=False),
        sa.Column("tags", json_type),
        sa.Column("severity", sa.String(length=20)),
        sa.Column("ai_summary", sa.Text()),
        sa.Column("ai_category", sa.String(length=100)),
        sa.Column("root_cause", sa.Text()),
        sa.Column("key_lessons", json_type),
        sa.Column("analyzed_at", sa.DateTime()),
        sa.Column("embedding_id", sa.String(length=64)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("triggered_at", sa.DateTime()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint(
            "type IN ('future', 'decision', 'failure', 'context')",
            name="ck_memories_type",
        ),
        sa.CheckConstraint(
            "status IN ('active', 'scheduled', 'triggered', 'archived')",
            name="ck_memories_status",
        ),
        sa.CheckConstraint(
            "trigger_type IN ('none', 'date', 'event')",
            name="ck_memories_trigger_type",
        ),
    )
    op.create_index("ix_memories_status", "memories", ["status"])
    op.create_index("ix_memories_team_id", "memories", ["team_id"])
    op.create_index("ix_memories_created_at", "memories", ["created_at"])

    op.create_table(
        "memory_schedules",
        sa.Column("memory_id", sa.String(length=64), primary_key=True),
        sa.Column("scheduled_for", sa.DateTime(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("delay_ms", sa.BigInteger(), nullable=False),
        sa.Column("dispatched_at", sa.DateTime()),
        sa.Column("dispatch_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_memory_schedules_scheduled_for", "memory_schedules", ["scheduled_for"])

    op.create_table(
        "memory_analysis_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("memory_id", sa.String(length=64), nullable=False),
        sa.Column("analysis", json_type, nullable=False),
        sa.Column("analyzed_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_memory_analysis_history_memory",
        "memory_analysis_history",
        ["memory_id", "analyzed_at"],
    )

    op.create_table(
        "memory_reanalysis",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("memory_id", sa.String(length=64), nullable=False),
        sa.Column("reanalysis", sa.Text(), nullable=False),
        sa.Column("reactivated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_memory_reanalysis_memory",
        "memory_reanalysis",
        ["memory_id", "reactivated_at"],
    )

    op.create_table(
        "notification_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("memory_id", sa.String(length=64), nullable=False),
        sa.Column("occurrence", sa.String(length=64), nullable=False),
        sa.Column("notification_type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=500)),
        sa.Column("channels", json_type, nullable=False),
        sa.Column("message", sa.Text()),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("claimed_at", sa.DateTime()),
        sa.Column("sent_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("memory_id", "occurrence", name="uq_notification_history_occurrence"),
    )
    op.create_index("ix_notification_history_memory", "notification_history", ["memory_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("actor_type", sa.String(length=50), nullable=False, server_default="system"),
        sa.Column("payload", json_type),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), unique=True),
    )
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_id", "recorded_at"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])

    op.create_table(
        "analytics_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("event", sa.String(length=100), nullable=False),
        sa.Column("memory_id", sa.String(length=64)),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("metadata", json_type),
        sa.Column("tracked_at", sa.DateTime(), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False, server_default="chronicle"),
    )
    op.create_index("ix_analytics_events_event", "analytics_events", ["event", "tracked_at"])

    op.create_table(
        "aggregate_counters",
        sa.Column("namespace", sa.String(length=100), primary_key=True),
        sa.Column("bucket_key", sa.String(length=150), primary_key=True),
        sa.Column("counter", sa.String(length=100), primary_key=True),
        sa.Column("value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "memory_embeddings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("memory_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("team_id", sa.String(length=100), nullable=False),
        sa.Column("model_version", sa.String(length=100), nullable=False),
        sa.Column("embedding", _embedding_type(is_postgres, json_type), nullable=False),
        sa.Column("metadata", json_type),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_memory_embeddings_team", "memory_embeddings", ["team_id"])


def downgrade() -> None:
    op.drop_index("ix_memory_embeddings_team", table_name="memory_embeddings")
    op.drop_table("memory_embeddings")
    op.drop_table("aggregate_counters")
    op.drop_index("ix_analytics_events_event", table_name="analytics_events")
    op.drop_table("analytics_events")
    op.drop_index("ix_audit_log_action", table_name="audit_log")
    op.drop_index("ix_audit_log_entity", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_notification_history_memory", table_name="notification_history")
    op.drop_table("notification_history")
    op.drop_index("ix_memory_reanalysis_memory", table_name="memory_reanalysis")
    op.drop_table("memory_reanalysis")
    op.drop_index("ix_memory_analysis_history_memory", table_name="memory_analysis_history")
    op.drop_table("memory_analysis_history")
    op.drop_index("ix_memory_schedules_scheduled_for", table_name="memory_schedules")
    op.drop_table("memory_schedules")
    op.drop_index("ix_memories_created_at", table_name="memories")
    op.drop_index("ix_memories_team_id", table_name="memories")
    op.drop_index("ix_memories_status", table_name="memories")
    op.drop_table("memories")
