"""
Database initialization, migration, and session helpers.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import sessionmaker

import chronicle.config as config
from chronicle.errors import PersistenceError


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine = None
    SessionLocal = None


@contextmanager
def session_scope() -> Iterator:
    """
    Yield a session that commits on success and rolls back on any failure.

    Store outages surface as PersistenceError so the event bus can retry the
    stage; the rollback leaves no partial write behind.
    """
    if DB.SessionLocal is None:
        raise PersistenceError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        yield db
        db.commit()
    except (OperationalError, DBAPIError) as exc:
        db.rollback()
        raise PersistenceError(f"store unavailable: {exc.__class__.__name__}") from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def dialect_insert(db, model):
    """
    Dialect-specific INSERT supporting ON CONFLICT clauses.

    Built against the model's table, so value keys are column names.
    """
    if db.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert(model.__table__)


def _get_alembic_config():
    try:
        from alembic.config import Config
    except ImportError as exc:
        raise RuntimeError("Alembic is required for migrations") from exc

    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    alembic_cfg = Config(os.path.join(base_dir, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(base_dir, "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
    return alembic_cfg


def _get_schema_revisions(engine) -> tuple[Optional[str], Optional[str]]:
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    alembic_cfg = _get_alembic_config()
    script = ScriptDirectory.from_config(alembic_cfg)
    head_revision = script.get_current_head()
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        current_revision = context.get_current_revision()
    return current_revision, head_revision


def _ensure_schema_up_to_date(engine) -> None:
    from alembic import command

    current_rev, head_rev = _get_schema_revisions(engine)
    if current_rev == head_rev:
        return

    if config.AUTO_MIGRATE_ON_STARTUP:
        alembic_cfg = _get_alembic_config()
        command.upgrade(alembic_cfg, "head")
        new_current, _ = _get_schema_revisions(engine)
        if new_current != head_rev:
            raise RuntimeError("Database migration did not reach expected revision")
    else:
        raise RuntimeError(
            f"Database schema out of date (current={current_rev}, expected={head_rev}). "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true for dev."
        )


def init_db() -> None:
    """Initialize database connection and bring the schema to head."""
    config.validate_and_prepare_config()

    config.logger.info("Connecting to database...")
    engine_kwargs = {"pool_pre_ping": True}
    if config.DB_BACKEND == "sqlite":
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    DB.engine = create_engine(config.DATABASE_URL, **engine_kwargs)
    DB.SessionLocal = sessionmaker(bind=DB.engine, expire_on_commit=False)

    if (
        config.AUTO_CREATE_EXTENSIONS
        and config.DB_BACKEND == "postgres"
        and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
    ):
        config.logger.info("Ensuring pgvector extension...")
        with DB.engine.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.commit()
    else:
        config.logger.info("Skipping pgvector extension creation")

    _ensure_schema_up_to_date(DB.engine)

    config.logger.info("Database initialized")
