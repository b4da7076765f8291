"""
Shared configuration for Chronicle.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("chronicle")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_list(env_name: str, default: str) -> tuple[str, ...]:
    value = os.environ.get(env_name, default)
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _derive_effective_vector_backend(db_backend: str, vector_backend: str) -> str:
    if vector_backend != "pgvector":
        return "none"
    if db_backend != "postgres":
        return "none"
    return "pgvector"


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/chronicle.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
VECTOR_BACKEND_EFFECTIVE = _derive_effective_vector_backend(DB_BACKEND, VECTOR_BACKEND)

# Database initialization controls
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Enrichment provider settings
AI_PROVIDER = os.environ.get("AI_PROVIDER", "openai").strip().lower()
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)
CHAT_MODEL = os.environ.get("CHAT_MODEL", "gpt-4o-mini")

# Provider retry/backoff (3 attempts by default)
CAPABILITY_TIMEOUT_SECONDS = _get_float("CAPABILITY_TIMEOUT_SECONDS", 30.0)
CAPABILITY_RETRY_MAX = _get_int("CAPABILITY_RETRY_MAX", 2)
CAPABILITY_RETRY_BACKOFF_SECONDS = _get_float("CAPABILITY_RETRY_BACKOFF_SECONDS", 0.5)
CAPABILITY_RETRY_JITTER_SECONDS = _get_float("CAPABILITY_RETRY_JITTER_SECONDS", 0.25)
CAPABILITY_FAILURE_THRESHOLD = _get_int("CAPABILITY_FAILURE_THRESHOLD", 5)
CAPABILITY_COOLDOWN_SECONDS = _get_int("CAPABILITY_COOLDOWN_SECONDS", 60)

# Event delivery
EVENT_HANDLER_MAX_ATTEMPTS = _get_int("EVENT_HANDLER_MAX_ATTEMPTS", 3)
EVENT_RETRY_BACKOFF_SECONDS = _get_float("EVENT_RETRY_BACKOFF_SECONDS", 1.0)
EVENT_RETRY_JITTER_SECONDS = _get_float("EVENT_RETRY_JITTER_SECONDS", 0.25)
EVENT_HISTORY_LIMIT = _get_int("EVENT_HISTORY_LIMIT", 1000)

# Reactivation scheduler
SCHEDULER_ENABLED = _get_bool("SCHEDULER_ENABLED", True)
SCHEDULER_POLL_SECONDS = _get_float("SCHEDULER_POLL_SECONDS", 30.0)
SCHEDULER_DISPATCH_LEASE_SECONDS = _get_int("SCHEDULER_DISPATCH_LEASE_SECONDS", 300)
SCHEDULER_BATCH_LIMIT = _get_int("SCHEDULER_BATCH_LIMIT", 100)

# Notifications
NOTIFICATION_CHANNELS = _get_list("NOTIFICATION_CHANNELS", "in-app,email")
NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL")
NOTIFICATION_LEASE_SECONDS = _get_int("NOTIFICATION_LEASE_SECONDS", 120)

# Request/input limits
MAX_TITLE_LENGTH = _get_int("CHRONICLE_MAX_TITLE_LENGTH", 500)
MAX_TEXT_LENGTH = _get_int("CHRONICLE_MAX_TEXT_LENGTH", 8000)
MAX_TAG_ITEMS = _get_int("CHRONICLE_MAX_TAG_ITEMS", 50)
MAX_TAG_LENGTH = _get_int("CHRONICLE_MAX_TAG_LENGTH", 100)
MAX_TEAM_ID_LENGTH = _get_int("CHRONICLE_MAX_TEAM_ID_LENGTH", 100)
MAX_QUESTION_LENGTH = _get_int("CHRONICLE_MAX_QUESTION_LENGTH", 4000)
MAX_METADATA_BYTES = _get_int("CHRONICLE_MAX_METADATA_BYTES", 20000)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("CHRONICLE_MAX_EMBEDDING_TEXT_LENGTH", 8000)
ASK_LIMIT_DEFAULT = _get_int("CHRONICLE_ASK_LIMIT_DEFAULT", 5)
ASK_LIMIT_MAX = _get_int("CHRONICLE_ASK_LIMIT_MAX", 50)
DEFAULT_TEAM_ID = os.environ.get("CHRONICLE_DEFAULT_TEAM_ID", "default")

# HTTP surface
CORS_ALLOWED_ORIGINS = _get_list("CORS_ALLOWED_ORIGINS", "http://localhost:3000")
TRUSTED_HOSTS = _get_list("TRUSTED_HOSTS", "")


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, VECTOR_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in {"pgvector", "none"}:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'none'")

    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        logger.warning("VECTOR_BACKEND=pgvector requires postgres; using in-process similarity.")

    if AI_PROVIDER not in {"openai", "none"}:
        errors.append("AI_PROVIDER must be 'openai' or 'none'")
    if AI_PROVIDER == "openai" and not OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY is required when AI_PROVIDER=openai")

    if EVENT_HANDLER_MAX_ATTEMPTS < 1:
        errors.append("EVENT_HANDLER_MAX_ATTEMPTS must be at least 1")
    if SCHEDULER_POLL_SECONDS <= 0:
        errors.append("SCHEDULER_POLL_SECONDS must be positive")
    if not NOTIFICATION_CHANNELS:
        errors.append("NOTIFICATION_CHANNELS must name at least one channel")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        is_sqlite_url = DATABASE_URL.lower().startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    VECTOR_BACKEND_EFFECTIVE = _derive_effective_vector_backend(DB_BACKEND, VECTOR_BACKEND)

    if VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from chronicle.models import PGVECTOR_AVAILABLE

        if not PGVECTOR_AVAILABLE:
            errors.append("pgvector package is required when VECTOR_BACKEND=pgvector")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
