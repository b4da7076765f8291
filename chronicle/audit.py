"""
Audit log helpers (append-only, metadata-only).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import chronicle.config as config
from chronicle.db import dialect_insert
from chronicle.models import AuditEntry
from chronicle.timeutil import isoformat, utcnow

ALLOWED_ACTOR_TYPES = {"user", "system", "scheduler", "integration", "mcp"}

FORBIDDEN_PAYLOAD_KEYS = {
    "content",
    "description",
    "embedding",
    "reanalysis",
    "raw_text",
}
MAX_PAYLOAD_STRING_LENGTH = 500
MAX_ENTITY_ID_LENGTH = 255


def _normalize_key(key: str) -> str:
    return key.strip().lower().replace("-", "_")


def _payload_key_forbidden(key: str) -> bool:
    normalized = _normalize_key(key)
    for token in FORBIDDEN_PAYLOAD_KEYS:
        if token in normalized:
            return True
    return False


def _validate_payload_value(value: Any, path: str = "") -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError("payload keys must be strings")
            if _payload_key_forbidden(key):
                raise ValueError(f"payload key '{key}' is not allowed")
            next_path = f"{path}.{key}" if path else key
            _validate_payload_value(item, next_path)
        return
    if isinstance(value, list):
        for item in value:
            _validate_payload_value(item, path)
        return
    if isinstance(value, str) and len(value) > MAX_PAYLOAD_STRING_LENGTH:
        raise ValueError(f"payload value too long at '{path or 'value'}'")


def log_event(
    db,
    *,
    entity_id: str,
    action: str,
    timestamp: Optional[datetime] = None,
    payload: Optional[dict] = None,
    actor_type: str = "system",
    dedupe_key: Optional[str] = None,
) -> bool:
    """
    Append an audit entry.

    With a dedupe_key the append is a claim: it returns False when an entry
    with the same key already exists, so replayed events are recorded once.
    """
    if not entity_id or not isinstance(entity_id, str):
        raise ValueError("entity_id must be a non-empty string")
    if len(entity_id) > MAX_ENTITY_ID_LENGTH:
        raise ValueError("entity_id value too long")
    if not action or not isinstance(action, str):
        raise ValueError("action must be a non-empty string")
    if actor_type not in ALLOWED_ACTOR_TYPES:
        raise ValueError("actor_type must be one of: user|system|scheduler|integration|mcp")
    if payload is not None:
        if not isinstance(payload, dict):
            raise ValueError("payload must be a dict")
        _validate_payload_value(payload)

    values = {
        "entity_id": entity_id,
        "action": action,
        "actor_type": actor_type,
        "payload": payload,
        "timestamp": timestamp or utcnow(),
        "recorded_at": utcnow(),
        "dedupe_key": dedupe_key,
    }
    stmt = dialect_insert(db, AuditEntry).values(**values)
    if dedupe_key is not None:
        stmt = stmt.on_conflict_do_nothing(index_elements=["dedupe_key"])
    result = db.execute(stmt)
    inserted = result.rowcount != 0
    if not inserted:
        config.logger.info(
            "audit_entry_duplicate",
            extra={"entity_id": entity_id, "audit_action": action, "dedupe_key": dedupe_key},
        )
    return inserted


def list_audit_entries(
    db,
    *,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 100,
) -> dict:
    """
    Query audit entries in write order.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")

    query = db.query(AuditEntry)
    if entity_id:
        query = query.filter(AuditEntry.entity_id == entity_id)
    if action:
        query = query.filter(AuditEntry.action == action)

    rows = query.order_by(AuditEntry.recorded_at.asc(), AuditEntry.id.asc()).limit(limit).all()
    return {
        "status": "ok",
        "count": len(rows),
        "entries": [
            {
                "id": row.id,
                "entityId": row.entity_id,
                "action": row.action,
                "actorType": row.actor_type,
                "payload": row.payload,
                "timestamp": isoformat(row.timestamp),
                "recordedAt": isoformat(row.recorded_at),
            }
            for row in rows
        ],
    }


__all__ = [
    "AuditEntry",
    "log_event",
    "list_audit_entries",
    "ALLOWED_ACTOR_TYPES",
]
