"""
Memory CRUD, stats and question answering.

Read operations take a SQLAlchemy session first, like every other service
function. Write operations take the pipeline: they commit, then emit the
events that drive the rest of the lifecycle.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from sqlalchemy import func

import chronicle.config as config
from chronicle import audit
from chronicle.audit_constants import ACTION_MEMORY_CREATED
from chronicle.db import session_scope
from chronicle.errors import ValidationError
from chronicle.events import (
    TOPIC_MEMORY_CREATED,
    TOPIC_MEMORY_DELETED,
    TOPIC_MEMORY_UPDATED,
    TOPIC_TRACK_ANALYTICS,
    MemoryCreated,
    MemoryDeleted,
    MemoryUpdated,
    TrackAnalytics,
)
from chronicle.lifecycle import (
    has_date_trigger,
    initial_status,
    load_memory,
    memory_to_dict,
    new_memory_id,
    update_with_retry,
)
from chronicle.models import Memory, MemoryStatus, MemoryType, TriggerType
from chronicle.services.scheduler import delete_record
from chronicle.timeutil import isoformat, parse_timestamp
from chronicle.validators import (
    validate_allowed_keys,
    validate_choice,
    validate_limit,
    validate_optional_text,
    validate_required_text,
    validate_string_list,
)

logger = config.logger

SEVERITY_LEVELS = ("low", "medium", "high", "critical")
MEMORY_TYPES = tuple(member.value for member in MemoryType)
MEMORY_STATUSES = tuple(member.value for member in MemoryStatus)
TRIGGER_TYPES = tuple(member.value for member in TriggerType)

CREATE_FIELDS = (
    "title",
    "description",
    "type",
    "triggerType",
    "triggerDate",
    "teamId",
    "tags",
    "severity",
)
UPDATE_FIELDS = (
    "title",
    "description",
    "type",
    "status",
    "tags",
    "severity",
    "triggerType",
    "triggerDate",
)
# wire name -> column attribute
FIELD_ATTRS = {
    "title": "title",
    "description": "description",
    "type": "type",
    "status": "status",
    "tags": "tags",
    "severity": "severity",
    "triggerType": "trigger_type",
    "triggerDate": "trigger_date",
}
ATTR_FIELDS = {attr: name for name, attr in FIELD_ATTRS.items()}

NO_MATCH_ANSWER = (
    "I couldn't find any relevant memories for that question. "
    "Try asking about past decisions, failures, or documented context."
)


# =============================================================================
# Validation
# =============================================================================

def _validate_severity(value) -> None:
    if value is not None:
        validate_choice(value, "severity", SEVERITY_LEVELS)


def _parse_trigger_date(value) -> Optional[datetime]:
    if value is None:
        return None
    return parse_timestamp(value, "triggerDate")


def _validate_create(payload: dict) -> dict:
    validate_allowed_keys(payload, "memory", CREATE_FIELDS)
    validate_required_text(payload.get("title"), "title", config.MAX_TITLE_LENGTH)
    validate_required_text(payload.get("description"), "description", config.MAX_TEXT_LENGTH)
    validate_choice(payload.get("type"), "type", MEMORY_TYPES)
    trigger_type = payload.get("triggerType") or TriggerType.none.value
    validate_choice(trigger_type, "triggerType", TRIGGER_TYPES)
    trigger_date = _parse_trigger_date(payload.get("triggerDate"))
    if trigger_type == TriggerType.date.value and trigger_date is None:
        raise ValidationError(
            "triggerDate is required when triggerType is 'date'",
            field="triggerDate",
            error_type="required",
        )
    team_id = payload.get("teamId") or config.DEFAULT_TEAM_ID
    validate_required_text(team_id, "teamId", config.MAX_TEAM_ID_LENGTH)
    tags = payload.get("tags") or []
    validate_string_list(tags, "tags", config.MAX_TAG_ITEMS, config.MAX_TAG_LENGTH)
    _validate_severity(payload.get("severity"))
    return {
        "title": payload["title"].strip(),
        "description": payload["description"],
        "type": payload["type"],
        "trigger_type": trigger_type,
        "trigger_date": trigger_date,
        "team_id": team_id,
        "tags": list(tags),
        "severity": payload.get("severity"),
    }


def _validate_patch(payload: dict) -> dict:
    validate_allowed_keys(payload, "updates", UPDATE_FIELDS)
    if not payload:
        raise ValidationError("updates must contain at least one field", field="updates", error_type="required")
    patch = {}
    if "title" in payload:
        validate_required_text(payload["title"], "title", config.MAX_TITLE_LENGTH)
        patch["title"] = payload["title"].strip()
    if "description" in payload:
        validate_required_text(payload["description"], "description", config.MAX_TEXT_LENGTH)
        patch["description"] = payload["description"]
    if "type" in payload:
        validate_choice(payload["type"], "type", MEMORY_TYPES)
        patch["type"] = payload["type"]
    if "status" in payload:
        validate_choice(payload["status"], "status", MEMORY_STATUSES)
        patch["status"] = payload["status"]
    if "tags" in payload:
        if payload["tags"] is None:
            raise ValidationError("tags must be a list", field="tags", error_type="invalid_type")
        validate_string_list(payload["tags"], "tags", config.MAX_TAG_ITEMS, config.MAX_TAG_LENGTH)
        patch["tags"] = list(payload["tags"])
    if "severity" in payload:
        _validate_severity(payload["severity"])
        patch["severity"] = payload["severity"]
    if "triggerType" in payload:
        validate_choice(payload["triggerType"], "triggerType", TRIGGER_TYPES)
        patch["trigger_type"] = payload["triggerType"]
    if "triggerDate" in payload:
        patch["trigger_date"] = _parse_trigger_date(payload["triggerDate"])
    return patch


# =============================================================================
# Reads
# =============================================================================

def get_memory(db, memory_id: str) -> dict:
    return memory_to_dict(load_memory(db, memory_id))


def list_memories(db, status: Optional[str] = None, team_id: Optional[str] = None) -> list[dict]:
    if status is not None:
        validate_choice(status, "status", MEMORY_STATUSES)
    query = db.query(Memory)
    if status:
        query = query.filter(Memory.status == status)
    if team_id:
        query = query.filter(Memory.team_id == team_id)
    rows = query.order_by(Memory.created_at.desc(), Memory.id.desc()).all()
    return [memory_to_dict(row) for row in rows]


def memory_stats(db, team_id: Optional[str] = None) -> dict:
    status_query = db.query(Memory.status, func.count(Memory.id))
    type_query = db.query(Memory.type, func.count(Memory.id))
    if team_id:
        status_query = status_query.filter(Memory.team_id == team_id)
        type_query = type_query.filter(Memory.team_id == team_id)
    by_status = {status: 0 for status in MEMORY_STATUSES}
    by_status.update({status: int(count) for status, count in status_query.group_by(Memory.status).all()})
    by_type = {memory_type: 0 for memory_type in MEMORY_TYPES}
    by_type.update({memory_type: int(count) for memory_type, count in type_query.group_by(Memory.type).all()})
    stats = {"total": sum(by_status.values())}
    stats.update(by_status)
    stats["byType"] = by_type
    return stats


def get_scheduled_before(db, before: datetime) -> list[dict]:
    rows = (
        db.query(Memory)
        .filter(
            Memory.status == MemoryStatus.scheduled.value,
            Memory.trigger_date.isnot(None),
            Memory.trigger_date <= before,
        )
        .order_by(Memory.trigger_date.asc())
        .all()
    )
    return [memory_to_dict(row) for row in rows]


# =============================================================================
# Writes
# =============================================================================

def _insert_memory(fields: dict, now: datetime) -> dict:
    with session_scope() as db:
        memory = Memory(
            id=new_memory_id(now),
            status=initial_status(fields["trigger_type"]),
            created_at=now,
            updated_at=now,
            version=1,
            **fields,
        )
        db.add(memory)
        db.flush()
        audit.log_event(
            db,
            entity_id=memory.id,
            action=ACTION_MEMORY_CREATED,
            timestamp=now,
            payload={
                "type": memory.type,
                "status": memory.status,
                "triggerType": memory.trigger_type,
                "teamId": memory.team_id,
            },
            actor_type="user",
        )
        return memory_to_dict(memory)


async def create_memory(pipeline, payload: dict) -> dict:
    fields = _validate_create(payload)
    now = pipeline.clock()
    memory = await asyncio.to_thread(_insert_memory, fields, now)
    await pipeline.bus.emit(
        TOPIC_MEMORY_CREATED,
        MemoryCreated(memory_id=memory["id"], title=memory["title"], type=memory["type"]),
    )
    await pipeline.bus.emit(
        TOPIC_TRACK_ANALYTICS,
        TrackAnalytics(
            event="memory_created",
            memory_id=memory["id"],
            timestamp=memory["createdAt"],
            metadata={"type": memory["type"]},
        ),
    )
    logger.info(
        "memory_created",
        extra={"memory_id": memory["id"], "memory_type": memory["type"], "status": memory["status"]},
    )
    return memory


def _apply_update(memory_id: str, patch: dict, now: datetime):
    requested_status = patch.get("status")

    def before_commit(db, result):
        if requested_status not in (None, MemoryStatus.archived.value, result.previous_status):
            raise ValidationError(
                "status can only be set to 'archived'",
                field="status",
                error_type="invalid_transition",
            )
        if result.previous_status == MemoryStatus.scheduled.value and result.status != MemoryStatus.scheduled.value:
            delete_record(db, memory_id)

    return update_with_retry(memory_id, patch, now=now, before_commit=before_commit)


async def update_memory(pipeline, memory_id: str, payload: dict) -> dict:
    patch = _validate_patch(payload)
    now = pipeline.clock()
    result = await asyncio.to_thread(_apply_update, memory_id, patch, now)
    after = result.after

    if result.previous_status == MemoryStatus.scheduled.value and after["status"] != MemoryStatus.scheduled.value:
        pipeline.scheduler.wake()
        logger.info(
            "reactivation_cancelled",
            extra={"memory_id": memory_id, "status": after["status"]},
        )
    elif after["status"] == MemoryStatus.scheduled.value and (result.trigger_changed or result.status_changed):
        trigger_date = parse_timestamp(after["triggerDate"], "triggerDate")
        if has_date_trigger(after["triggerType"], trigger_date):
            await pipeline.scheduler.schedule(memory_id, trigger_date)

    updates = {ATTR_FIELDS[name]: after[ATTR_FIELDS[name]] for name in result.changed_fields}
    await pipeline.bus.emit(
        TOPIC_MEMORY_UPDATED,
        MemoryUpdated(
            memory_id=memory_id,
            updates=updates,
            timestamp=after["updatedAt"],
            previous_status=result.previous_status,
        ),
    )
    await pipeline.bus.emit(
        TOPIC_TRACK_ANALYTICS,
        TrackAnalytics(
            event="memory_updated",
            memory_id=memory_id,
            timestamp=after["updatedAt"],
            metadata={
                "fields": sorted(updates),
                "previousStatus": result.previous_status,
                "newStatus": after["status"],
            },
        ),
    )
    logger.info(
        "memory_updated",
        extra={"memory_id": memory_id, "fields": sorted(updates), "status": after["status"]},
    )
    return after


def _remove_memory(memory_id: str) -> dict:
    with session_scope() as db:
        memory = load_memory(db, memory_id)
        snapshot = memory_to_dict(memory)
        db.delete(memory)
        delete_record(db, memory_id)
    return snapshot


async def delete_memory(pipeline, memory_id: str) -> dict:
    """
    Delete a memory and cancel its schedule. Raises NotFoundError (with no
    audit entry and no counter change) when the id is unknown.
    """
    snapshot = await asyncio.to_thread(_remove_memory, memory_id)
    pipeline.scheduler.wake()
    timestamp = isoformat(pipeline.clock())
    await pipeline.bus.emit(
        TOPIC_MEMORY_DELETED,
        MemoryDeleted(
            memory_id=memory_id,
            title=snapshot["title"],
            timestamp=timestamp,
            status=snapshot["status"],
        ),
    )
    await pipeline.bus.emit(
        TOPIC_TRACK_ANALYTICS,
        TrackAnalytics(
            event="memory_deleted",
            memory_id=memory_id,
            timestamp=timestamp,
            metadata={"type": snapshot["type"], "status": snapshot["status"]},
        ),
    )
    logger.info("memory_deleted", extra={"memory_id": memory_id})
    return {
        "success": True,
        "message": f'Memory "{snapshot["title"]}" deleted successfully',
        "memoryId": memory_id,
    }


# =============================================================================
# Question answering
# =============================================================================

def _search(pipeline, vector, team_id: Optional[str], limit: int) -> list[dict]:
    with session_scope() as db:
        return pipeline.vector_store.search(db, vector, team_id=team_id, k=limit)


def _context_line(match: dict) -> str:
    return f"[{match['type']}] {match['title']}\n{match['description']}\nCreated: {match['createdAt']}"


async def answer_question(
    pipeline,
    question: str,
    team_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> dict:
    validate_required_text(question, "question", config.MAX_QUESTION_LENGTH)
    validate_optional_text(team_id, "teamId", config.MAX_TEAM_ID_LENGTH)
    limit = config.ASK_LIMIT_DEFAULT if limit is None else limit
    validate_limit(limit, "limit", config.ASK_LIMIT_MAX)

    vector = await pipeline.provider.embed(question)
    matches = await asyncio.to_thread(_search, pipeline, vector, team_id, limit)
    if not matches:
        logger.info("question_no_matches", extra={"team_id": team_id})
        return {"answer": NO_MATCH_ANSWER, "sources": []}

    answer = await pipeline.provider.answer(question, [_context_line(match) for match in matches])
    sources = [
        {"memoryId": match["memoryId"], "title": match["title"], "relevance": match["relevance"]}
        for match in matches
    ]
    await pipeline.bus.emit(
        TOPIC_TRACK_ANALYTICS,
        TrackAnalytics(
            event="question_answered",
            timestamp=isoformat(pipeline.clock()),
            metadata={"sourcesCount": len(sources), "teamId": team_id},
        ),
    )
    logger.info(
        "question_answered",
        extra={"sources_count": len(sources), "answer_length": len(answer)},
    )
    return {"answer": answer, "sources": sources}


__all__ = [
    "SEVERITY_LEVELS",
    "NO_MATCH_ANSWER",
    "get_memory",
    "list_memories",
    "memory_stats",
    "get_scheduled_before",
    "create_memory",
    "update_memory",
    "delete_memory",
    "answer_question",
]
