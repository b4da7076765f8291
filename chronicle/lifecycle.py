"""
Memory lifecycle state machine and atomic record writes.

States are active, scheduled, triggered and archived. Every write to the
memories table goes through one of three primitives here:

- ``merge_memory``: compare-and-swap merge on ``version`` (external patches)
- ``write_owned_fields``: column-scoped UPDATE for stage-owned fields
- ``claim_trigger``: status-guarded scheduled -> triggered transition

None of them does a plain read-then-write of a whole record.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, literal

import chronicle.config as config
from chronicle.db import session_scope
from chronicle.errors import NotFoundError, PersistenceError, ValidationError
from chronicle.models import Memory, MemoryStatus, TriggerType, UTCDateTime
from chronicle.timeutil import isoformat, utcnow

# Fields an external patch may carry (attribute names)
PATCHABLE_FIELDS = (
    "title",
    "description",
    "type",
    "status",
    "tags",
    "severity",
    "trigger_type",
    "trigger_date",
)
TRIGGER_FIELDS = ("trigger_type", "trigger_date")

LEGAL_TRANSITIONS = {
    MemoryStatus.active.value: {MemoryStatus.scheduled.value, MemoryStatus.archived.value},
    MemoryStatus.scheduled.value: {
        MemoryStatus.triggered.value,
        MemoryStatus.active.value,
        MemoryStatus.archived.value,
    },
    MemoryStatus.triggered.value: {MemoryStatus.archived.value},
    MemoryStatus.archived.value: set(),
}

CAS_MAX_ATTEMPTS = 5


class VersionConflict(Exception):
    """The row changed between read and write; the merge must be retried."""


@dataclass
class MergeResult:
    before: dict
    after: dict
    changed_fields: list[str] = field(default_factory=list)

    @property
    def previous_status(self) -> str:
        return self.before["status"]

    @property
    def status(self) -> str:
        return self.after["status"]

    @property
    def status_changed(self) -> bool:
        return self.before["status"] != self.after["status"]

    @property
    def trigger_changed(self) -> bool:
        return any(name in self.changed_fields for name in TRIGGER_FIELDS)


def new_memory_id(now: Optional[datetime] = None) -> str:
    moment = now or utcnow()
    return f"mem_{int(moment.timestamp() * 1000)}_{uuid.uuid4().hex[:7]}"


def initial_status(trigger_type: str) -> str:
    if trigger_type == TriggerType.date.value:
        return MemoryStatus.scheduled.value
    return MemoryStatus.active.value


def has_date_trigger(trigger_type: str, trigger_date: Optional[datetime]) -> bool:
    return trigger_type == TriggerType.date.value and trigger_date is not None


def resolve_status(
    current_status: str,
    current_trigger_type: str,
    current_trigger_date: Optional[datetime],
    patch: dict,
) -> str:
    """
    Compute the status a patch leads to, or raise ValidationError.

    Archived is terminal: no status change and no trigger change is accepted.
    A triggered memory has fired and keeps its trigger; it may only be archived.
    Trigger edits carry their own status change (re-arm or disarm).
    """
    requested = patch.get("status")
    touches_trigger = any(name in patch for name in TRIGGER_FIELDS)

    if current_status == MemoryStatus.archived.value:
        if requested not in (None, MemoryStatus.archived.value):
            raise ValidationError(
                "archived memories cannot change status",
                field="status",
                error_type="invalid_transition",
            )
        if touches_trigger:
            raise ValidationError(
                "archived memories cannot be rescheduled",
                field="triggerDate",
                error_type="invalid_transition",
            )
        return current_status

    new_trigger_type = patch.get("trigger_type", current_trigger_type)
    new_trigger_date = patch.get("trigger_date", current_trigger_date)
    if new_trigger_type == TriggerType.date.value and new_trigger_date is None:
        raise ValidationError(
            "triggerDate is required when triggerType is 'date'",
            field="triggerDate",
            error_type="required",
        )

    if requested is not None and requested != current_status:
        if requested not in LEGAL_TRANSITIONS[current_status]:
            raise ValidationError(
                f"cannot move memory from {current_status} to {requested}",
                field="status",
                error_type="invalid_transition",
            )
        if requested == MemoryStatus.scheduled.value and not has_date_trigger(new_trigger_type, new_trigger_date):
            raise ValidationError(
                "only memories with a date trigger can be scheduled",
                field="status",
                error_type="invalid_transition",
            )
        return requested

    trigger_changed = (
        new_trigger_type != current_trigger_type or new_trigger_date != current_trigger_date
    )
    if trigger_changed and current_status == MemoryStatus.triggered.value:
        raise ValidationError(
            "triggered memories cannot be rescheduled",
            field="triggerDate",
            error_type="invalid_transition",
        )
    if not trigger_changed:
        return current_status
    if has_date_trigger(new_trigger_type, new_trigger_date):
        return MemoryStatus.scheduled.value
    if current_status == MemoryStatus.scheduled.value:
        return MemoryStatus.active.value
    return current_status


def memory_to_dict(memory: Memory) -> dict:
    return {
        "id": memory.id,
        "title": memory.title,
        "description": memory.description,
        "type": memory.type,
        "status": memory.status,
        "triggerType": memory.trigger_type,
        "triggerDate": isoformat(memory.trigger_date),
        "teamId": memory.team_id,
        "tags": list(memory.tags or []),
        "severity": memory.severity,
        "aiSummary": memory.ai_summary,
        "aiCategory": memory.ai_category,
        "rootCause": memory.root_cause,
        "keyLessons": list(memory.key_lessons) if memory.key_lessons is not None else None,
        "embeddingId": memory.embedding_id,
        "createdAt": isoformat(memory.created_at),
        "updatedAt": isoformat(memory.updated_at),
        "triggeredAt": isoformat(memory.triggered_at),
    }


def load_memory(db, memory_id: str) -> Memory:
    memory = db.query(Memory).filter(Memory.id == memory_id).first()
    if memory is None:
        raise NotFoundError(f"Memory {memory_id} not found", entity_id=memory_id)
    return memory


def _snapshot(memory: Memory) -> dict:
    return {name: getattr(memory, name) for name in PATCHABLE_FIELDS}


def merge_memory(db, memory_id: str, patch: dict, now: Optional[datetime] = None) -> MergeResult:
    """
    Merge ``patch`` into the stored record with a version compare-and-swap.

    Raises NotFoundError when the id is unknown and VersionConflict when a
    concurrent writer got there first.
    """
    unknown = sorted(set(patch) - set(PATCHABLE_FIELDS))
    if unknown:
        raise ValidationError(
            f"unsupported fields: {unknown}",
            field="patch",
            error_type="unknown_field",
            data={"unknown": unknown},
        )
    now = now or utcnow()
    memory = load_memory(db, memory_id)
    before = _snapshot(memory)
    read_version = memory.version

    target_status = resolve_status(memory.status, memory.trigger_type, memory.trigger_date, patch)

    values = {name: value for name, value in patch.items() if name != "status"}
    values["status"] = target_status
    changed = [name for name, value in values.items() if before.get(name) != value]

    values["updated_at"] = now
    values["version"] = Memory.version + 1
    if (
        target_status == MemoryStatus.triggered.value
        and before["status"] != MemoryStatus.triggered.value
        and memory.triggered_at is None
    ):
        values["triggered_at"] = now

    updated = (
        db.query(Memory)
        .filter(Memory.id == memory_id, Memory.version == read_version)
        .update(values, synchronize_session=False)
    )
    if updated == 0:
        raise VersionConflict(memory_id)

    db.expire(memory)
    after_row = load_memory(db, memory_id)
    return MergeResult(before=before, after=memory_to_dict(after_row), changed_fields=changed)


def update_with_retry(
    memory_id: str,
    patch: dict,
    now: Optional[datetime] = None,
    before_commit: Optional[Callable] = None,
    max_attempts: int = CAS_MAX_ATTEMPTS,
) -> MergeResult:
    """Run ``merge_memory`` in its own transaction, retrying version conflicts."""
    for attempt in range(max_attempts):
        try:
            with session_scope() as db:
                result = merge_memory(db, memory_id, patch, now=now)
                if before_commit is not None:
                    before_commit(db, result)
                return result
        except VersionConflict:
            config.logger.info(
                "memory_update_conflict",
                extra={"memory_id": memory_id, "attempt": attempt + 1},
            )
            time.sleep(0.01 * (attempt + 1))
    raise PersistenceError(f"memory {memory_id} kept changing; update abandoned")


def write_owned_fields(db, memory_id: str, values: dict, now: Optional[datetime] = None) -> None:
    """Column-scoped write for fields a pipeline stage owns."""
    now = now or utcnow()
    payload = dict(values)
    payload["updated_at"] = now
    payload["version"] = Memory.version + 1
    updated = (
        db.query(Memory)
        .filter(Memory.id == memory_id)
        .update(payload, synchronize_session=False)
    )
    if updated == 0:
        raise NotFoundError(f"Memory {memory_id} not found", entity_id=memory_id)


def claim_trigger(db, memory_id: str, now: Optional[datetime] = None) -> bool:
    """
    Atomically move scheduled -> triggered. Returns False if the row was not
    scheduled (already fired, cancelled, archived or deleted).
    """
    now = now or utcnow()
    updated = (
        db.query(Memory)
        .filter(Memory.id == memory_id, Memory.status == MemoryStatus.scheduled.value)
        .update(
            {
                "status": MemoryStatus.triggered.value,
                "triggered_at": func.coalesce(Memory.triggered_at, literal(now, UTCDateTime())),
                "updated_at": now,
                "version": Memory.version + 1,
            },
            synchronize_session=False,
        )
    )
    return updated == 1


__all__ = [
    "PATCHABLE_FIELDS",
    "TRIGGER_FIELDS",
    "LEGAL_TRANSITIONS",
    "VersionConflict",
    "MergeResult",
    "new_memory_id",
    "initial_status",
    "has_date_trigger",
    "resolve_status",
    "memory_to_dict",
    "load_memory",
    "merge_memory",
    "update_with_retry",
    "write_owned_fields",
    "claim_trigger",
]
