import asyncio
from datetime import timedelta

import pytest

from chronicle.audit import list_audit_entries
from chronicle.errors import NotFoundError, ValidationError
from chronicle.events import MemoryDeleted, TOPIC_MEMORY_UPDATED
from chronicle.models import AuditEntry, MemoryAnalysis, MemoryEmbedding
from chronicle.services import memory_service
from chronicle.services.counters import (
    DELETION_NAMESPACE,
    UPDATE_NAMESPACE,
    bucket_for,
    get_bucket,
)
from chronicle.services.scheduler import get_record
from chronicle.timeutil import isoformat


def _payload(**overrides):
    payload = {
        "title": "Rotate the signing key yearly",
        "description": "Key expiry caused a full outage in March",
        "type": "context",
        "tags": ["security"],
    }
    payload.update(overrides)
    return payload


def _run(pipeline, coro_factory):
    async def scenario():
        result = await coro_factory()
        await pipeline.bus.drain(timeout=10)
        return result

    return asyncio.run(scenario())


def _create(pipeline, **overrides):
    return _run(pipeline, lambda: memory_service.create_memory(pipeline, _payload(**overrides)))


def _update(pipeline, memory_id, updates):
    return _run(pipeline, lambda: memory_service.update_memory(pipeline, memory_id, updates))


def _delete(pipeline, memory_id):
    return _run(pipeline, lambda: memory_service.delete_memory(pipeline, memory_id))


# -----------------------------------------------------------------------------
# Updates
# -----------------------------------------------------------------------------

def test_update_is_audited_and_counted(pipeline, clock, db_session):
    created = _create(pipeline)
    updated = _update(pipeline, created["id"], {"title": "Rotate signing keys", "severity": "high"})

    assert updated["title"] == "Rotate signing keys"
    assert updated["severity"] == "high"

    event = pipeline.bus.events(TOPIC_MEMORY_UPDATED)[0]
    assert event.updates == {"title": "Rotate signing keys", "severity": "high"}
    assert event.previous_status == "active"

    entries = list_audit_entries(db_session, entity_id=created["id"], action="update")["entries"]
    assert len(entries) == 1
    assert entries[0]["payload"]["changedFields"] == ["severity", "title"]
    assert entries[0]["payload"]["previousStatus"] == "active"

    counts = get_bucket(db_session, UPDATE_NAMESPACE, bucket_for(UPDATE_NAMESPACE, clock.now))
    assert counts == {"severity_updates": 1, "title_updates": 1, "total_updates": 1}


def test_update_audit_omits_memory_content(pipeline, db_session):
    created = _create(pipeline)
    _update(pipeline, created["id"], {"description": "Expiry caused a six hour outage"})

    entry = db_session.query(AuditEntry).filter_by(entity_id=created["id"], action="update").one()
    assert entry.payload["changedFields"] == ["description"]
    assert entry.payload["changes"] == {}


def test_replayed_update_event_is_recorded_once(pipeline, clock, db_session):
    created = _create(pipeline)
    _update(pipeline, created["id"], {"tags": ["security", "ops"]})
    event = pipeline.bus.events(TOPIC_MEMORY_UPDATED)[0]

    async def replay():
        await pipeline.stages.on_updated(event)

    asyncio.run(replay())

    assert db_session.query(AuditEntry).filter_by(entity_id=created["id"], action="update").count() == 1
    counts = get_bucket(db_session, UPDATE_NAMESPACE, bucket_for(UPDATE_NAMESPACE, clock.now))
    assert counts["total_updates"] == 1


def test_archived_memory_rejects_status_changes(pipeline, db_session):
    created = _create(pipeline)
    archived = _update(pipeline, created["id"], {"status": "archived"})
    assert archived["status"] == "archived"

    with pytest.raises(ValidationError):
        _update(pipeline, created["id"], {"status": "active"})

    renamed = _update(pipeline, created["id"], {"title": "Rotate keys (historical)"})
    assert renamed["status"] == "archived"


def test_external_callers_cannot_trigger(pipeline, clock, db_session):
    trigger = clock.now + timedelta(days=1)
    created = _create(pipeline, triggerType="date", triggerDate=isoformat(trigger))

    with pytest.raises(ValidationError):
        _update(pipeline, created["id"], {"status": "triggered"})

    assert memory_service.get_memory(db_session, created["id"])["status"] == "scheduled"
    assert get_record(db_session, created["id"]) is not None


def test_trigger_edits_rearm_and_disarm(pipeline, clock, db_session):
    created = _create(pipeline)
    later = clock.now + timedelta(days=7)

    armed = _update(pipeline, created["id"], {"triggerType": "date", "triggerDate": isoformat(later)})
    assert armed["status"] == "scheduled"
    assert get_record(db_session, created["id"])["scheduledFor"] == isoformat(later)

    disarmed = _update(pipeline, created["id"], {"triggerType": "none"})
    assert disarmed["status"] == "active"
    assert get_record(db_session, created["id"]) is None


def test_fired_memory_cannot_be_rescheduled(pipeline, clock, notifier, db_session):
    fired_at = clock.now - timedelta(minutes=1)
    created = _create(pipeline, triggerType="date", triggerDate=isoformat(fired_at))
    assert memory_service.get_memory(db_session, created["id"])["status"] == "triggered"

    with pytest.raises(ValidationError):
        _update(pipeline, created["id"], {"triggerDate": isoformat(clock.now + timedelta(days=3))})

    db_session.expire_all()
    memory = memory_service.get_memory(db_session, created["id"])
    assert memory["status"] == "triggered"
    assert memory["triggerDate"] == isoformat(fired_at)
    assert get_record(db_session, created["id"]) is None
    assert len(notifier.sent) == 1


def test_archiving_a_scheduled_memory_cancels_it(pipeline, clock, db_session):
    trigger = clock.now + timedelta(hours=4)
    created = _create(pipeline, triggerType="date", triggerDate=isoformat(trigger))
    assert get_record(db_session, created["id"]) is not None

    _update(pipeline, created["id"], {"status": "archived"})
    assert get_record(db_session, created["id"]) is None


def test_invalid_updates_are_rejected(pipeline):
    created = _create(pipeline)
    with pytest.raises(ValidationError):
        _update(pipeline, created["id"], {})
    with pytest.raises(ValidationError):
        _update(pipeline, created["id"], {"teamId": "other"})
    with pytest.raises(ValidationError):
        _update(pipeline, created["id"], {"severity": "apocalyptic"})
    with pytest.raises(NotFoundError):
        _update(pipeline, "mem_missing", {"title": "x"})


def test_create_validation(pipeline):
    with pytest.raises(ValidationError):
        _create(pipeline, title="  ")
    with pytest.raises(ValidationError):
        _create(pipeline, type="rumor")
    with pytest.raises(ValidationError):
        _create(pipeline, triggerType="date")
    with pytest.raises(ValidationError):
        _create(pipeline, triggerType="date", triggerDate="next tuesday")


# -----------------------------------------------------------------------------
# Deletion
# -----------------------------------------------------------------------------

def test_delete_unknown_memory_has_no_side_effects(pipeline, clock, db_session):
    with pytest.raises(NotFoundError):
        _delete(pipeline, "mem_missing")

    assert db_session.query(AuditEntry).filter_by(entity_id="mem_missing").count() == 0
    assert get_bucket(db_session, DELETION_NAMESPACE, bucket_for(DELETION_NAMESPACE, clock.now)) == {}


def test_delete_audits_counts_and_cleans_up(pipeline, clock, db_session):
    created = _create(pipeline)
    result = _delete(pipeline, created["id"])

    assert result == {
        "success": True,
        "message": 'Memory "Rotate the signing key yearly" deleted successfully',
        "memoryId": created["id"],
    }
    with pytest.raises(NotFoundError):
        memory_service.get_memory(db_session, created["id"])

    entry = db_session.query(AuditEntry).filter_by(entity_id=created["id"], action="delete").one()
    assert entry.payload == {"title": "Rotate the signing key yearly", "status": "active"}

    counts = get_bucket(db_session, DELETION_NAMESPACE, bucket_for(DELETION_NAMESPACE, clock.now))
    assert counts == {"by_status.active": 1, "total_deletions": 1}
    assert db_session.query(MemoryAnalysis).filter_by(memory_id=created["id"]).count() == 0
    assert db_session.query(MemoryEmbedding).filter_by(memory_id=created["id"]).count() == 0


def test_failed_cleanup_does_not_block_the_others(pipeline, clock, db_session):
    created = _create(pipeline)

    def broken_cleanup(db, memory_id):
        raise RuntimeError("notification store offline")

    pipeline.stages.cleanups = [("notification_history", broken_cleanup)] + [
        item for item in pipeline.stages.cleanups if item[0] != "notification_history"
    ]
    _delete(pipeline, created["id"])

    assert db_session.query(AuditEntry).filter_by(entity_id=created["id"], action="delete").count() == 1
    assert db_session.query(MemoryAnalysis).filter_by(memory_id=created["id"]).count() == 0
    assert db_session.query(MemoryEmbedding).filter_by(memory_id=created["id"]).count() == 0
    assert list(pipeline.bus.dead_letters) == []

    event = MemoryDeleted(
        memory_id=created["id"],
        title=created["title"],
        timestamp=isoformat(clock.now),
        status="active",
    )
    replayed = asyncio.run(pipeline.stages.on_deleted(event))
    assert replayed["audited"] is False
    assert replayed["cleanups"]["notification_history"]["status"] == "error"
    assert replayed["cleanups"]["analysis_history"] == {"status": "ok", "removed": 0}

    counts = get_bucket(db_session, DELETION_NAMESPACE, bucket_for(DELETION_NAMESPACE, clock.now))
    assert counts["total_deletions"] == 1
