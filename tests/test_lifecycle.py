from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from chronicle.db import session_scope
from chronicle.errors import NotFoundError, ValidationError
from chronicle.lifecycle import (
    claim_trigger,
    initial_status,
    load_memory,
    new_memory_id,
    resolve_status,
    update_with_retry,
    write_owned_fields,
)
from chronicle.models import Memory


def _insert(clock, memory_id="mem_1", status="active", trigger_type="none", trigger_date=None):
    with session_scope() as db:
        db.add(
            Memory(
                id=memory_id,
                title="Pin the base image",
                description="Unpinned images broke the nightly build",
                type="decision",
                status=status,
                trigger_type=trigger_type,
                trigger_date=trigger_date,
                team_id="default",
                tags=[],
                created_at=clock.now,
                updated_at=clock.now,
                version=1,
            )
        )
    return memory_id


def test_initial_status_follows_trigger_type():
    assert initial_status("date") == "scheduled"
    assert initial_status("none") == "active"
    assert initial_status("event") == "active"


def test_new_memory_id_format(clock):
    memory_id = new_memory_id(clock.now)
    prefix, millis, suffix = memory_id.split("_")
    assert prefix == "mem"
    assert millis == str(int(clock.now.timestamp() * 1000))
    assert len(suffix) == 7


def test_trigger_edits_rearm_and_disarm(clock):
    later = clock.now + timedelta(days=3)
    assert resolve_status("active", "none", None, {"trigger_type": "date", "trigger_date": later}) == "scheduled"
    assert resolve_status("scheduled", "date", later, {"trigger_type": "none"}) == "active"
    assert resolve_status("scheduled", "date", later, {"title": "renamed"}) == "scheduled"


def test_triggered_memory_keeps_its_fired_trigger(clock):
    later = clock.now + timedelta(days=3)
    with pytest.raises(ValidationError):
        resolve_status("triggered", "date", clock.now, {"trigger_date": later})
    with pytest.raises(ValidationError):
        resolve_status("triggered", "date", clock.now, {"trigger_type": "none"})
    with pytest.raises(ValidationError):
        resolve_status("triggered", "date", clock.now, {"status": "scheduled"})
    assert resolve_status("triggered", "date", clock.now, {"trigger_date": clock.now}) == "triggered"
    assert resolve_status("triggered", "date", clock.now, {"severity": "low"}) == "triggered"
    assert resolve_status("triggered", "date", clock.now, {"status": "archived"}) == "archived"


def test_archived_is_terminal(clock):
    with pytest.raises(ValidationError):
        resolve_status("archived", "none", None, {"status": "active"})
    with pytest.raises(ValidationError):
        resolve_status("archived", "none", None, {"trigger_type": "date", "trigger_date": clock.now})
    assert resolve_status("archived", "none", None, {"title": "still editable"}) == "archived"


def test_illegal_transitions_are_rejected(clock):
    with pytest.raises(ValidationError):
        resolve_status("active", "none", None, {"status": "triggered"})
    with pytest.raises(ValidationError):
        resolve_status("active", "none", None, {"status": "scheduled"})
    with pytest.raises(ValidationError):
        resolve_status("active", "none", None, {"trigger_type": "date"})


def test_merge_bumps_version_and_reports_changes(db_engine, clock):
    memory_id = _insert(clock)
    result = update_with_retry(memory_id, {"title": "Pin every base image", "severity": "high"}, now=clock.now)

    assert sorted(result.changed_fields) == ["severity", "title"]
    assert result.previous_status == "active"
    assert not result.status_changed
    with session_scope() as db:
        assert load_memory(db, memory_id).version == 2


def test_concurrent_merges_do_not_lose_writes(db_engine, clock):
    memory_id = _insert(clock)
    tags = [["alpha"], ["beta"], ["gamma"], ["delta"]]

    def patch(tag_list):
        return update_with_retry(memory_id, {"tags": tag_list}, now=clock.now)

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(patch, tags))

    assert len(results) == 4
    with session_scope() as db:
        memory = load_memory(db, memory_id)
        assert memory.version == 5
        assert memory.tags in tags


def test_update_unknown_memory_raises(db_engine, clock):
    with pytest.raises(NotFoundError):
        update_with_retry("mem_missing", {"title": "x"}, now=clock.now)
    with pytest.raises(NotFoundError):
        with session_scope() as db:
            write_owned_fields(db, "mem_missing", {"ai_summary": "x"}, now=clock.now)


def test_triggered_at_is_set_once(db_engine, clock):
    first_fire = clock.now
    memory_id = _insert(clock, status="scheduled", trigger_type="date", trigger_date=first_fire)

    with session_scope() as db:
        assert claim_trigger(db, memory_id, now=first_fire) is True
    with session_scope() as db:
        assert claim_trigger(db, memory_id, now=first_fire) is False

    update_with_retry(memory_id, {"trigger_date": first_fire + timedelta(days=1)}, now=clock.now)
    second_fire = clock.advance(days=1)
    with session_scope() as db:
        assert claim_trigger(db, memory_id, now=second_fire) is True

    with session_scope() as db:
        memory = load_memory(db, memory_id)
        assert memory.status == "triggered"
        assert memory.triggered_at == first_fire
