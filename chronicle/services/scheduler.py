"""
Durable reactivation scheduler.

Pending fires live in ``memory_schedules`` (indexed by ``scheduled_for``),
so nothing is lost when the process restarts. A single dispatch loop sleeps
until the earliest deadline (capped by the poll interval), claims due rows
with a lease and emits ``memory-reactivation-scheduled``. The reactivate
stage deletes the row once the fire completes; a row whose lease expires
before that is dispatched again. Each tick also reschedules scheduled
memories that lost their record, such as a create whose stages were
dead-lettered.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, or_, select

import chronicle.config as config
from chronicle.db import dialect_insert, session_scope
from chronicle.events import TOPIC_REACTIVATION_SCHEDULED, ReactivationScheduled
from chronicle.models import Memory, MemorySchedule, MemoryStatus, TriggerType
from chronicle.timeutil import ensure_utc, isoformat, milliseconds_between, utcnow

MIN_SLEEP_SECONDS = 0.05


def persist_record(db, memory_id: str, scheduled_for: datetime, now: datetime, delay_ms: int) -> None:
    """Upsert the single pending record for a memory and reset its lease."""
    values = {
        "memory_id": memory_id,
        "scheduled_for": scheduled_for,
        "scheduled_at": now,
        "delay_ms": delay_ms,
        "dispatched_at": None,
        "dispatch_count": 0,
    }
    stmt = dialect_insert(db, MemorySchedule).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["memory_id"],
        set_={
            "scheduled_for": stmt.excluded.scheduled_for,
            "scheduled_at": stmt.excluded.scheduled_at,
            "delay_ms": stmt.excluded.delay_ms,
            "dispatched_at": None,
            "dispatch_count": 0,
        },
    )
    db.execute(stmt)


def delete_record(db, memory_id: str) -> bool:
    deleted = (
        db.query(MemorySchedule)
        .filter(MemorySchedule.memory_id == memory_id)
        .delete(synchronize_session=False)
    )
    return deleted > 0


def get_record(db, memory_id: str) -> Optional[dict]:
    row = db.query(MemorySchedule).filter(MemorySchedule.memory_id == memory_id).first()
    if row is None:
        return None
    return {
        "memoryId": row.memory_id,
        "scheduledFor": isoformat(row.scheduled_for),
        "scheduledAt": isoformat(row.scheduled_at),
        "delayMs": int(row.delay_ms),
        "dispatchedAt": isoformat(row.dispatched_at),
        "dispatchCount": int(row.dispatch_count or 0),
    }


def _orphan_query(db):
    """Scheduled memories with a date trigger but no pending record."""
    return db.query(Memory.id, Memory.trigger_date).filter(
        Memory.status == MemoryStatus.scheduled.value,
        Memory.trigger_type == TriggerType.date.value,
        Memory.trigger_date.isnot(None),
        ~Memory.id.in_(select(MemorySchedule.memory_id)),
    )


class ReactivationScheduler:
    def __init__(
        self,
        bus,
        clock: Callable[[], datetime] = utcnow,
        poll_seconds: Optional[float] = None,
        lease_seconds: Optional[int] = None,
        batch_limit: Optional[int] = None,
    ):
        self.bus = bus
        self.clock = clock
        self.poll_seconds = poll_seconds or config.SCHEDULER_POLL_SECONDS
        self.lease_seconds = lease_seconds or config.SCHEDULER_DISPATCH_LEASE_SECONDS
        self.batch_limit = batch_limit or config.SCHEDULER_BATCH_LIMIT
        self._wake_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.dispatched_total = 0
        self.last_tick_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule(self, memory_id: str, trigger_date: datetime) -> dict:
        """
        Fire now if the trigger date has passed, otherwise persist a record.
        """
        now = self.clock()
        trigger_date = ensure_utc(trigger_date)
        delay_ms = milliseconds_between(now, trigger_date)

        if delay_ms <= 0:
            await asyncio.to_thread(self._delete, memory_id)
            await self.bus.emit(
                TOPIC_REACTIVATION_SCHEDULED,
                ReactivationScheduled(
                    memory_id=memory_id,
                    scheduled_for=isoformat(trigger_date),
                    immediate=True,
                ),
            )
            config.logger.info(
                "reactivation_immediate",
                extra={"memory_id": memory_id, "scheduled_for": isoformat(trigger_date)},
            )
            return {"status": "fired", "memoryId": memory_id, "immediate": True}

        await asyncio.to_thread(self._persist, memory_id, trigger_date, now, delay_ms)
        self.wake()
        config.logger.info(
            "reactivation_scheduled",
            extra={
                "memory_id": memory_id,
                "scheduled_for": isoformat(trigger_date),
                "delay_ms": delay_ms,
            },
        )
        return {
            "status": "scheduled",
            "memoryId": memory_id,
            "scheduledFor": isoformat(trigger_date),
            "delayMs": delay_ms,
        }

    async def cancel(self, memory_id: str) -> bool:
        removed = await asyncio.to_thread(self._delete, memory_id)
        if removed:
            config.logger.info("reactivation_cancelled", extra={"memory_id": memory_id})
            self.wake()
        return removed

    def _persist(self, memory_id: str, scheduled_for: datetime, now: datetime, delay_ms: int) -> None:
        with session_scope() as db:
            persist_record(db, memory_id, scheduled_for, now, delay_ms)

    def _delete(self, memory_id: str) -> bool:
        with session_scope() as db:
            return delete_record(db, memory_id)

    # ------------------------------------------------------------------
    # Restart recovery
    # ------------------------------------------------------------------

    def _rearm_sync(self) -> tuple[int, list[tuple[str, datetime]]]:
        with session_scope() as db:
            # Leases held by a previous process will never complete.
            released = (
                db.query(MemorySchedule)
                .filter(MemorySchedule.dispatched_at.isnot(None))
                .update({"dispatched_at": None}, synchronize_session=False)
            )
            pending = db.query(func.count(MemorySchedule.memory_id)).scalar() or 0
            orphans = _orphan_query(db).all()
        if released:
            config.logger.info("schedule_leases_released", extra={"count": released})
        return int(pending), [(row.id, row.trigger_date) for row in orphans]

    async def rearm(self) -> dict:
        """
        Re-derive pending fires from storage after a restart.

        Scheduled memories without a record (their in-flight events died with
        the previous process) are scheduled again.
        """
        pending, orphans = await asyncio.to_thread(self._rearm_sync)
        for memory_id, trigger_date in orphans:
            await self.schedule(memory_id, trigger_date)
        self.wake()
        config.logger.info(
            "scheduler_rearmed",
            extra={"pending": pending, "orphans": len(orphans)},
        )
        return {"status": "ok", "pending": pending, "rescheduled": len(orphans)}

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _stranded_sync(self, now: datetime) -> list[tuple[str, datetime]]:
        # Memories still inside the grace window may be mid-pipeline.
        settled_before = now - timedelta(seconds=self.lease_seconds)
        with session_scope() as db:
            rows = (
                _orphan_query(db)
                .filter(Memory.updated_at <= settled_before)
                .limit(self.batch_limit)
                .all()
            )
        return [(row.id, row.trigger_date) for row in rows]

    async def recover_stranded(self, now: Optional[datetime] = None) -> int:
        """
        Schedule memories whose pipeline never reached the schedule stage.

        A create whose analyze, embed or schedule stage was dead-lettered, or
        an immediate fire that exhausted its retries, leaves a scheduled
        memory with no record. Returns how many of them fired immediately.
        """
        now = now or self.clock()
        stranded = await asyncio.to_thread(self._stranded_sync, now)
        fired = 0
        for memory_id, trigger_date in stranded:
            config.logger.warning(
                "schedule_record_recovered",
                extra={"memory_id": memory_id, "scheduled_for": isoformat(trigger_date)},
            )
            result = await self.schedule(memory_id, trigger_date)
            if result["status"] == "fired":
                fired += 1
        return fired

    def _claim_due(self, now: datetime) -> list[tuple[str, datetime, int]]:
        cutoff = now - timedelta(seconds=self.lease_seconds)
        lease_free = or_(
            MemorySchedule.dispatched_at.is_(None),
            MemorySchedule.dispatched_at < cutoff,
        )
        claimed = []
        with session_scope() as db:
            rows = (
                db.query(MemorySchedule)
                .filter(MemorySchedule.scheduled_for <= now, lease_free)
                .order_by(MemorySchedule.scheduled_for.asc())
                .limit(self.batch_limit)
                .all()
            )
            for row in rows:
                won = (
                    db.query(MemorySchedule)
                    .filter(MemorySchedule.memory_id == row.memory_id, lease_free)
                    .update(
                        {
                            "dispatched_at": now,
                            "dispatch_count": MemorySchedule.dispatch_count + 1,
                        },
                        synchronize_session=False,
                    )
                )
                if won:
                    claimed.append((row.memory_id, row.scheduled_for, int(row.delay_ms)))
        return claimed

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Dispatch every record whose deadline has passed. Returns the count."""
        now = now or self.clock()
        recovered = await self.recover_stranded(now)
        claimed = await asyncio.to_thread(self._claim_due, now)
        for memory_id, scheduled_for, delay_ms in claimed:
            await self.bus.emit(
                TOPIC_REACTIVATION_SCHEDULED,
                ReactivationScheduled(
                    memory_id=memory_id,
                    scheduled_for=isoformat(scheduled_for),
                    delay_ms=delay_ms,
                ),
            )
        dispatched = recovered + len(claimed)
        self.dispatched_total += dispatched
        self.last_tick_at = now
        if dispatched:
            config.logger.info("reactivations_dispatched", extra={"count": dispatched})
        return dispatched

    def _next_deadline_sync(self) -> Optional[datetime]:
        with session_scope() as db:
            next_due = (
                db.query(func.min(MemorySchedule.scheduled_for))
                .filter(MemorySchedule.dispatched_at.is_(None))
                .scalar()
            )
            oldest_lease = (
                db.query(func.min(MemorySchedule.dispatched_at))
                .filter(MemorySchedule.dispatched_at.isnot(None))
                .scalar()
            )
        candidates = []
        if next_due is not None:
            candidates.append(ensure_utc(next_due))
        if oldest_lease is not None:
            candidates.append(ensure_utc(oldest_lease) + timedelta(seconds=self.lease_seconds))
        return min(candidates) if candidates else None

    async def next_deadline(self) -> Optional[datetime]:
        return await asyncio.to_thread(self._next_deadline_sync)

    async def _sleep_interval(self) -> float:
        deadline = await self.next_deadline()
        if deadline is None:
            return self.poll_seconds
        seconds = (deadline - self.clock()).total_seconds()
        return max(MIN_SLEEP_SECONDS, min(self.poll_seconds, seconds))

    def wake(self) -> None:
        if self._wake_event is not None:
            self._wake_event.set()

    async def run_forever(self) -> None:
        self._wake_event = asyncio.Event()
        while True:
            self._wake_event.clear()
            try:
                await self.run_due()
                timeout = await self._sleep_interval()
                self.last_error = None
            except Exception as exc:
                self.last_error = str(exc)
                config.logger.warning("scheduler_tick_failed", extra={"error": str(exc)})
                timeout = self.poll_seconds
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
            config.logger.info("scheduler_started", extra={"poll_seconds": self.poll_seconds})
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._wake_event = None
        config.logger.info("scheduler_stopped")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _backlog_sync(self, now: datetime) -> dict:
        with session_scope() as db:
            pending = db.query(func.count(MemorySchedule.memory_id)).scalar() or 0
            overdue = (
                db.query(func.count(MemorySchedule.memory_id))
                .filter(MemorySchedule.scheduled_for <= now)
                .scalar()
                or 0
            )
            in_flight = (
                db.query(func.count(MemorySchedule.memory_id))
                .filter(MemorySchedule.dispatched_at.isnot(None))
                .scalar()
                or 0
            )
        return {"pending": int(pending), "overdue": int(overdue), "in_flight": int(in_flight)}

    def status(self) -> dict:
        payload = self._backlog_sync(self.clock())
        payload.update({
            "running": self._task is not None and not self._task.done(),
            "dispatched_total": self.dispatched_total,
            "last_tick_at": isoformat(self.last_tick_at),
            "last_error": self.last_error,
        })
        return payload


__all__ = [
    "ReactivationScheduler",
    "persist_record",
    "delete_record",
    "get_record",
]
