"""
Pipeline stages: created -> analyzed -> embedded -> (scheduled) ->
reactivated -> notified, plus the update and delete side handlers.

Every stage loads the memory (NotFoundError if absent), calls one
capability, writes only the fields it owns and then emits its completion
event. Delivery is at-least-once, so each stage is safe to re-run:

- analyze/embed overwrite their fields with recomputed values
- reactivate claims scheduled -> triggered with a guarded UPDATE
- notify claims (memoryId, reactivatedAt) in notification_history and never
  resends once the transport call succeeded in this process
- update/delete handlers claim their audit entry by dedupe key
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from sqlalchemy import or_

import chronicle.config as config
from chronicle import audit
from chronicle.audit_constants import (
    ACTION_MEMORY_DELETED,
    ACTION_MEMORY_TRIGGERED,
    ACTION_MEMORY_UPDATED,
)
from chronicle.db import dialect_insert, session_scope
from chronicle.events import (
    TOPIC_MEMORY_ANALYZED,
    TOPIC_MEMORY_EMBEDDED,
    TOPIC_MEMORY_REACTIVATED,
    TOPIC_NOTIFICATION_SENT,
    TOPIC_TRACK_ANALYTICS,
    MemoryAnalyzed,
    MemoryCreated,
    MemoryDeleted,
    MemoryEmbedded,
    MemoryReactivated,
    MemoryUpdated,
    NotificationSent,
    ReactivationScheduled,
    TrackAnalytics,
)
from chronicle.lifecycle import (
    claim_trigger,
    has_date_trigger,
    load_memory,
    memory_to_dict,
    write_owned_fields,
)
from chronicle.models import (
    MemoryAnalysis,
    MemoryReanalysis,
    MemoryStatus,
    NotificationRecord,
    NotificationStatus,
)
from chronicle.services.counters import (
    DELETION_NAMESPACE,
    NOTIFICATION_NAMESPACE,
    UPDATE_NAMESPACE,
    bucket_for,
    increment_counters,
)
from chronicle.services.scheduler import delete_record
from chronicle.timeutil import isoformat, parse_timestamp, utcnow

logger = config.logger

# Update payload keys whose values are memory content and stay out of the audit log
CONTENT_FIELDS = {"description"}


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def embedding_text(memory: dict) -> str:
    parts = [
        memory.get("title") or "",
        memory.get("description") or "",
        memory.get("aiSummary") or "",
        *(memory.get("keyLessons") or []),
    ]
    return " ".join(part for part in parts if part)[: config.MAX_EMBEDDING_TEXT_LENGTH]


def notification_message(title: str, reanalysis: str) -> str:
    return f'Memory "{title}" has been reactivated. {reanalysis}'


# -----------------------------------------------------------------------------
# Deletion cleanups (each runs in its own transaction; missing rows are fine)
# -----------------------------------------------------------------------------

def _cleanup_notifications(db, memory_id: str) -> int:
    return (
        db.query(NotificationRecord)
        .filter(NotificationRecord.memory_id == memory_id)
        .delete(synchronize_session=False)
    )


def _cleanup_analysis(db, memory_id: str) -> int:
    return (
        db.query(MemoryAnalysis)
        .filter(MemoryAnalysis.memory_id == memory_id)
        .delete(synchronize_session=False)
    )


def _cleanup_reanalysis(db, memory_id: str) -> int:
    return (
        db.query(MemoryReanalysis)
        .filter(MemoryReanalysis.memory_id == memory_id)
        .delete(synchronize_session=False)
    )


def _cleanup_schedule(db, memory_id: str) -> int:
    return int(delete_record(db, memory_id))


class PipelineStages:
    def __init__(
        self,
        bus,
        scheduler,
        provider,
        vector_store,
        notifier,
        clock: Callable[[], datetime] = utcnow,
        channels: Optional[Sequence[str]] = None,
        notification_lease_seconds: Optional[int] = None,
    ):
        self.bus = bus
        self.scheduler = scheduler
        self.provider = provider
        self.vector_store = vector_store
        self.notifier = notifier
        self.clock = clock
        self.channels = tuple(channels or config.NOTIFICATION_CHANNELS)
        self.notification_lease_seconds = (
            notification_lease_seconds or config.NOTIFICATION_LEASE_SECONDS
        )
        # (memoryId, occurrence) pairs whose transport call succeeded but whose
        # row is not yet marked sent.
        self._delivered: set[tuple[str, str]] = set()
        self.cleanups: list[tuple[str, Callable]] = [
            ("notification_history", _cleanup_notifications),
            ("analysis_history", _cleanup_analysis),
            ("reanalysis", _cleanup_reanalysis),
            ("schedule", _cleanup_schedule),
            ("embedding", self._cleanup_embedding),
        ]

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _load(self, memory_id: str) -> dict:
        with session_scope() as db:
            return memory_to_dict(load_memory(db, memory_id))

    async def load(self, memory_id: str) -> dict:
        return await asyncio.to_thread(self._load, memory_id)

    async def track(self, event_name: str, memory_id: Optional[str] = None, **metadata) -> None:
        await self.bus.emit(
            TOPIC_TRACK_ANALYTICS,
            TrackAnalytics(
                event=event_name,
                memory_id=memory_id,
                timestamp=isoformat(self.clock()),
                metadata=metadata,
            ),
        )

    # ------------------------------------------------------------------
    # Analyze
    # ------------------------------------------------------------------

    def _store_analysis(self, memory_id: str, analysis, now: datetime) -> None:
        with session_scope() as db:
            write_owned_fields(
                db,
                memory_id,
                {
                    "ai_summary": analysis.summary,
                    "ai_category": analysis.category,
                    "root_cause": analysis.root_cause,
                    "key_lessons": list(analysis.lessons),
                    "analyzed_at": now,
                },
                now=now,
            )
            db.add(MemoryAnalysis(memory_id=memory_id, analysis=analysis.to_dict(), analyzed_at=now))

    async def analyze(self, event: MemoryCreated) -> None:
        memory = await self.load(event.memory_id)
        logger.info("memory_analysis_started", extra={"memory_id": event.memory_id})
        analysis = await self.provider.classify(memory["title"], memory["description"], memory["type"])
        now = self.clock()
        await asyncio.to_thread(self._store_analysis, event.memory_id, analysis, now)
        await self.bus.emit(
            TOPIC_MEMORY_ANALYZED,
            MemoryAnalyzed(memory_id=event.memory_id, analysis=analysis, timestamp=isoformat(now)),
        )
        logger.info(
            "memory_analyzed",
            extra={
                "memory_id": event.memory_id,
                "category": analysis.category,
                "lessons_count": len(analysis.lessons),
            },
        )

    # ------------------------------------------------------------------
    # Embed
    # ------------------------------------------------------------------

    def _store_embedding(self, memory: dict, vector, now: datetime) -> str:
        with session_scope() as db:
            handle = self.vector_store.upsert(
                db,
                memory["id"],
                vector,
                metadata={
                    "title": memory["title"],
                    "type": memory["type"],
                    "category": memory.get("aiCategory"),
                    "tags": memory.get("tags") or [],
                },
                team_id=memory["teamId"],
                model_version=getattr(self.provider, "model_version", config.EMBEDDING_MODEL),
            )
            write_owned_fields(db, memory["id"], {"embedding_id": handle}, now=now)
        return handle

    async def embed(self, event: MemoryAnalyzed) -> None:
        memory = await self.load(event.memory_id)
        vector = await self.provider.embed(embedding_text(memory))
        now = self.clock()
        handle = await asyncio.to_thread(self._store_embedding, memory, vector, now)
        await self.bus.emit(
            TOPIC_MEMORY_EMBEDDED,
            MemoryEmbedded(memory_id=event.memory_id, embedding_id=handle, timestamp=isoformat(now)),
        )
        logger.info("memory_embedded", extra={"memory_id": event.memory_id, "embedding_id": handle})

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    async def schedule(self, event: MemoryEmbedded) -> None:
        memory = await self.load(event.memory_id)
        trigger_date = (
            parse_timestamp(memory["triggerDate"], "triggerDate") if memory["triggerDate"] else None
        )
        if memory["status"] != MemoryStatus.scheduled.value or not has_date_trigger(
            memory["triggerType"], trigger_date
        ):
            logger.info(
                "reactivation_not_required",
                extra={"memory_id": event.memory_id, "status": memory["status"]},
            )
            return
        await self.scheduler.schedule(event.memory_id, trigger_date)

    # ------------------------------------------------------------------
    # Reactivate
    # ------------------------------------------------------------------

    def _commit_reactivation(self, memory_id: str, reanalysis: str, event, now: datetime) -> bool:
        with session_scope() as db:
            if not claim_trigger(db, memory_id, now=now):
                return False
            db.add(MemoryReanalysis(memory_id=memory_id, reanalysis=reanalysis, reactivated_at=now))
            delete_record(db, memory_id)
            audit.log_event(
                db,
                entity_id=memory_id,
                action=ACTION_MEMORY_TRIGGERED,
                timestamp=now,
                payload={
                    "scheduledFor": event.scheduled_for,
                    "immediate": bool(event.immediate),
                    "delayMs": event.delay_ms,
                },
                actor_type="scheduler",
            )
        return True

    def _discard_stale_record(self, memory_id: str) -> bool:
        with session_scope() as db:
            return delete_record(db, memory_id)

    async def reactivate(self, event: ReactivationScheduled) -> None:
        now = self.clock()
        scheduled_for = parse_timestamp(event.scheduled_for, "scheduledFor")
        memory = await self.load(event.memory_id)

        if memory["status"] != MemoryStatus.scheduled.value:
            # Already fired, disarmed or archived; a leftover record is stale.
            await asyncio.to_thread(self._discard_stale_record, event.memory_id)
            logger.info(
                "reactivation_skipped",
                extra={"memory_id": event.memory_id, "status": memory["status"]},
            )
            return

        trigger_date = parse_timestamp(memory["triggerDate"], "triggerDate") if memory["triggerDate"] else None
        due = trigger_date
        if not event.immediate and (due is None or scheduled_for > due):
            due = scheduled_for
        if due is not None and now < due:
            logger.info(
                "reactivation_not_due",
                extra={"memory_id": event.memory_id, "due": isoformat(due)},
            )
            return

        context = f"Memory is being reactivated on {isoformat(now)}"
        reanalysis = await self.provider.reanalyze(memory, context)
        claimed = await asyncio.to_thread(self._commit_reactivation, event.memory_id, reanalysis, event, now)
        if not claimed:
            logger.info("reactivation_duplicate", extra={"memory_id": event.memory_id})
            return

        await self.bus.emit(
            TOPIC_MEMORY_REACTIVATED,
            MemoryReactivated(
                memory_id=event.memory_id,
                title=memory["title"],
                reanalysis=reanalysis,
                reactivated_at=isoformat(now),
            ),
        )
        logger.info("memory_reactivated", extra={"memory_id": event.memory_id})

    # ------------------------------------------------------------------
    # Notify
    # ------------------------------------------------------------------

    def _claim_notification(self, event: MemoryReactivated, message: str, now: datetime) -> bool:
        cutoff = now - timedelta(seconds=self.notification_lease_seconds)
        with session_scope() as db:
            stmt = dialect_insert(db, NotificationRecord).values(
                memory_id=event.memory_id,
                occurrence=event.reactivated_at,
                notification_type="memory_reactivated",
                title=event.title,
                channels=list(self.channels),
                message=message,
                status=NotificationStatus.pending.value,
                created_at=now,
            )
            db.execute(stmt.on_conflict_do_nothing(index_elements=["memory_id", "occurrence"]))
            claimed = (
                db.query(NotificationRecord)
                .filter(
                    NotificationRecord.memory_id == event.memory_id,
                    NotificationRecord.occurrence == event.reactivated_at,
                    NotificationRecord.status == NotificationStatus.pending.value,
                    or_(NotificationRecord.claimed_at.is_(None), NotificationRecord.claimed_at < cutoff),
                )
                .update({"claimed_at": now}, synchronize_session=False)
            )
        return claimed == 1

    def _release_notification(self, event: MemoryReactivated) -> None:
        with session_scope() as db:
            db.query(NotificationRecord).filter(
                NotificationRecord.memory_id == event.memory_id,
                NotificationRecord.occurrence == event.reactivated_at,
                NotificationRecord.status == NotificationStatus.pending.value,
            ).update({"claimed_at": None}, synchronize_session=False)

    def _mark_sent(self, event: MemoryReactivated, sent_at: datetime) -> bool:
        with session_scope() as db:
            marked = (
                db.query(NotificationRecord)
                .filter(
                    NotificationRecord.memory_id == event.memory_id,
                    NotificationRecord.occurrence == event.reactivated_at,
                    NotificationRecord.status == NotificationStatus.pending.value,
                )
                .update(
                    {"status": NotificationStatus.sent.value, "sent_at": sent_at},
                    synchronize_session=False,
                )
            )
            if marked:
                increments = {"total": 1}
                for channel in self.channels:
                    increments[channel] = increments.get(channel, 0) + 1
                increment_counters(
                    db,
                    NOTIFICATION_NAMESPACE,
                    bucket_for(NOTIFICATION_NAMESPACE, sent_at),
                    increments,
                    now=sent_at,
                )
        return marked == 1

    async def _deliver(self, event: MemoryReactivated) -> bool:
        now = self.clock()
        message = notification_message(event.title, event.reanalysis)
        claimed = await asyncio.to_thread(self._claim_notification, event, message, now)
        if not claimed:
            return False

        notification = {
            "type": "memory_reactivated",
            "memoryId": event.memory_id,
            "title": event.title,
            "reanalysis": event.reanalysis,
            "reactivatedAt": event.reactivated_at,
            "channels": list(self.channels),
            "message": message,
        }
        try:
            await self.notifier.send(notification)
        except Exception:
            await asyncio.to_thread(self._release_notification, event)
            raise
        return True

    async def notify(self, event: MemoryReactivated) -> None:
        key = (event.memory_id, event.reactivated_at)
        if key not in self._delivered:
            if not await self._deliver(event):
                logger.info(
                    "notification_duplicate",
                    extra={"memory_id": event.memory_id, "occurrence": event.reactivated_at},
                )
                return
            self._delivered.add(key)
        else:
            logger.info(
                "notification_mark_retry",
                extra={"memory_id": event.memory_id, "occurrence": event.reactivated_at},
            )

        # A retry from here on must not send again.
        sent_at = self.clock()
        marked = await asyncio.to_thread(self._mark_sent, event, sent_at)
        self._delivered.discard(key)
        if not marked:
            logger.info(
                "notification_already_marked",
                extra={"memory_id": event.memory_id, "occurrence": event.reactivated_at},
            )
            return

        await self.bus.emit(
            TOPIC_NOTIFICATION_SENT,
            NotificationSent(memory_id=event.memory_id, channels=self.channels, sent_at=isoformat(sent_at)),
        )
        await self.track("notification_sent", event.memory_id, channels=list(self.channels))
        logger.info(
            "notification_sent",
            extra={"memory_id": event.memory_id, "channels": list(self.channels)},
        )

    # ------------------------------------------------------------------
    # Update side handler
    # ------------------------------------------------------------------

    def _record_update(self, event: MemoryUpdated, now: datetime) -> bool:
        changed = sorted(event.updates)
        with session_scope() as db:
            claimed = audit.log_event(
                db,
                entity_id=event.memory_id,
                action=ACTION_MEMORY_UPDATED,
                timestamp=parse_timestamp(event.timestamp),
                payload={
                    "changedFields": changed,
                    "changes": {
                        key: value for key, value in event.updates.items() if key not in CONTENT_FIELDS
                    },
                    "previousStatus": event.previous_status,
                },
                actor_type="user",
                dedupe_key=f"update:{event.memory_id}:{event.timestamp}",
            )
            if claimed:
                increments = {"total_updates": 1}
                for key in changed:
                    increments[f"{_snake(key)}_updates"] = 1
                increment_counters(
                    db,
                    UPDATE_NAMESPACE,
                    bucket_for(UPDATE_NAMESPACE, now),
                    increments,
                    now=now,
                )
        return claimed

    async def on_updated(self, event: MemoryUpdated) -> None:
        claimed = await asyncio.to_thread(self._record_update, event, self.clock())
        logger.info(
            "memory_update_recorded" if claimed else "memory_update_duplicate",
            extra={"memory_id": event.memory_id, "fields": sorted(event.updates)},
        )

    # ------------------------------------------------------------------
    # Delete side handler
    # ------------------------------------------------------------------

    def _cleanup_embedding(self, db, memory_id: str) -> int:
        return int(self.vector_store.delete(db, memory_id))

    def _record_deletion(self, event: MemoryDeleted, now: datetime) -> bool:
        with session_scope() as db:
            claimed = audit.log_event(
                db,
                entity_id=event.memory_id,
                action=ACTION_MEMORY_DELETED,
                timestamp=parse_timestamp(event.timestamp),
                payload={"title": event.title, "status": event.status},
                actor_type="user",
                dedupe_key=f"delete:{event.memory_id}:{event.timestamp}",
            )
            if claimed:
                increment_counters(
                    db,
                    DELETION_NAMESPACE,
                    bucket_for(DELETION_NAMESPACE, now),
                    {"total_deletions": 1, f"by_status.{event.status or 'unknown'}": 1},
                    now=now,
                )
        return claimed

    def _run_cleanups(self, memory_id: str) -> dict:
        results = {}
        for name, cleanup in self.cleanups:
            try:
                with session_scope() as db:
                    removed = cleanup(db, memory_id)
                results[name] = {"status": "ok", "removed": int(removed or 0)}
            except Exception as exc:
                logger.warning(
                    "deletion_cleanup_failed",
                    extra={"memory_id": memory_id, "cleanup": name, "error": str(exc)},
                )
                results[name] = {"status": "error", "error": str(exc)}
        return results

    async def on_deleted(self, event: MemoryDeleted) -> dict:
        claimed = await asyncio.to_thread(self._record_deletion, event, self.clock())
        cleanups = await asyncio.to_thread(self._run_cleanups, event.memory_id)
        failed = [name for name, result in cleanups.items() if result["status"] != "ok"]
        logger.info(
            "memory_deletion_processed",
            extra={
                "memory_id": event.memory_id,
                "audited": claimed,
                "failed_cleanups": failed,
            },
        )
        return {"status": "ok", "audited": claimed, "cleanups": cleanups}


__all__ = [
    "PipelineStages",
    "embedding_text",
    "notification_message",
    "CONTENT_FIELDS",
]
