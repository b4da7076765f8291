"""
Runtime wiring: one bus, one scheduler and the stage subscriptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from chronicle.bus import EventBus
from chronicle.events import (
    TOPIC_MEMORY_ANALYZED,
    TOPIC_MEMORY_CREATED,
    TOPIC_MEMORY_DELETED,
    TOPIC_MEMORY_EMBEDDED,
    TOPIC_MEMORY_REACTIVATED,
    TOPIC_MEMORY_UPDATED,
    TOPIC_REACTIVATION_SCHEDULED,
    TOPIC_TRACK_ANALYTICS,
)
from chronicle.services.ai_provider import build_provider
from chronicle.services.analytics import AnalyticsAggregator
from chronicle.services.notifier import build_notifier
from chronicle.services.scheduler import ReactivationScheduler
from chronicle.services.stages import PipelineStages
from chronicle.services.vector_store import VectorStore
from chronicle.timeutil import utcnow


@dataclass
class Pipeline:
    bus: EventBus
    scheduler: ReactivationScheduler
    provider: object
    vector_store: VectorStore
    notifier: object
    stages: PipelineStages
    aggregator: AnalyticsAggregator
    clock: Callable[[], datetime] = field(default=utcnow)

    def register(self) -> None:
        """Subscribe every stage to the topic it consumes."""
        subscriptions = [
            (TOPIC_MEMORY_CREATED, self.stages.analyze, "analyze"),
            (TOPIC_MEMORY_ANALYZED, self.stages.embed, "embed"),
            (TOPIC_MEMORY_EMBEDDED, self.stages.schedule, "schedule"),
            (TOPIC_REACTIVATION_SCHEDULED, self.stages.reactivate, "reactivate"),
            (TOPIC_MEMORY_REACTIVATED, self.stages.notify, "notify"),
            (TOPIC_MEMORY_UPDATED, self.stages.on_updated, "memory_updated_handler"),
            (TOPIC_MEMORY_DELETED, self.stages.on_deleted, "memory_deleted_handler"),
            (TOPIC_TRACK_ANALYTICS, self.aggregator.handle, "analytics_aggregator"),
        ]
        for topic, handler, name in subscriptions:
            self.bus.subscribe(topic, handler, name=name)

    def status(self) -> dict:
        return {
            "scheduler": self.scheduler.status(),
            "provider": self.provider.status(),
            "notifier": self.notifier.status(),
            "bus": {
                "pending": self.bus.pending(),
                "dead_letters": len(self.bus.dead_letters),
            },
        }


def build_pipeline(
    provider=None,
    notifier=None,
    vector_store: Optional[VectorStore] = None,
    clock: Callable[[], datetime] = utcnow,
    bus: Optional[EventBus] = None,
    **scheduler_options,
) -> Pipeline:
    bus = bus or EventBus()
    provider = provider or build_provider()
    notifier = notifier or build_notifier()
    vector_store = vector_store or VectorStore()
    scheduler = ReactivationScheduler(bus, clock=clock, **scheduler_options)
    stages = PipelineStages(bus, scheduler, provider, vector_store, notifier, clock=clock)
    pipeline = Pipeline(
        bus=bus,
        scheduler=scheduler,
        provider=provider,
        vector_store=vector_store,
        notifier=notifier,
        stages=stages,
        aggregator=AnalyticsAggregator(clock=clock),
        clock=clock,
    )
    pipeline.register()
    return pipeline


class PipelineHolder:
    """Process-wide pipeline instance (set by the app lifespan)."""

    pipeline: Optional[Pipeline] = None


__all__ = ["Pipeline", "PipelineHolder", "build_pipeline"]
