import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("AI_PROVIDER", "none")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from chronicle.bus import EventBus
from chronicle.db import DB
from chronicle.errors import TransientCapabilityError
from chronicle.events import Analysis
from chronicle.models import Base
from chronicle.pipeline import build_pipeline

START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _vector(text: str, dims: int = 16) -> list[float]:
    vec = [0.0] * dims
    for token in text.lower().split():
        vec[sum(map(ord, token)) % dims] += 1.0
    return vec


class FakeProvider:
    """Deterministic stand-in for the AI provider with scripted outages."""

    model_version = "fake-embedding-1"

    def __init__(self):
        self.calls = {"embed": 0, "classify": 0, "reanalyze": 0, "answer": 0}
        self.failures = {}

    def fail(self, capability: str, times: int) -> None:
        self.failures[capability] = times

    def _maybe_fail(self, capability: str) -> None:
        self.calls[capability] += 1
        remaining = self.failures.get(capability, 0)
        if remaining:
            self.failures[capability] = remaining - 1
            raise TransientCapabilityError(f"{capability} offline", capability=capability)

    async def embed(self, text):
        self._maybe_fail("embed")
        return _vector(text)

    async def classify(self, title, description, memory_type):
        self._maybe_fail("classify")
        return Analysis(
            summary=f"Summary of {title}",
            category=memory_type,
            lessons=("Write it down",),
            root_cause="unknown" if memory_type == "failure" else None,
        )

    async def reanalyze(self, memory, context):
        self._maybe_fail("reanalyze")
        return f"Still relevant: {memory['title']}"

    async def answer(self, question, context):
        self._maybe_fail("answer")
        return f"Answered from {len(context)} memories"

    def status(self):
        return {"provider": "fake", "circuit_breaker": {"open": False}}


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.attempts = 0
        self.fail_times = 0

    async def send(self, notification):
        self.attempts += 1
        if self.fail_times:
            self.fail_times -= 1
            raise TransientCapabilityError("webhook offline", capability="notification")
        self.sent.append(notification)

    def status(self):
        return {"transport": "recording"}


@pytest.fixture
def db_engine(tmp_path):
    db_path = tmp_path / "chronicle.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    try:
        yield engine
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(db_engine):
    session = DB.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def pipeline(db_engine, clock, provider, notifier):
    bus = EventBus(max_attempts=3, backoff_seconds=0, jitter_seconds=0)
    return build_pipeline(
        provider=provider,
        notifier=notifier,
        clock=clock,
        bus=bus,
        lease_seconds=60,
    )
