"""
In-process event bus with at-least-once delivery to async handlers.

Each emitted event becomes one asyncio task per subscriber. A handler that
raises a retryable error is re-run with exponential backoff; terminal errors
and exhausted retries land in ``dead_letters``. Handlers must be idempotent.
"""

from __future__ import annotations

import asyncio
import random
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import chronicle.config as config
from chronicle.errors import RETRYABLE_ERRORS, TERMINAL_ERRORS
from chronicle.events import parse_event
from chronicle.timeutil import isoformat, utcnow

Handler = Callable[[Any], Awaitable[None]]


@dataclass
class DeadLetter:
    topic: str
    handler: str
    payload: dict
    error: str
    attempts: int
    failed_at: str


class EventBus:
    def __init__(
        self,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        jitter_seconds: Optional[float] = None,
        history_limit: Optional[int] = None,
    ):
        self._handlers: dict[str, list[tuple[str, Handler]]] = {}
        self._tasks: set[asyncio.Task] = set()
        self.max_attempts = max(1, max_attempts or config.EVENT_HANDLER_MAX_ATTEMPTS)
        self.backoff_seconds = (
            config.EVENT_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.jitter_seconds = (
            config.EVENT_RETRY_JITTER_SECONDS if jitter_seconds is None else jitter_seconds
        )
        limit = history_limit or config.EVENT_HISTORY_LIMIT
        self.emitted: deque = deque(maxlen=limit)
        self.dead_letters: deque = deque(maxlen=limit)

    def subscribe(self, topic: str, handler: Handler, name: Optional[str] = None) -> None:
        handler_name = name or getattr(handler, "__name__", repr(handler))
        self._handlers.setdefault(topic, []).append((handler_name, handler))

    def subscribers(self, topic: str) -> list[str]:
        return [name for name, _ in self._handlers.get(topic, [])]

    async def emit(self, topic: str, data) -> Any:
        """
        Validate and publish an event. Returns the typed payload.

        Raises ValidationError for malformed payloads; nothing is delivered.
        """
        event = parse_event(topic, data)
        self.emitted.append((topic, event))
        config.logger.info(
            "event_emitted",
            extra={"topic": topic, "memory_id": getattr(event, "memory_id", None)},
        )
        for name, handler in self._handlers.get(topic, []):
            task = asyncio.create_task(self._deliver(topic, name, handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return event

    async def _sleep_backoff(self, attempt: int) -> None:
        base = self.backoff_seconds * (2 ** attempt)
        jitter = random.uniform(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        await asyncio.sleep(base + jitter)

    async def _deliver(self, topic: str, name: str, handler: Handler, event) -> None:
        for attempt in range(self.max_attempts):
            try:
                await handler(event)
                return
            except TERMINAL_ERRORS as exc:
                config.logger.warning(
                    "event_handler_rejected",
                    extra={"topic": topic, "handler": name, "error": str(exc)},
                )
                self._dead_letter(topic, name, event, exc, attempt + 1)
                return
            except RETRYABLE_ERRORS as exc:
                if attempt + 1 >= self.max_attempts:
                    config.logger.warning(
                        "event_handler_exhausted",
                        extra={"topic": topic, "handler": name, "error": str(exc), "attempts": attempt + 1},
                    )
                    self._dead_letter(topic, name, event, exc, attempt + 1)
                    return
                config.logger.info(
                    "event_handler_retry",
                    extra={"topic": topic, "handler": name, "error": str(exc), "attempt": attempt + 1},
                )
                await self._sleep_backoff(attempt)
            except Exception as exc:
                config.logger.exception(
                    "event_handler_failed",
                    extra={"topic": topic, "handler": name},
                )
                self._dead_letter(topic, name, event, exc, attempt + 1)
                return

    def _dead_letter(self, topic: str, name: str, event, exc: Exception, attempts: int) -> None:
        self.dead_letters.append(
            DeadLetter(
                topic=topic,
                handler=name,
                payload=event.to_dict(),
                error=f"{exc.__class__.__name__}: {exc}",
                attempts=attempts,
                failed_at=isoformat(utcnow()),
            )
        )

    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until no handler task is running, including ones spawned meanwhile."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while self._tasks:
            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError("event bus did not drain in time")
            await asyncio.wait(set(self._tasks), timeout=remaining)

    def events(self, topic: Optional[str] = None) -> list:
        return [event for emitted_topic, event in self.emitted if topic is None or emitted_topic == topic]


__all__ = ["EventBus", "DeadLetter", "Handler"]
