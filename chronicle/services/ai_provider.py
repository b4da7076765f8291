"""
Enrichment provider: embeddings, classification, reanalysis and answers.

Talks to an OpenAI-compatible HTTP API through httpx with a bounded
retry/backoff policy and a shared circuit breaker. Every provider failure
surfaces as TransientCapabilityError so the event bus can retry the stage.
"""

from __future__ import annotations

import asyncio
import json
import random
import threading
import time
from typing import List, Optional, Sequence

import httpx

import chronicle.config as config
from chronicle.errors import TransientCapabilityError
from chronicle.events import Analysis
from chronicle.validators import validate_embedding_text

logger = config.logger

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

CLASSIFY_SYSTEM_PROMPT = (
    "You analyze engineering memories (decisions, failures, context notes and "
    "future reminders). Reply with a JSON object with the keys: summary (one or "
    "two sentences), category (a short label), rootCause (string, only for "
    "failures, otherwise null) and lessons (a list of short strings)."
)
REANALYZE_SYSTEM_PROMPT = (
    "You revisit a past engineering memory that is resurfacing. Explain in a "
    "short paragraph why it matters now and what should be checked again."
)
ANSWER_SYSTEM_PROMPT = (
    "You answer questions using only the team memories provided as context. "
    "Cite memory titles when useful. If the context does not answer the "
    "question, say so."
)


class CapabilityCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


capability_circuit_breaker = CapabilityCircuitBreaker(
    failure_threshold=config.CAPABILITY_FAILURE_THRESHOLD,
    cooldown_seconds=config.CAPABILITY_COOLDOWN_SECONDS,
)


def _raise_unavailable(capability: str, detail: str) -> None:
    logger.warning("capability_unavailable", extra={"capability": capability, "detail": detail})
    raise TransientCapabilityError(f"{capability} provider unavailable: {detail}", capability=capability)


async def _async_sleep_backoff(attempt: int) -> None:
    base = config.CAPABILITY_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.CAPABILITY_RETRY_JITTER_SECONDS)
    await asyncio.sleep(base + jitter)


def _coerce_analysis(raw: dict) -> Analysis:
    lessons = raw.get("lessons") or []
    if isinstance(lessons, str):
        lessons = [lessons]
    root_cause = raw.get("rootCause")
    return Analysis(
        summary=str(raw.get("summary") or "").strip() or "No summary available.",
        category=str(raw.get("category") or "").strip() or "uncategorized",
        root_cause=str(root_cause).strip() if root_cause else None,
        lessons=tuple(str(item) for item in lessons if item),
    )


class OpenAIProvider:
    """OpenAI-compatible provider used by the pipeline stages."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        embedding_model: Optional[str] = None,
        chat_model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        retry_max: Optional[int] = None,
        circuit_breaker: Optional[CapabilityCircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        self.base_url = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.chat_model = chat_model or config.CHAT_MODEL
        self.timeout_seconds = timeout_seconds or config.CAPABILITY_TIMEOUT_SECONDS
        self.retry_max = config.CAPABILITY_RETRY_MAX if retry_max is None else retry_max
        self.circuit_breaker = circuit_breaker or capability_circuit_breaker
        self._transport = transport

    @property
    def model_version(self) -> str:
        return self.embedding_model

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, capability: str, path: str, payload: dict) -> dict:
        if self.circuit_breaker.is_open():
            _raise_unavailable(capability, "circuit breaker open")
        timeout = httpx.Timeout(self.timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            for attempt in range(self.retry_max + 1):
                try:
                    response = await client.post(
                        f"{self.base_url}{path}",
                        headers=self._headers(),
                        json=payload,
                    )
                except httpx.RequestError as exc:
                    if attempt >= self.retry_max:
                        self.circuit_breaker.record_failure(str(exc))
                        _raise_unavailable(capability, str(exc))
                    await _async_sleep_backoff(attempt)
                    continue

                if response.status_code in RETRYABLE_STATUS_CODES:
                    if attempt >= self.retry_max:
                        self.circuit_breaker.record_failure(f"status {response.status_code}")
                        _raise_unavailable(capability, f"status {response.status_code}")
                    await _async_sleep_backoff(attempt)
                    continue
                if response.status_code >= 400:
                    self.circuit_breaker.record_failure(f"status {response.status_code}")
                    _raise_unavailable(capability, f"status {response.status_code}")

                try:
                    data = response.json()
                except ValueError:
                    self.circuit_breaker.record_failure("invalid json")
                    _raise_unavailable(capability, "invalid json")
                self.circuit_breaker.record_success()
                return data
        _raise_unavailable(capability, "retries exhausted")

    async def _chat(self, capability: str, messages: list[dict], json_mode: bool = False) -> str:
        payload = {"model": self.chat_model, "messages": messages, "temperature": 0.2}
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        data = await self._post(capability, "/chat/completions", payload)
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            _raise_unavailable(capability, "malformed completion")

    async def embed(self, text: str) -> List[float]:
        validate_embedding_text(text)
        data = await self._post(
            "embedding",
            "/embeddings",
            {"model": self.embedding_model, "input": text},
        )
        try:
            return list(data["data"][0]["embedding"])
        except (KeyError, IndexError, TypeError):
            _raise_unavailable("embedding", "malformed embedding response")

    async def classify(self, title: str, description: str, memory_type: str) -> Analysis:
        content = await self._chat(
            "analysis",
            [
                {"role": "system", "content": CLASSIFY_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"Type: {memory_type}\nTitle: {title}\nDescription: {description}",
                },
            ],
            json_mode=True,
        )
        try:
            raw = json.loads(content)
        except ValueError:
            _raise_unavailable("analysis", "classification was not valid JSON")
        if not isinstance(raw, dict):
            _raise_unavailable("analysis", "classification was not an object")
        return _coerce_analysis(raw)

    async def reanalyze(self, memory: dict, context: str) -> str:
        lessons = "\n".join(f"- {lesson}" for lesson in (memory.get("keyLessons") or []))
        body = (
            f"Type: {memory.get('type')}\n"
            f"Title: {memory.get('title')}\n"
            f"Description: {memory.get('description')}\n"
            f"Summary: {memory.get('aiSummary') or 'n/a'}\n"
            f"Lessons:\n{lessons or '- none recorded'}\n\n"
            f"Context: {context}"
        )
        return await self._chat(
            "reanalysis",
            [
                {"role": "system", "content": REANALYZE_SYSTEM_PROMPT},
                {"role": "user", "content": body},
            ],
        )

    async def answer(self, question: str, context: Sequence[str]) -> str:
        joined = "\n\n---\n\n".join(context)
        return await self._chat(
            "answer",
            [
                {"role": "system", "content": ANSWER_SYSTEM_PROMPT},
                {"role": "user", "content": f"Memories:\n{joined}\n\nQuestion: {question}"},
            ],
        )

    def status(self) -> dict:
        return {
            "provider": "openai",
            "embedding_model": self.embedding_model,
            "chat_model": self.chat_model,
            "circuit_breaker": self.circuit_breaker.status(),
        }


class DisabledProvider:
    """Used when AI_PROVIDER=none; every capability call is unavailable."""

    model_version = "none"

    async def embed(self, text: str) -> List[float]:
        _raise_unavailable("embedding", "provider disabled")

    async def classify(self, title: str, description: str, memory_type: str) -> Analysis:
        _raise_unavailable("analysis", "provider disabled")

    async def reanalyze(self, memory: dict, context: str) -> str:
        _raise_unavailable("reanalysis", "provider disabled")

    async def answer(self, question: str, context: Sequence[str]) -> str:
        _raise_unavailable("answer", "provider disabled")

    def status(self) -> dict:
        return {"provider": "none"}


def build_provider():
    if config.AI_PROVIDER == "none":
        return DisabledProvider()
    return OpenAIProvider()


__all__ = [
    "CapabilityCircuitBreaker",
    "capability_circuit_breaker",
    "OpenAIProvider",
    "DisabledProvider",
    "build_provider",
]
