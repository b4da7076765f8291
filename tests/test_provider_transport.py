import asyncio
import json

import httpx
import pytest

import chronicle.config as config
from chronicle.errors import RETRYABLE_ERRORS, TransientCapabilityError
from chronicle.services.ai_provider import CapabilityCircuitBreaker, OpenAIProvider
from chronicle.services.notifier import WebhookNotifier


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(config, "CAPABILITY_RETRY_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(config, "CAPABILITY_RETRY_JITTER_SECONDS", 0.0)


class ScriptedUpstream:
    """Replies with the scripted responses in order, repeating the last one."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies[min(len(self.requests), len(self.replies)) - 1]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _embedding_reply(vector=(0.1, 0.2, 0.3)):
    return httpx.Response(200, json={"data": [{"embedding": list(vector)}]})


def _completion_reply(content: str):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def _provider(upstream, retry_max=2, breaker=None):
    return OpenAIProvider(
        api_key="sk-test",
        base_url="https://llm.internal/v1",
        retry_max=retry_max,
        circuit_breaker=breaker or CapabilityCircuitBreaker(failure_threshold=5, cooldown_seconds=60),
        transport=upstream.transport(),
    )


def test_server_error_then_success_is_retried():
    upstream = ScriptedUpstream(httpx.Response(503), _embedding_reply())
    provider = _provider(upstream)

    vector = asyncio.run(provider.embed("Why did the deploy fail?"))

    assert vector == [0.1, 0.2, 0.3]
    assert len(upstream.requests) == 2
    assert upstream.requests[0].url.path == "/v1/embeddings"
    assert upstream.requests[0].headers["Authorization"] == "Bearer sk-test"
    assert provider.circuit_breaker.status()["consecutive_failures"] == 0


def test_exhausted_retries_raise_transient_error():
    upstream = ScriptedUpstream(httpx.Response(500))
    provider = _provider(upstream, retry_max=2)

    with pytest.raises(TransientCapabilityError) as excinfo:
        asyncio.run(provider.embed("Why did the deploy fail?"))

    assert excinfo.value.capability == "embedding"
    assert isinstance(excinfo.value, RETRYABLE_ERRORS)
    assert len(upstream.requests) == 3
    assert provider.circuit_breaker.status()["consecutive_failures"] == 1


def test_timeouts_are_retried_then_reported():
    upstream = ScriptedUpstream(httpx.ReadTimeout("upstream stalled"))
    provider = _provider(upstream, retry_max=1)

    with pytest.raises(TransientCapabilityError):
        asyncio.run(provider.embed("Why did the deploy fail?"))
    assert len(upstream.requests) == 2


def test_client_errors_are_not_retried():
    upstream = ScriptedUpstream(httpx.Response(401, json={"error": "bad key"}))
    provider = _provider(upstream, retry_max=3)

    with pytest.raises(TransientCapabilityError):
        asyncio.run(provider.embed("Why did the deploy fail?"))
    assert len(upstream.requests) == 1


def test_breaker_opens_after_threshold_and_short_circuits():
    breaker = CapabilityCircuitBreaker(failure_threshold=2, cooldown_seconds=60)
    upstream = ScriptedUpstream(httpx.Response(502))
    provider = _provider(upstream, retry_max=0, breaker=breaker)

    for _ in range(2):
        with pytest.raises(TransientCapabilityError):
            asyncio.run(provider.embed("Why did the deploy fail?"))
    assert breaker.status()["open"] is True

    with pytest.raises(TransientCapabilityError) as excinfo:
        asyncio.run(provider.embed("Why did the deploy fail?"))
    assert "circuit breaker open" in str(excinfo.value)
    assert len(upstream.requests) == 2


def test_classify_parses_the_json_completion():
    content = json.dumps({
        "summary": "Retries without jitter overloaded the API.",
        "category": "reliability",
        "rootCause": "synchronized retries",
        "lessons": ["Add jitter", "Cap retry budgets"],
    })
    upstream = ScriptedUpstream(_completion_reply(content))
    provider = _provider(upstream)

    analysis = asyncio.run(provider.classify("Retry storm", "API went down", "failure"))

    assert analysis.summary == "Retries without jitter overloaded the API."
    assert analysis.root_cause == "synchronized retries"
    assert analysis.lessons == ("Add jitter", "Cap retry budgets")
    sent = json.loads(upstream.requests[0].content)
    assert sent["response_format"] == {"type": "json_object"}


def test_non_json_classification_is_transient():
    upstream = ScriptedUpstream(_completion_reply("not json at all"))
    provider = _provider(upstream)

    with pytest.raises(TransientCapabilityError):
        asyncio.run(provider.classify("Retry storm", "API went down", "failure"))


# -----------------------------------------------------------------------------
# Webhook notifier
# -----------------------------------------------------------------------------

NOTIFICATION = {
    "memoryId": "mem_1",
    "channels": ["in-app", "email"],
    "message": 'Memory "Retry storm" has been reactivated.',
}


def test_webhook_posts_the_notification():
    upstream = ScriptedUpstream(httpx.Response(204))
    notifier = WebhookNotifier("https://hooks.internal/notify", transport=upstream.transport())

    asyncio.run(notifier.send(NOTIFICATION))

    assert len(upstream.requests) == 1
    assert json.loads(upstream.requests[0].content) == NOTIFICATION


def test_webhook_error_status_is_retryable():
    upstream = ScriptedUpstream(httpx.Response(502))
    notifier = WebhookNotifier("https://hooks.internal/notify", transport=upstream.transport())

    with pytest.raises(TransientCapabilityError) as excinfo:
        asyncio.run(notifier.send(NOTIFICATION))

    assert excinfo.value.capability == "notification"
    assert isinstance(excinfo.value, RETRYABLE_ERRORS)


def test_unreachable_webhook_is_retryable():
    upstream = ScriptedUpstream(httpx.ConnectError("connection refused"))
    notifier = WebhookNotifier("https://hooks.internal/notify", transport=upstream.transport())

    with pytest.raises(TransientCapabilityError):
        asyncio.run(notifier.send(NOTIFICATION))
