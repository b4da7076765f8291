"""
Notification transports.
"""

from __future__ import annotations

from typing import Optional

import httpx

import chronicle.config as config
from chronicle.errors import TransientCapabilityError


class LogNotifier:
    """Delivers notifications to the application log (in-app channel)."""

    async def send(self, notification: dict) -> None:
        config.logger.info(
            "notification_delivered",
            extra={
                "memory_id": notification.get("memoryId"),
                "channels": notification.get("channels"),
            },
        )

    def status(self) -> dict:
        return {"transport": "log"}


class WebhookNotifier:
    """POSTs each notification as JSON to a configured webhook."""

    def __init__(
        self,
        url: str,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds or config.CAPABILITY_TIMEOUT_SECONDS
        self._transport = transport

    async def send(self, notification: dict) -> None:
        timeout = httpx.Timeout(self.timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.url, json=notification)
            except httpx.RequestError as exc:
                raise TransientCapabilityError(
                    f"notification webhook unreachable: {exc}",
                    capability="notification",
                ) from exc
        if response.status_code >= 400:
            raise TransientCapabilityError(
                f"notification webhook returned status {response.status_code}",
                capability="notification",
            )

    def status(self) -> dict:
        return {"transport": "webhook"}


def build_notifier():
    if config.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(config.NOTIFY_WEBHOOK_URL)
    return LogNotifier()


__all__ = ["LogNotifier", "WebhookNotifier", "build_notifier"]
