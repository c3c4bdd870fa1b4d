"""Out-of-band notification sink (email and similar)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Protocol

import httpx

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def send(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None: ...


class LoggingNotificationSink:
    async def send(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("[notify] user=%s type=%s", user_id, event_type)


class WebhookNotificationSink:
    def __init__(self, *, url: str, timeout_ms: int = 1000) -> None:
        if not url:
            raise ValueError("webhook notifications require url")
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout_ms / 1000)

    async def send(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        response = await self._client.post(
            self._url,
            json={"user_id": user_id, "event_type": event_type, "payload": payload},
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class NotificationDispatcher:
    """Schedules sink calls after commit; failures are logged, never raised."""

    def __init__(self, sink: NotificationSink) -> None:
        self._sink = sink
        self._pending: set[asyncio.Task] = set()

    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._send(user_id, event_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._sink.send(user_id, event_type, payload)
        except Exception as exc:
            logger.warning("notification %s for %s failed: %s", event_type, user_id, exc)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def build_notification_sink(backend: str, options: Mapping[str, Any]) -> NotificationSink:
    if backend == "log":
        return LoggingNotificationSink()
    if backend == "webhook":
        return WebhookNotificationSink(**options)
    raise ValueError(f"unknown notifications backend {backend}")
