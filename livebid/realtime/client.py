"""Viewer-side feed: live SSE with reconnect backoff and a polling fallback."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx

from ..config import ClientConfig
from ..transport.timestamps import TimestampError, parse_timestamp
from .backoff import poll_interval, reconnect_delay
from .events import Event, EventType, utcnow

logger = logging.getLogger(__name__)

EventCallback = Callable[[Event], None]
SnapshotCallback = Callable[[dict[str, Any]], None]


class AuctionFeedClient:
    """Follows one auction, preferring the event stream and falling back to polls.

    Stream failures reconnect after ``reconnect_delay(attempt)``; once
    ``max_reconnect_attempts`` is exhausted the client polls the status
    endpoint for good. A ``broker_status`` frame, or a ``connected`` frame,
    reporting the broker down starts polling alongside the stream until the
    broker is reported up again.
    """

    def __init__(
        self,
        base_url: str,
        auction_id: str,
        *,
        on_event: EventCallback | None = None,
        on_snapshot: SnapshotCallback | None = None,
        config: ClientConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._auction_id = auction_id
        self._on_event = on_event
        self._on_snapshot = on_snapshot
        self._config = config or ClientConfig()
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=None)
        self._owns_client = http_client is None
        self._sleep = sleep
        self._clock = clock
        self._stopped = False
        self._broker_poller: asyncio.Task | None = None
        self.attempts = 0
        self.mode = "streaming"
        self.broker_up = True
        self.last_snapshot: dict[str, Any] | None = None

    @property
    def stream_path(self) -> str:
        return f"/events/auctions/{self._auction_id}"

    @property
    def status_path(self) -> str:
        return f"/auctions/{self._auction_id}/status"

    def stop(self) -> None:
        self._stopped = True
        if self._broker_poller is not None:
            self._broker_poller.cancel()

    async def aclose(self) -> None:
        self.stop()
        if self._owns_client:
            await self._client.aclose()

    async def run(self) -> None:
        while not self._stopped:
            if self.attempts >= self._config.max_reconnect_attempts:
                logger.warning(
                    "giving up on the event stream for %s after %s attempts; polling",
                    self._auction_id,
                    self.attempts,
                )
                await self.poll_forever()
                return
            try:
                await self.stream_once()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("event stream for %s failed: %s", self._auction_id, exc)
            if self._stopped:
                return
            delay = reconnect_delay(
                self.attempts,
                base_ms=self._config.reconnect_base_ms,
                max_ms=self._config.reconnect_max_ms,
            )
            self.attempts += 1
            await self._sleep(delay)

    async def stream_once(self) -> None:
        """Consume the stream until the server closes it."""
        async with self._client.stream("GET", self.stream_path) as response:
            response.raise_for_status()
            buffer: list[str] = []
            async for line in response.aiter_lines():
                if self._stopped:
                    return
                if line.startswith("data:"):
                    buffer.append(line[5:].lstrip())
                elif not line and buffer:
                    self._handle(Event.decode("\n".join(buffer)))
                    buffer = []

    def _handle(self, event: Event) -> None:
        if event.type is EventType.CONNECTED:
            self.attempts = 0
            if "broker_connected" in event.payload:
                self._broker_changed(bool(event.payload["broker_connected"]))
            elif self.broker_up:
                self.mode = "streaming"
        elif event.type is EventType.BROKER_STATUS:
            self._broker_changed(bool(event.payload.get("connected")))
        if self._on_event is not None:
            self._on_event(event)

    def _broker_changed(self, connected: bool) -> None:
        self.broker_up = connected
        if connected:
            if self._broker_poller is not None:
                self._broker_poller.cancel()
                self._broker_poller = None
            self.mode = "streaming"
            return
        self.mode = "polling"
        if self._broker_poller is None or self._broker_poller.done():
            self._broker_poller = asyncio.get_running_loop().create_task(self._poll_while_broker_down())

    async def _poll_while_broker_down(self) -> None:
        while not self.broker_up and not self._stopped:
            await self._poll_logged()
            await self._sleep(self.next_poll_delay())

    async def poll_forever(self) -> None:
        self.mode = "polling"
        while not self._stopped:
            await self._poll_logged()
            await self._sleep(self.next_poll_delay())

    async def _poll_logged(self) -> None:
        try:
            await self.poll_once()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("status poll for %s failed: %s", self._auction_id, exc)

    async def poll_once(self) -> dict[str, Any]:
        response = await self._client.get(self.status_path)
        response.raise_for_status()
        snapshot = response.json()
        self.last_snapshot = snapshot
        if self._on_snapshot is not None:
            self._on_snapshot(snapshot)
        return snapshot

    def next_poll_delay(self) -> float:
        end_time = None
        if self.last_snapshot and self.last_snapshot.get("end_time"):
            try:
                end_time = parse_timestamp(self.last_snapshot["end_time"])
            except TimestampError:
                end_time = None
        return poll_interval(
            end_time,
            self._clock(),
            near_end_ms=self._config.poll_interval_near_end_ms,
            idle_ms=self._config.poll_interval_idle_ms,
            near_end_window_seconds=self._config.near_end_window_seconds,
        )
