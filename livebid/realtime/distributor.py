"""Topic fan-out over a local hub or redis publish/subscribe."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .backoff import reconnect_delay
from .events import Event, EventType
from .hub import SubscriptionHub

logger = logging.getLogger(__name__)


class _PublisherProtocol:
    async def publish(self, topic: str, event: Event) -> None:  # pragma: no cover - protocol
        raise NotImplementedError


class _LocalPublisher(_PublisherProtocol):
    def __init__(self, hub: SubscriptionHub) -> None:
        self._hub = hub

    async def publish(self, topic: str, event: Event) -> None:
        sent = self._hub.deliver(topic, event)
        logger.debug("[local] %s %s delivered to %s", topic, event.type.value, sent)


class _RedisPublisher(_PublisherProtocol):
    def __init__(self, options: dict[str, Any]) -> None:
        url = options.get("url")
        if not url:
            raise ValueError("redis distribution requires url")
        self._redis = aioredis.from_url(url)
        self.channel_prefix = str(options.get("channel_prefix", "sse")).rstrip(":")

    def channel(self, topic: str) -> str:
        return f"{self.channel_prefix}:{topic}"

    async def publish(self, topic: str, event: Event) -> None:
        await self._redis.publish(self.channel(topic), event.encode())

    async def close(self) -> None:
        await self._redis.aclose()


class EventDistributor:
    """Fire-and-forget publisher handed to the engine and dispute workflow."""

    def __init__(
        self,
        hub: SubscriptionHub,
        backend: str = "local",
        options: dict[str, Any] | None = None,
    ) -> None:
        options = options or {}
        self.hub = hub
        self.backend = backend
        if backend == "redis":
            self._publisher: _PublisherProtocol = _RedisPublisher(options)
        elif backend == "local":
            self._publisher = _LocalPublisher(hub)
        else:
            raise ValueError(f"unknown distribution backend {backend}")
        self._pending: set[asyncio.Task] = set()
        self.failures = 0

    def publish(self, topic: str, event: Event) -> None:
        task = asyncio.get_running_loop().create_task(self._send(topic, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, topic: str, event: Event) -> None:
        try:
            await self._publisher.publish(topic, event)
        except Exception as exc:
            self.failures += 1
            logger.warning("fan-out of %s to %s failed: %s", event.type.value, topic, exc)

    async def drain(self) -> None:
        """Wait for queued deliveries; used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if isinstance(self._publisher, _RedisPublisher):
            await self._publisher.close()


class RedisEventRelay:
    """Feeds events published by any process into this process's hub."""

    def __init__(
        self,
        hub: SubscriptionHub,
        options: dict[str, Any],
        *,
        reconnect_base_ms: int = 500,
        reconnect_max_ms: int = 5000,
    ) -> None:
        url = options.get("url")
        if not url:
            raise ValueError("redis relay requires url")
        self._hub = hub
        self._url = url
        self._prefix = str(options.get("channel_prefix", "sse")).rstrip(":")
        self._base_ms = reconnect_base_ms
        self._max_ms = reconnect_max_ms
        self.connected = False

    async def run(self) -> None:
        attempt = 0
        while True:
            client = aioredis.from_url(self._url)
            try:
                async with client.pubsub() as pubsub:
                    await pubsub.psubscribe(f"{self._prefix}:*")
                    self._set_connected(True)
                    attempt = 0
                    async for message in pubsub.listen():
                        if message.get("type") != "pmessage":
                            continue
                        self._dispatch(message["channel"], message["data"])
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as exc:
                logger.warning("redis relay disconnected: %s", exc)
            finally:
                self._set_connected(False)
                await client.aclose()
            delay = reconnect_delay(attempt, base_ms=self._base_ms, max_ms=self._max_ms)
            attempt += 1
            logger.info("redis relay reconnecting in %.1fs (attempt %s)", delay, attempt)
            await asyncio.sleep(delay)

    def _dispatch(self, channel: bytes | str, data: bytes | str) -> None:
        if isinstance(channel, bytes):
            channel = channel.decode()
        topic = channel[len(self._prefix) + 1 :]
        try:
            event = Event.decode(data)
        except (KeyError, ValueError) as exc:
            logger.warning("undecodable event on %s: %s", channel, exc)
            return
        self._hub.deliver(topic, event)

    def _set_connected(self, connected: bool) -> None:
        if connected == self.connected:
            return
        self.connected = connected
        self._hub.broadcast(Event(EventType.BROKER_STATUS, {"connected": connected}))
