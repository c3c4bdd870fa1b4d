"""In-process subscriber registry and best-effort delivery."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from .events import Event

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


@dataclass(eq=False)
class Subscription:
    topic: str
    queue: asyncio.Queue
    id: int = field(default_factory=lambda: next(_ids))
    dropped: int = 0

    async def next_event(self, timeout: float | None = None) -> Event | None:
        """Wait for the next event; ``None`` when ``timeout`` elapses first."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class SubscriptionHub:
    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)
        self.delivered = 0
        self.dropped = 0

    def subscribe(self, topic: str) -> Subscription:
        subscription = Subscription(topic=topic, queue=asyncio.Queue(maxsize=self._queue_size))
        self._subscriptions[topic].add(subscription)
        logger.info(
            "subscriber %s joined %s (total %s)",
            subscription.id,
            topic,
            len(self._subscriptions[topic]),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.topic)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscriptions[subscription.topic]
        logger.info("subscriber %s left %s", subscription.id, subscription.topic)

    def deliver(self, topic: str, event: Event) -> int:
        sent = 0
        for subscription in list(self._subscriptions.get(topic, ())):
            try:
                subscription.queue.put_nowait(event)
                sent += 1
            except asyncio.QueueFull:
                # A slow viewer misses this frame and catches up by polling.
                subscription.dropped += 1
                self.dropped += 1
                logger.warning(
                    "dropped %s for subscriber %s on %s", event.type.value, subscription.id, topic
                )
        self.delivered += sent
        return sent

    def broadcast(self, event: Event) -> int:
        return sum(self.deliver(topic, event) for topic in list(self._subscriptions))

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subscriptions.get(topic, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def topics(self) -> list[str]:
        return sorted(self._subscriptions)
