"""Server-sent event framing for hub subscriptions."""

from __future__ import annotations

from typing import AsyncIterator, Callable, Iterable

from .events import Event, EventType
from .hub import SubscriptionHub

HEARTBEAT_FRAME = ": heartbeat\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def sse_stream(
    hub: SubscriptionHub,
    topic: str,
    *,
    heartbeat_seconds: float = 30.0,
    max_events: int | None = None,
    broker_connected: Callable[[], bool] | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for ``topic`` until the client goes away.

    The subscription is registered before the first frame is sent and
    removed when the generator is closed. ``max_events`` ends the stream
    after that many non-heartbeat frames. The opening frame reports whether
    the cross-instance broker is reachable so a late joiner knows to poll.
    """
    subscription = hub.subscribe(topic)
    try:
        connected = broker_connected() if broker_connected is not None else True
        yield Event(
            EventType.CONNECTED,
            {"topic": topic, "broker_connected": connected, "fallback_polling": not connected},
        ).sse_frame()
        sent = 0
        while max_events is None or sent < max_events:
            event = await subscription.next_event(timeout=heartbeat_seconds)
            if event is None:
                yield HEARTBEAT_FRAME
                continue
            yield event.sse_frame()
            sent += 1
    finally:
        hub.unsubscribe(subscription)


def parse_sse_lines(lines: Iterable[str]) -> list[Event]:
    """Decode ``data:`` frames from already-split SSE lines; comments are skipped."""
    events = []
    buffer: list[str] = []
    for line in lines:
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            buffer.append(line[5:].lstrip())
            continue
        if not line and buffer:
            events.append(Event.decode("\n".join(buffer)))
            buffer = []
    if buffer:
        events.append(Event.decode("\n".join(buffer)))
    return events
