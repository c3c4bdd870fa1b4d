"""Hub fan-out, distributor behaviour, SSE framing and the reconnecting feed client."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import START
from livebid.config import ClientConfig
from livebid.realtime.backoff import poll_interval, reconnect_delay
from livebid.realtime.client import AuctionFeedClient
from livebid.realtime.distributor import EventDistributor
from livebid.realtime.events import Event, EventType, auction_topic
from livebid.realtime.hub import SubscriptionHub
from livebid.realtime.stream import HEARTBEAT_FRAME, parse_sse_lines, sse_stream


def bid_event(amount: str = "550") -> Event:
    return Event(EventType.BID_PLACED, {"auction_id": "auc_1", "current_highest_bid": amount})


@pytest.mark.asyncio
async def test_full_subscriber_queue_drops_only_for_that_subscriber():
    hub = SubscriptionHub(queue_size=1)
    slow = hub.subscribe("auction:auc_1")
    fast = hub.subscribe("auction:auc_1")

    hub.deliver("auction:auc_1", bid_event("550"))
    await fast.next_event(timeout=1)
    hub.deliver("auction:auc_1", bid_event("600"))

    assert slow.dropped == 1
    assert fast.dropped == 0
    assert hub.dropped == 1
    assert (await slow.next_event(timeout=1)).payload["current_highest_bid"] == "550"
    assert (await fast.next_event(timeout=1)).payload["current_highest_bid"] == "600"


@pytest.mark.asyncio
async def test_unsubscribe_forgets_empty_topics():
    hub = SubscriptionHub()
    subscription = hub.subscribe("user:alice")
    assert hub.topics() == ["user:alice"]

    hub.unsubscribe(subscription)
    assert hub.topics() == []
    assert hub.deliver("user:alice", bid_event()) == 0


@pytest.mark.asyncio
async def test_publish_returns_before_delivery():
    hub = SubscriptionHub()
    distributor = EventDistributor(hub, backend="local")
    subscription = hub.subscribe(auction_topic("auc_1"))

    distributor.publish(auction_topic("auc_1"), bid_event())
    assert subscription.queue.empty()

    await distributor.drain()
    assert (await subscription.next_event(timeout=1)).type is EventType.BID_PLACED


@pytest.mark.asyncio
async def test_publish_failures_are_counted_not_raised():
    distributor = EventDistributor(SubscriptionHub(), backend="local")
    distributor._publisher = AsyncMock()
    distributor._publisher.publish.side_effect = ConnectionError("broker gone")

    distributor.publish("auction:auc_1", bid_event())
    await distributor.drain()

    assert distributor.failures == 1


def test_unknown_distribution_backend():
    with pytest.raises(ValueError):
        EventDistributor(SubscriptionHub(), backend="carrier-pigeon")


def test_event_frames_decode_back():
    event = bid_event("725.50")
    frame = event.sse_frame()
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")

    decoded = parse_sse_lines(frame.split("\n") + [": heartbeat", ""])
    assert len(decoded) == 1
    assert decoded[0].type is EventType.BID_PLACED
    assert decoded[0].payload == event.payload
    assert decoded[0].ts == event.ts


@pytest.mark.asyncio
async def test_sse_stream_sends_connected_events_and_heartbeats():
    hub = SubscriptionHub()
    stream = sse_stream(hub, "auction:auc_1", heartbeat_seconds=0.01)

    connected = await stream.__anext__()
    assert parse_sse_lines(connected.split("\n"))[0].type is EventType.CONNECTED
    assert hub.subscriber_count("auction:auc_1") == 1

    assert await stream.__anext__() == HEARTBEAT_FRAME
    hub.deliver("auction:auc_1", bid_event())
    frame = await stream.__anext__()
    assert parse_sse_lines(frame.split("\n"))[0].type is EventType.BID_PLACED

    await stream.aclose()
    assert hub.subscriber_count() == 0


def test_reconnect_delay_doubles_then_caps():
    delays = [reconnect_delay(attempt, base_ms=1000, max_ms=30000) for attempt in range(7)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_reconnect_delay_jitter_stays_bounded():
    for attempt in range(5):
        delay = reconnect_delay(attempt, base_ms=1000, max_ms=8000, jitter=0.2)
        expected = min(1000 * 2**attempt, 8000) / 1000
        assert expected * 0.8 <= delay <= expected * 1.2


def test_poll_interval_tightens_near_end():
    kwargs = {"near_end_ms": 2000, "idle_ms": 10000, "near_end_window_seconds": 120}
    assert poll_interval(START + timedelta(hours=1), START, **kwargs) == 10.0
    assert poll_interval(START + timedelta(seconds=90), START, **kwargs) == 2.0
    assert poll_interval(START - timedelta(seconds=5), START, **kwargs) == 2.0
    assert poll_interval(None, START, **kwargs) == 10.0


def _frames(*events: Event) -> bytes:
    return "".join(event.sse_frame() for event in events).encode()


def _client(handler, **kwargs) -> tuple[AuctionFeedClient, list[float]]:
    delays: list[float] = []

    async def fast_sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://livebid")
    client = AuctionFeedClient(
        "http://livebid",
        "auc_1",
        http_client=http,
        sleep=fast_sleep,
        clock=lambda: START,
        **kwargs,
    )
    return client, delays


def _status_body(minutes_left: int = 60) -> dict:
    return {
        "auction_id": "auc_1",
        "status": "open",
        "current_highest_bid": "550",
        "bid_count": 1,
        "end_time": (START + timedelta(minutes=minutes_left)).isoformat().replace("+00:00", "Z"),
    }


@pytest.mark.asyncio
async def test_client_delivers_stream_events_and_resets_attempts():
    received: list[Event] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = _frames(Event(EventType.CONNECTED, {"topic": "auction:auc_1"}), bid_event("600"))
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    client, _ = _client(handler, on_event=received.append)
    client.attempts = 3
    await client.stream_once()

    assert [event.type for event in received] == [EventType.CONNECTED, EventType.BID_PLACED]
    assert client.attempts == 0
    assert client.mode == "streaming"


@pytest.mark.asyncio
async def test_client_backs_off_then_falls_back_to_polling():
    snapshots: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/events/"):
            return httpx.Response(503)
        return httpx.Response(200, json=_status_body(minutes_left=1))

    config = ClientConfig(reconnect_base_ms=1000, reconnect_max_ms=30000, max_reconnect_attempts=3)
    client, delays = _client(handler, config=config)

    def on_snapshot(snapshot: dict) -> None:
        snapshots.append(snapshot)
        client.stop()

    client._on_snapshot = on_snapshot
    await asyncio.wait_for(client.run(), 1)

    assert delays == [1.0, 2.0, 4.0, 2.0]
    assert client.mode == "polling"
    assert snapshots[0]["current_highest_bid"] == "550"


@pytest.mark.asyncio
async def test_broker_outage_polls_until_broker_returns():
    polls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/status"):
            polls.append(request.url.path)
            return httpx.Response(200, json=_status_body())
        body = _frames(
            Event(EventType.CONNECTED, {"topic": "auction:auc_1"}),
            Event(EventType.BROKER_STATUS, {"connected": False}),
        )
        return httpx.Response(200, content=body)

    client, _ = _client(handler)
    await client.stream_once()
    assert client.mode == "polling"
    assert not client.broker_up

    for _ in range(5):
        await asyncio.sleep(0)
    assert polls

    client._handle(Event(EventType.BROKER_STATUS, {"connected": True}))
    assert client.mode == "streaming"
    assert client.broker_up
    await client.aclose()


@pytest.mark.asyncio
async def test_connected_frame_reports_broker_state():
    hub = SubscriptionHub()
    down = sse_stream(hub, "auction:auc_1", broker_connected=lambda: False)
    payload = parse_sse_lines((await down.__anext__()).split("\n"))[0].payload
    assert payload == {"topic": "auction:auc_1", "broker_connected": False, "fallback_polling": True}
    await down.aclose()

    local = sse_stream(hub, "auction:auc_1")
    payload = parse_sse_lines((await local.__anext__()).split("\n"))[0].payload
    assert payload["broker_connected"] is True
    assert payload["fallback_polling"] is False
    await local.aclose()


@pytest.mark.asyncio
async def test_client_joining_during_broker_outage_polls():
    polls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/status"):
            polls.append(request.url.path)
            return httpx.Response(200, json=_status_body())
        body = _frames(
            Event(
                EventType.CONNECTED,
                {"topic": "auction:auc_1", "broker_connected": False, "fallback_polling": True},
            )
        )
        return httpx.Response(200, content=body)

    client, _ = _client(handler)
    await client.stream_once()
    assert client.mode == "polling"
    assert not client.broker_up

    for _ in range(5):
        await asyncio.sleep(0)
    assert polls
    await client.aclose()


@pytest.mark.asyncio
async def test_reconnect_keeps_polling_while_broker_down():
    client, _ = _client(lambda request: httpx.Response(200, json=_status_body()))
    client._handle(Event(EventType.BROKER_STATUS, {"connected": False}))
    client.attempts = 2

    client._handle(Event(EventType.CONNECTED, {"topic": "auction:auc_1"}))
    assert client.attempts == 0
    assert client.mode == "polling"

    client._handle(Event(EventType.CONNECTED, {"topic": "auction:auc_1", "broker_connected": True}))
    assert client.mode == "streaming"
    assert client.broker_up
    await client.aclose()
