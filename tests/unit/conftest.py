"""Shared fixtures: an in-memory engine wired to a local hub with a controllable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from livebid.auction.engine import BiddingEngine
from livebid.auction.models import Listing
from livebid.auction.serializer import KeyedSerializer
from livebid.collaborators.notifications import NotificationDispatcher
from livebid.disputes.workflow import DisputeWorkflow
from livebid.realtime.distributor import EventDistributor
from livebid.realtime.hub import SubscriptionHub
from livebid.storage.in_memory import InMemoryStorage

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def hub() -> SubscriptionHub:
    return SubscriptionHub(queue_size=64)


@pytest.fixture
def distributor(hub) -> EventDistributor:
    return EventDistributor(hub, backend="local")


@pytest.fixture
def sink() -> AsyncMock:
    sink = AsyncMock()
    sink.send = AsyncMock()
    return sink


@pytest.fixture
def notifier(sink) -> NotificationDispatcher:
    return NotificationDispatcher(sink)


@pytest.fixture
def serializer() -> KeyedSerializer:
    return KeyedSerializer(max_pending=64, slot_timeout_ms=2000)


@pytest.fixture
def engine(storage, serializer, distributor, notifier, clock) -> BiddingEngine:
    return BiddingEngine(
        storage,
        serializer,
        distributor,
        notifier,
        restart_window_seconds=3600,
        clock=clock,
    )


@pytest.fixture
def workflow(engine, distributor, notifier) -> DisputeWorkflow:
    return DisputeWorkflow(engine, distributor, notifier)


def make_listing(
    auction_id: str = "auc_1",
    *,
    seller_id: str = "seller",
    starting_price: str = "500",
    bid_increment: str = "50",
    end_time: datetime = START + timedelta(hours=1),
) -> Listing:
    return Listing(
        auction_id=auction_id,
        seller_id=seller_id,
        starting_price=Decimal(starting_price),
        bid_increment=Decimal(bid_increment),
        end_time=end_time,
    )
