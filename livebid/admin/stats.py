"""Operational stats endpoint."""

from __future__ import annotations

from collections import Counter
from typing import Any

from fastapi import APIRouter, Depends, Request

from ..auction.serializer import KeyedSerializer
from ..realtime.distributor import EventDistributor
from ..storage import AuctionStorage

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_storage(request: Request) -> AuctionStorage:
    return request.app.state.storage


def _get_distributor(request: Request) -> EventDistributor:
    return request.app.state.distributor


def _get_serializer(request: Request) -> KeyedSerializer:
    return request.app.state.serializer


@router.get("/stats")
async def stats(
    storage: AuctionStorage = Depends(_get_storage),
    distributor: EventDistributor = Depends(_get_distributor),
    serializer: KeyedSerializer = Depends(_get_serializer),
) -> dict[str, Any]:
    auctions = await storage.list_auctions()
    auctions_by_status: Counter[str] = Counter(item["status"] for item in auctions)
    transactions_by_status: Counter[str] = Counter()
    total_bids = 0
    for auction in auctions:
        total_bids += len(await storage.list_bids(auction["id"]))
        for transaction in await storage.list_transactions(auction["id"]):
            transactions_by_status[transaction["status"]] += 1

    hub = distributor.hub
    return {
        "total_auctions": len(auctions),
        "auctions_by_status": dict(auctions_by_status),
        "total_bids": total_bids,
        "transactions_by_status": dict(transactions_by_status),
        "active_lanes": serializer.active_keys,
        "subscribers": hub.subscriber_count(),
        "topics": len(hub.topics()),
        "events_delivered": hub.delivered,
        "events_dropped": hub.dropped,
        "fanout_failures": distributor.failures,
    }
