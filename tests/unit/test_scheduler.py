"""Background expiry and integrity sweeps."""

from __future__ import annotations

import asyncio

import pytest

from conftest import make_listing
from livebid.auction.models import AuctionStatus
from livebid.auction.scheduler import AuctionScheduler


@pytest.mark.asyncio
async def test_sweep_expired_only_touches_due_auctions(engine, clock):
    await engine.open_auction(make_listing("due_with_bid"))
    await engine.open_auction(make_listing("due_empty"))
    await engine.open_auction(make_listing("later", end_time=clock.now.replace(year=2027)))
    await engine.submit_bid("due_with_bid", "alice", "550")
    scheduler = AuctionScheduler(engine)

    assert await scheduler.sweep_expired() == 0
    clock.advance(hours=1, seconds=1)
    assert await scheduler.sweep_expired() == 2
    assert await scheduler.sweep_expired() == 0

    statuses = {
        auction_id: (await engine.get_auction_status(auction_id)).status
        for auction_id in ("due_with_bid", "due_empty", "later")
    }
    assert statuses == {
        "due_with_bid": AuctionStatus.SOLD,
        "due_empty": AuctionStatus.ENDED,
        "later": AuctionStatus.OPEN,
    }


@pytest.mark.asyncio
async def test_sweep_integrity_reports_repairs(engine, storage):
    await engine.open_auction(make_listing("clean"))
    await engine.open_auction(make_listing("drifted"))
    await engine.submit_bid("drifted", "alice", "550")
    record = await storage.get_auction("drifted")
    record["current_highest_bid"] = None
    await storage.save_auction(record)

    scheduler = AuctionScheduler(engine)
    assert await scheduler.sweep_integrity() == ["drifted"]
    assert await scheduler.sweep_integrity() == []


@pytest.mark.asyncio
async def test_scheduler_runs_in_background_until_stopped(engine, clock):
    await engine.open_auction(make_listing())
    clock.advance(hours=2)
    scheduler = AuctionScheduler(engine, expiry_sweep_seconds=0.01, integrity_sweep_seconds=10)

    scheduler.start()
    assert scheduler.running
    for _ in range(50):
        if (await engine.get_auction_status("auc_1")).status is AuctionStatus.ENDED:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert not scheduler.running
    assert (await engine.get_auction_status("auc_1")).status is AuctionStatus.ENDED
