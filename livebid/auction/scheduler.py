"""Background sweeps: close auctions whose clock ran out and audit cached state."""

from __future__ import annotations

import asyncio
import logging

from .engine import BiddingEngine
from .errors import AuctionError
from .models import Auction, AuctionStatus

logger = logging.getLogger(__name__)


class AuctionScheduler:
    def __init__(
        self,
        engine: BiddingEngine,
        *,
        expiry_sweep_seconds: float = 1.0,
        integrity_sweep_seconds: float = 60.0,
    ) -> None:
        self._engine = engine
        self._expiry_interval = expiry_sweep_seconds
        self._integrity_interval = integrity_sweep_seconds
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._every(self._expiry_interval, self.sweep_expired)),
            loop.create_task(self._every(self._integrity_interval, self.sweep_integrity)),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _every(self, interval: float, sweep) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await sweep()
            except Exception:
                logger.error("scheduled sweep %s failed", sweep.__name__, exc_info=True)

    async def _open_auctions(self) -> list[Auction]:
        auctions = [Auction.from_dict(item) for item in await self._engine.storage.list_auctions()]
        return [auction for auction in auctions if auction.status is AuctionStatus.OPEN]

    async def sweep_expired(self) -> int:
        """Settle or end every open auction past its end time; returns how many changed."""
        now = self._engine.now()
        changed = 0
        for auction in await self._open_auctions():
            if now < auction.end_time:
                continue
            try:
                outcome = await self._engine.expire_if_due(auction.id)
            except AuctionError as exc:
                logger.warning("expiry of %s deferred: %s", auction.id, exc)
                continue
            if outcome.changed:
                changed += 1
        return changed

    async def sweep_integrity(self) -> list[str]:
        auction_ids = [item["id"] for item in await self._engine.storage.list_auctions()]
        return await self.verify(auction_ids)

    async def verify(self, auction_ids: list[str]) -> list[str]:
        """Returns ids of auctions whose cached state had to be rebuilt."""
        repaired = []
        for auction_id in auction_ids:
            try:
                consistent = await self._engine.verify_integrity(auction_id)
            except AuctionError as exc:
                logger.warning("integrity check of %s deferred: %s", auction_id, exc)
                continue
            if not consistent:
                repaired.append(auction_id)
        return repaired
