"""Per-auction bid ordering and settlement.

All mutations for one auction run inside that auction's serializer lane, so
each bid is evaluated against the highest bid committed before it and an
accept never races a bid that arrived a moment earlier. The cached
``current_highest_bid`` on the auction is a projection of the bid ledger and
is recomputed inside the lane rather than trusted.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from ..collaborators.notifications import NotificationDispatcher
from ..realtime.events import Event, EventPublisher, EventType, auction_topic, user_topic
from ..storage import AuctionStorage
from .errors import (
    AmountTooLow,
    AuctionClosed,
    AuctionExpired,
    InvalidAmount,
    NoBids,
    NotAuctionOwner,
    NotFound,
    SellerCannotBid,
    WrongState,
)
from .models import (
    Auction,
    AuctionSnapshot,
    AuctionStatus,
    Bid,
    BidOutcome,
    ExpiryOutcome,
    Listing,
    Transaction,
    parse_amount,
    utcnow,
)
from .serializer import KeyedSerializer

logger = logging.getLogger(__name__)

T = TypeVar("T")


def highest_bid(bids: Iterable[Bid]) -> Bid | None:
    return max(bids, key=lambda bid: bid.amount, default=None)


class BiddingEngine:
    def __init__(
        self,
        storage: AuctionStorage,
        serializer: KeyedSerializer,
        publisher: EventPublisher,
        notifier: NotificationDispatcher | None = None,
        *,
        restart_window_seconds: int = 86400,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._serializer = serializer
        self._publisher = publisher
        self._notifier = notifier
        self._restart_window = timedelta(seconds=restart_window_seconds)
        self._clock = clock

    @property
    def storage(self) -> AuctionStorage:
        return self._storage

    def now(self) -> datetime:
        return self._clock()

    async def serialized(self, auction_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self._serializer.run(auction_id, operation)

    # Reads ---------------------------------------------------------------------

    async def load_auction(self, auction_id: str) -> Auction:
        try:
            return Auction.from_dict(await self._storage.get_auction(auction_id))
        except KeyError as exc:
            raise NotFound(f"auction {auction_id} not found", auction_id=auction_id) from exc

    async def all_bids(self, auction_id: str) -> list[Bid]:
        return [Bid.from_dict(item) for item in await self._storage.list_bids(auction_id)]

    async def round_bids(self, auction: Auction) -> list[Bid]:
        """Bids that still count toward settlement (current round only)."""
        return [bid for bid in await self.all_bids(auction.id) if bid.round == auction.round]

    async def active_transaction(self, auction_id: str) -> Transaction | None:
        for item in await self._storage.list_transactions(auction_id):
            transaction = Transaction.from_dict(item)
            if transaction.is_active:
                return transaction
        return None

    async def get_auction_status(self, auction_id: str) -> AuctionSnapshot:
        auction = await self.load_auction(auction_id)
        bids = await self.round_bids(auction)
        top = highest_bid(bids)
        return AuctionSnapshot(
            auction_id=auction.id,
            status=auction.status,
            current_highest_bid=top.amount if top else None,
            bid_count=len(bids),
            last_bid_at=bids[-1].submitted_at if bids else None,
            end_time=auction.end_time,
            round=auction.round,
        )

    async def list_bids(self, auction_id: str) -> list[dict[str, Any]]:
        await self.load_auction(auction_id)
        return [bid.public_view() for bid in await self.all_bids(auction_id)]

    # Mutations -----------------------------------------------------------------

    async def open_auction(self, listing: Listing) -> Auction:
        if listing.bid_increment <= 0:
            raise InvalidAmount("bid increment must be positive")
        if listing.starting_price <= 0:
            raise InvalidAmount("starting price must be positive")

        async def _open() -> Auction:
            try:
                return await self.load_auction(listing.auction_id)
            except NotFound:
                pass
            auction = Auction(
                id=listing.auction_id,
                seller_id=listing.seller_id,
                starting_price=listing.starting_price,
                bid_increment=listing.bid_increment,
                end_time=listing.end_time,
            )
            await self._storage.save_auction(auction.to_dict())
            logger.info("auction %s opened by %s", auction.id, auction.seller_id)
            return auction

        return await self.serialized(listing.auction_id, _open)

    async def submit_bid(
        self,
        auction_id: str,
        bidder_id: str,
        amount: Any,
        *,
        mask_name: bool = False,
    ) -> BidOutcome:
        try:
            value = parse_amount(amount)
        except ValueError as exc:
            raise InvalidAmount(str(exc)) from exc
        return await self.serialized(
            auction_id, lambda: self._apply_bid(auction_id, bidder_id, value, mask_name)
        )

    async def _apply_bid(
        self, auction_id: str, bidder_id: str, amount: Decimal, mask_name: bool
    ) -> BidOutcome:
        auction = await self.load_auction(auction_id)
        if auction.status is not AuctionStatus.OPEN:
            raise AuctionClosed(
                f"auction {auction_id} is {auction.status.value}", status=auction.status.value
            )
        now = self.now()
        if now >= auction.end_time:
            raise AuctionExpired(f"auction {auction_id} has ended")
        if bidder_id == auction.seller_id:
            raise SellerCannotBid("sellers cannot bid on their own auction")
        bids = await self.round_bids(auction)
        previous = highest_bid(bids)
        minimum = (
            auction.starting_price if previous is None else previous.amount + auction.bid_increment
        )
        if amount < minimum:
            raise AmountTooLow(
                f"bid must be at least {minimum}",
                minimum=minimum,
                current_highest=previous.amount if previous else None,
            )
        bid = Bid(
            id=f"bid_{uuid.uuid4().hex}",
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=amount,
            submitted_at=now,
            display_name_masked=mask_name,
            round=auction.round,
        )
        await self._storage.append_bid(bid.to_dict())
        auction.current_highest_bid = amount
        auction.last_bid_at = now
        auction.updated_at = now
        await self._storage.save_auction(auction.to_dict())
        logger.info("bid %s on %s: %s by %s", bid.id, auction_id, amount, bidder_id)

        self._publisher.publish(
            auction_topic(auction_id),
            Event(
                EventType.BID_PLACED,
                {
                    "auction_id": auction_id,
                    "bid": bid.public_view(),
                    "current_highest_bid": str(amount),
                    "bid_count": len(bids) + 1,
                },
            ),
        )
        if previous is not None and previous.bidder_id != bidder_id:
            self._notify(
                previous.bidder_id,
                "outbid",
                {"auction_id": auction_id, "amount": str(amount)},
            )
        return BidOutcome(accepted=True, new_highest=amount, bid=bid)

    async def accept_highest_bid(self, auction_id: str, seller_id: str) -> Transaction:
        async def _accept() -> Transaction:
            auction = await self.load_auction(auction_id)
            if auction.seller_id != seller_id:
                raise NotAuctionOwner(f"{seller_id} does not own auction {auction_id}")
            if auction.status is not AuctionStatus.OPEN:
                raise AuctionClosed(
                    f"auction {auction_id} is {auction.status.value}", status=auction.status.value
                )
            bids = await self.round_bids(auction)
            if not bids:
                raise NoBids(f"auction {auction_id} has no bids to accept")
            return await self._settle(auction, bids, trigger="accepted")

        return await self.serialized(auction_id, _accept)

    async def expire_if_due(self, auction_id: str) -> ExpiryOutcome:
        async def _expire() -> ExpiryOutcome:
            auction = await self.load_auction(auction_id)
            if auction.status is not AuctionStatus.OPEN or self.now() < auction.end_time:
                return ExpiryOutcome(changed=False, status=auction.status)
            bids = await self.round_bids(auction)
            if bids:
                transaction = await self._settle(auction, bids, trigger="expired")
                return ExpiryOutcome(changed=True, status=AuctionStatus.SOLD, transaction=transaction)
            await self.apply_close(auction, reason="expired")
            return ExpiryOutcome(changed=True, status=AuctionStatus.ENDED)

        return await self.serialized(auction_id, _expire)

    async def verify_integrity(self, auction_id: str) -> bool:
        """Rebuild the cached fields from the ledger; False when a repair was needed."""

        async def _verify() -> bool:
            auction = await self.load_auction(auction_id)
            bids = await self.round_bids(auction)
            top = highest_bid(bids)
            expected = top.amount if top else None
            consistent = True
            if auction.current_highest_bid != expected:
                logger.error(
                    "auction %s cached highest %s disagrees with ledger %s; rebuilding",
                    auction_id,
                    auction.current_highest_bid,
                    expected,
                )
                auction.current_highest_bid = expected
                auction.last_bid_at = bids[-1].submitted_at if bids else None
                consistent = False
            if auction.status is AuctionStatus.OPEN and await self.active_transaction(auction_id):
                logger.error("auction %s is open with an active transaction; marking sold", auction_id)
                auction.status = AuctionStatus.SOLD
                consistent = False
            if not consistent:
                auction.updated_at = self.now()
                await self._storage.save_auction(auction.to_dict())
            return consistent

        return await self.serialized(auction_id, _verify)

    # Settlement paths. Callers must already hold the auction's lane. -----------

    async def _settle(self, auction: Auction, bids: list[Bid], *, trigger: str) -> Transaction:
        winner = highest_bid(bids)
        transaction = await self.create_transaction(
            auction, buyer_id=winner.bidder_id, amount=winner.amount, bid_id=winner.id
        )
        logger.info(
            "auction %s settled (%s) to %s at %s", auction.id, trigger, winner.bidder_id, winner.amount
        )
        self._publish_accepted(auction, transaction, trigger=trigger)
        return transaction

    async def create_transaction(
        self, auction: Auction, *, buyer_id: str, amount: Decimal, bid_id: str | None
    ) -> Transaction:
        existing = await self.active_transaction(auction.id)
        if existing is not None:
            raise WrongState(
                f"auction {auction.id} already has active transaction {existing.id}",
                transaction_id=existing.id,
            )
        now = self.now()
        transaction = Transaction(
            id=f"txn_{uuid.uuid4().hex}",
            auction_id=auction.id,
            seller_id=auction.seller_id,
            buyer_id=buyer_id,
            amount=amount,
            bid_id=bid_id,
            created_at=now,
            updated_at=now,
        )
        await self._storage.save_transaction(transaction.to_dict())
        auction.status = AuctionStatus.SOLD
        auction.pending_void_request_id = None
        auction.updated_at = now
        await self._storage.save_auction(auction.to_dict())
        return transaction

    def _publish_accepted(self, auction: Auction, transaction: Transaction, *, trigger: str) -> None:
        payload = {
            "auction_id": auction.id,
            "status": AuctionStatus.SOLD.value,
            "trigger": trigger,
            "transaction": transaction.to_dict(),
        }
        event = Event(EventType.ACCEPTED, payload)
        self._publisher.publish(auction_topic(auction.id), event)
        for user_id in transaction.parties():
            self._publisher.publish(user_topic(user_id), event)
        self._notify(transaction.buyer_id, "auction_won", payload)
        self._notify(transaction.seller_id, "auction_sold", payload)

    async def apply_resettlement(
        self, auction: Auction, *, buyer_id: str, amount: Decimal, bid_id: str | None
    ) -> Transaction:
        transaction = await self.create_transaction(
            auction, buyer_id=buyer_id, amount=amount, bid_id=bid_id
        )
        logger.info("auction %s re-settled to %s at %s", auction.id, buyer_id, amount)
        self._publish_accepted(auction, transaction, trigger="second_bidder")
        return transaction

    async def apply_void_hold(self, auction: Auction, void_request_id: str) -> Auction:
        """Keep the auction closed to bids while the seller picks a remediation."""
        auction.status = AuctionStatus.SOLD
        auction.pending_void_request_id = void_request_id
        auction.updated_at = self.now()
        await self._storage.save_auction(auction.to_dict())
        return auction

    async def apply_restart(self, auction: Auction) -> Auction:
        now = self.now()
        prior_bidders = sorted({bid.bidder_id for bid in await self.all_bids(auction.id)})
        auction.status = AuctionStatus.OPEN
        auction.round += 1
        auction.current_highest_bid = None
        auction.last_bid_at = None
        auction.pending_void_request_id = None
        auction.end_time = now + self._restart_window
        auction.updated_at = now
        await self._storage.save_auction(auction.to_dict())
        logger.info("auction %s reopened for round %s", auction.id, auction.round)

        payload = {
            "auction_id": auction.id,
            "status": AuctionStatus.OPEN.value,
            "round": auction.round,
            "end_time": auction.to_dict()["end_time"],
        }
        event = Event(EventType.RESTARTED, payload)
        self._publisher.publish(auction_topic(auction.id), event)
        for bidder_id in prior_bidders:
            self._publisher.publish(user_topic(bidder_id), event)
            self._notify(bidder_id, "auction_restarted", payload)
        return auction

    async def apply_close(self, auction: Auction, *, reason: str) -> Auction:
        auction.status = AuctionStatus.ENDED
        auction.pending_void_request_id = None
        auction.updated_at = self.now()
        await self._storage.save_auction(auction.to_dict())
        logger.info("auction %s ended unsold (%s)", auction.id, reason)
        payload = {"auction_id": auction.id, "status": AuctionStatus.ENDED.value, "reason": reason}
        self._publisher.publish(auction_topic(auction.id), Event(EventType.ENDED, payload))
        self._notify(auction.seller_id, "auction_ended", payload)
        return auction

    def _notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        if self._notifier is not None:
            self._notifier.notify(user_id, event_type, payload)
