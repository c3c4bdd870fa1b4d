"""Void requests and the seller's remediation after an approved void.

Every mutation re-reads its records inside the owning auction's serializer
lane, so a dispute step and a bid on the same auction never interleave.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from ..auction.engine import BiddingEngine, highest_bid
from ..auction.errors import (
    AlreadyResolved,
    NoSecondBidderAvailable,
    NotAParty,
    NotFound,
    VoidAlreadyPending,
    WrongState,
)
from ..auction.models import (
    Auction,
    Bid,
    OfferStatus,
    Remediation,
    SecondBidderOffer,
    Transaction,
    TransactionStatus,
    VoidRequest,
    VoidStatus,
)
from ..collaborators.notifications import NotificationDispatcher
from ..realtime.events import Event, EventPublisher, EventType, auction_topic, user_topic
from .fsm import AWAITING_SELLER, TERMINAL_STAGES, DisputeAction, DisputeStage, transition

logger = logging.getLogger(__name__)

VOIDABLE_STATUSES = frozenset({TransactionStatus.PENDING, TransactionStatus.IN_PROGRESS})

_FORWARD_ORDER = [
    TransactionStatus.PENDING,
    TransactionStatus.IN_PROGRESS,
    TransactionStatus.COMPLETED,
]


def _parse(enum_cls, value: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise WrongState(f"unknown {enum_cls.__name__} {value!r}") from exc


def pick_second_bidder(
    bids: list[Bid], *, voided_amount, voided_buyer_id: str, excluded: set[str]
) -> Bid | None:
    """Highest bid below the voided amount from someone still eligible."""
    eligible = [
        bid
        for bid in bids
        if bid.amount < voided_amount
        and bid.bidder_id != voided_buyer_id
        and bid.bidder_id not in excluded
    ]
    return highest_bid(eligible)


class DisputeWorkflow:
    def __init__(
        self,
        engine: BiddingEngine,
        publisher: EventPublisher,
        notifier: NotificationDispatcher | None = None,
    ) -> None:
        self._engine = engine
        self._storage = engine.storage
        self._publisher = publisher
        self._notifier = notifier

    # Reads ---------------------------------------------------------------------

    async def get_transaction(self, transaction_id: str) -> Transaction:
        try:
            return Transaction.from_dict(await self._storage.get_transaction(transaction_id))
        except KeyError as exc:
            raise NotFound(
                f"transaction {transaction_id} not found", transaction_id=transaction_id
            ) from exc

    async def get_void_request(self, void_request_id: str) -> VoidRequest:
        try:
            return VoidRequest.from_dict(await self._storage.get_void_request(void_request_id))
        except KeyError as exc:
            raise NotFound(
                f"void request {void_request_id} not found", void_request_id=void_request_id
            ) from exc

    async def list_void_requests(self, transaction_id: str) -> list[VoidRequest]:
        await self.get_transaction(transaction_id)
        requests = [
            VoidRequest.from_dict(item)
            for item in await self._storage.list_void_requests(transaction_id)
        ]
        return sorted(requests, key=lambda request: request.created_at)

    # Void request lifecycle ----------------------------------------------------

    async def request_void(
        self, transaction_id: str, initiator_id: str, reason: str
    ) -> VoidRequest:
        transaction = await self.get_transaction(transaction_id)

        async def _request() -> VoidRequest:
            current = await self.get_transaction(transaction_id)
            if current.counterparty(initiator_id) is None:
                raise NotAParty(f"{initiator_id} is not a party to {transaction_id}")
            if current.status not in VOIDABLE_STATUSES:
                raise WrongState(
                    f"transaction {transaction_id} is {current.status.value}",
                    status=current.status.value,
                )
            for existing in await self._storage.list_void_requests(transaction_id):
                if existing["status"] == VoidStatus.PENDING.value:
                    raise VoidAlreadyPending(
                        f"transaction {transaction_id} already has a pending void request",
                        void_request_id=existing["id"],
                    )
            now = self._engine.now()
            request = VoidRequest(
                id=f"void_{uuid.uuid4().hex}",
                transaction_id=transaction_id,
                auction_id=current.auction_id,
                initiator_id=initiator_id,
                reason=reason,
                stage=DisputeStage.VOID_PENDING.value,
                created_at=now,
                updated_at=now,
            )
            await self._storage.save_void_request(request.to_dict())
            logger.info("void request %s opened on %s by %s", request.id, transaction_id, initiator_id)

            payload = {"auction_id": current.auction_id, "void_request": request.to_dict()}
            self._publish_to_parties(current, Event(EventType.VOID_REQUESTED, payload))
            self._notify(current.counterparty(initiator_id), "void_request", payload)
            return request

        return await self._engine.serialized(transaction.auction_id, _request)

    async def respond_to_void(
        self,
        void_request_id: str,
        responder_id: str,
        action: str,
        rejection_reason: str | None = None,
    ) -> VoidRequest:
        decision = _parse(DisputeAction, action)
        if decision not in (DisputeAction.APPROVE, DisputeAction.REJECT):
            raise WrongState(f"{action} is not a response to a void request")
        request = await self.get_void_request(void_request_id)

        async def _respond() -> VoidRequest:
            current = await self.get_void_request(void_request_id)
            transaction = await self.get_transaction(current.transaction_id)
            if (
                responder_id == current.initiator_id
                or transaction.counterparty(responder_id) is None
            ):
                raise NotAParty(f"{responder_id} cannot answer void request {void_request_id}")
            if current.status is not VoidStatus.PENDING:
                raise AlreadyResolved(
                    f"void request {void_request_id} is {current.status.value}",
                    status=current.status.value,
                )
            current.stage = transition(DisputeStage(current.stage), decision).value
            current.updated_at = self._engine.now()

            if decision is DisputeAction.REJECT:
                current.status = VoidStatus.REJECTED
                current.rejection_reason = rejection_reason
                await self._storage.save_void_request(current.to_dict())
                logger.info("void request %s rejected by %s", void_request_id, responder_id)
                payload = {"auction_id": current.auction_id, "void_request": current.to_dict()}
                self._publish_to_parties(transaction, Event(EventType.VOID_REJECTED, payload))
                self._notify(current.initiator_id, "void_response", payload)
                return current

            current.status = VoidStatus.APPROVED
            transaction.status = TransactionStatus.CANCELLED
            transaction.updated_at = current.updated_at
            await self._storage.save_transaction(transaction.to_dict())
            await self._storage.save_void_request(current.to_dict())
            auction = await self._engine.load_auction(current.auction_id)
            await self._engine.apply_void_hold(auction, current.id)
            logger.info(
                "void request %s approved; transaction %s cancelled",
                void_request_id,
                transaction.id,
            )
            payload = {
                "auction_id": current.auction_id,
                "transaction_id": transaction.id,
                "void_request": current.to_dict(),
            }
            event = Event(EventType.VOIDED, payload)
            self._publisher.publish(auction_topic(current.auction_id), event)
            self._publish_to_parties(transaction, event)
            self._notify(current.initiator_id, "void_response", payload)
            return current

        return await self._engine.serialized(request.auction_id, _respond)

    # Seller remediation --------------------------------------------------------

    async def choose_remediation(
        self, void_request_id: str, seller_id: str, choice: str
    ) -> VoidRequest:
        remediation = _parse(Remediation, choice)
        if remediation is Remediation.NONE:
            raise WrongState("a remediation must be chosen")
        request = await self.get_void_request(void_request_id)

        async def _choose() -> VoidRequest:
            current = await self.get_void_request(void_request_id)
            auction = await self._engine.load_auction(current.auction_id)
            self._require_seller_decision(current, auction, seller_id)
            if remediation is Remediation.RESTART_BIDDING:
                return await self._restart(current, auction)
            return await self._offer_second_bidder(current, auction)

        return await self._engine.serialized(request.auction_id, _choose)

    async def _restart(self, request: VoidRequest, auction: Auction) -> VoidRequest:
        request.stage = transition(DisputeStage(request.stage), DisputeAction.RESTART).value
        request.remediation = Remediation.RESTART_BIDDING
        request.updated_at = self._engine.now()
        await self._engine.apply_restart(auction)
        await self._storage.save_void_request(request.to_dict())
        logger.info("void request %s resolved by restarting %s", request.id, auction.id)
        return request

    async def _offer_second_bidder(self, request: VoidRequest, auction: Auction) -> VoidRequest:
        voided = await self.get_transaction(request.transaction_id)
        candidate = pick_second_bidder(
            await self._engine.round_bids(auction),
            voided_amount=voided.amount,
            voided_buyer_id=voided.buyer_id,
            excluded=set(request.declined_bidders),
        )
        if candidate is None:
            raise NoSecondBidderAvailable(
                f"auction {auction.id} has no eligible bid below {voided.amount}"
            )
        request.stage = transition(
            DisputeStage(request.stage), DisputeAction.OFFER_SECOND_BIDDER
        ).value
        request.remediation = Remediation.OFFER_SECOND_BIDDER
        request.second_bidder_offer = SecondBidderOffer(
            bidder_id=candidate.bidder_id, amount=candidate.amount, bid_id=candidate.id
        )
        request.updated_at = self._engine.now()
        await self._storage.save_void_request(request.to_dict())
        logger.info(
            "void request %s: offered %s to %s", request.id, candidate.amount, candidate.bidder_id
        )
        payload = {
            "auction_id": auction.id,
            "void_request_id": request.id,
            "offer": request.second_bidder_offer.to_dict(),
        }
        event = Event(EventType.SECOND_BIDDER_OFFERED, payload)
        self._publisher.publish(auction_topic(auction.id), event)
        self._publisher.publish(user_topic(candidate.bidder_id), event)
        self._notify(candidate.bidder_id, "second_bidder_offer", payload)
        return request

    async def respond_to_second_bidder_offer(
        self, void_request_id: str, bidder_id: str, action: str
    ) -> VoidRequest:
        accept = {"accept": True, "decline": False}.get(action)
        if accept is None:
            raise WrongState(f"{action} is not a response to an offer")
        request = await self.get_void_request(void_request_id)

        async def _respond() -> VoidRequest:
            current = await self.get_void_request(void_request_id)
            stage = DisputeStage(current.stage)
            if stage is not DisputeStage.SECOND_BIDDER_PENDING or current.second_bidder_offer is None:
                raise WrongState(
                    f"void request {void_request_id} has no open offer", stage=stage.value
                )
            offer = current.second_bidder_offer
            if offer.bidder_id != bidder_id:
                raise NotAParty(f"the offer on {void_request_id} was not made to {bidder_id}")
            auction = await self._engine.load_auction(current.auction_id)
            current.updated_at = self._engine.now()

            if accept:
                transaction = await self._engine.apply_resettlement(
                    auction, buyer_id=bidder_id, amount=offer.amount, bid_id=offer.bid_id
                )
                current.stage = transition(stage, DisputeAction.SECOND_BIDDER_ACCEPT).value
                current.second_bidder_offer = offer.with_status(OfferStatus.ACCEPTED)
                current.replacement_transaction_id = transaction.id
                await self._storage.save_void_request(current.to_dict())
                self._notify(
                    auction.seller_id,
                    "second_bidder_response",
                    {"auction_id": auction.id, "accepted": True, "transaction": transaction.to_dict()},
                )
                return current

            current.stage = transition(stage, DisputeAction.SECOND_BIDDER_DECLINE).value
            current.second_bidder_offer = offer.with_status(OfferStatus.DECLINED)
            current.declined_bidders.append(bidder_id)
            await self._storage.save_void_request(current.to_dict())
            logger.info("void request %s: %s declined the offer", void_request_id, bidder_id)
            payload = {
                "auction_id": auction.id,
                "void_request_id": current.id,
                "offer": current.second_bidder_offer.to_dict(),
            }
            event = Event(EventType.SECOND_BIDDER_DECLINED, payload)
            self._publisher.publish(auction_topic(auction.id), event)
            self._publisher.publish(user_topic(auction.seller_id), event)
            self._notify(auction.seller_id, "second_bidder_response", {**payload, "accepted": False})
            return current

        return await self._engine.serialized(request.auction_id, _respond)

    async def close_unsold(
        self, void_request_id: str, actor_id: str, *, is_admin: bool = False
    ) -> VoidRequest:
        request = await self.get_void_request(void_request_id)

        async def _close() -> VoidRequest:
            current = await self.get_void_request(void_request_id)
            auction = await self._engine.load_auction(current.auction_id)
            self._require_seller_decision(
                current, auction, auction.seller_id if is_admin else actor_id
            )
            current.stage = transition(DisputeStage(current.stage), DisputeAction.CLOSE).value
            current.updated_at = self._engine.now()
            await self._engine.apply_close(auction, reason="void_unsold")
            await self._storage.save_void_request(current.to_dict())
            logger.info("void request %s closed unsold by %s", void_request_id, actor_id)
            return current

        return await self._engine.serialized(request.auction_id, _close)

    def _require_seller_decision(
        self, request: VoidRequest, auction: Auction, actor_id: str
    ) -> None:
        if actor_id != auction.seller_id:
            raise NotAParty(f"only the seller can resolve void request {request.id}")
        stage = DisputeStage(request.stage)
        if stage in TERMINAL_STAGES:
            raise AlreadyResolved(f"void request {request.id} is {stage.value}", stage=stage.value)
        if stage not in AWAITING_SELLER:
            raise WrongState(
                f"void request {request.id} is not awaiting the seller", stage=stage.value
            )

    # Transaction lifecycle -----------------------------------------------------

    async def advance_transaction(
        self, transaction_id: str, actor_id: str, status: str
    ) -> Transaction:
        target = _parse(TransactionStatus, status)
        if target not in _FORWARD_ORDER:
            raise WrongState(f"transactions cannot be moved to {target.value} directly")
        transaction = await self.get_transaction(transaction_id)

        async def _advance() -> Transaction:
            current = await self.get_transaction(transaction_id)
            if current.counterparty(actor_id) is None:
                raise NotAParty(f"{actor_id} is not a party to {transaction_id}")
            if current.status not in _FORWARD_ORDER or _FORWARD_ORDER.index(
                target
            ) <= _FORWARD_ORDER.index(current.status):
                raise WrongState(
                    f"transaction {transaction_id} cannot go from "
                    f"{current.status.value} to {target.value}",
                    status=current.status.value,
                )
            for existing in await self._storage.list_void_requests(transaction_id):
                if existing["status"] == VoidStatus.PENDING.value:
                    raise VoidAlreadyPending(
                        f"transaction {transaction_id} has a pending void request",
                        void_request_id=existing["id"],
                    )
            current.status = target
            current.updated_at = self._engine.now()
            await self._storage.save_transaction(current.to_dict())
            logger.info("transaction %s moved to %s by %s", transaction_id, target.value, actor_id)
            self._notify(
                current.counterparty(actor_id),
                "transaction_status",
                {"transaction": current.to_dict()},
            )
            return current

        return await self._engine.serialized(transaction.auction_id, _advance)

    def _publish_to_parties(self, transaction: Transaction, event: Event) -> None:
        for user_id in transaction.parties():
            self._publisher.publish(user_topic(user_id), event)

    def _notify(self, user_id: str | None, event_type: str, payload: dict[str, Any]) -> None:
        if self._notifier is not None and user_id is not None:
            self._notifier.notify(user_id, event_type, payload)
