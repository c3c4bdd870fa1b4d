"""Shared auction data structures."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from ..transport.timestamps import format_timestamp, parse_timestamp


class AuctionStatus(str, Enum):
    OPEN = "open"
    SOLD = "sold"
    ENDED = "ended"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class VoidStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Remediation(str, Enum):
    NONE = "none"
    RESTART_BIDDING = "restart_bidding"
    OFFER_SECOND_BIDDER = "offer_second_bidder"


class OfferStatus(str, Enum):
    OFFERED = "offered"
    ACCEPTED = "accepted"
    DECLINED = "declined"


ACTIVE_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.PENDING, TransactionStatus.IN_PROGRESS, TransactionStatus.COMPLETED}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _amount(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return parse_timestamp(value)


@dataclass(frozen=True)
class Listing:
    auction_id: str
    seller_id: str
    starting_price: Decimal
    bid_increment: Decimal
    end_time: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Listing":
        return cls(
            auction_id=str(data["auction_id"]),
            seller_id=str(data["seller_id"]),
            starting_price=Decimal(str(data["starting_price"])),
            bid_increment=Decimal(str(data["bid_increment"])),
            end_time=_ts(data["end_time"]),
        )


@dataclass
class Auction:
    id: str
    seller_id: str
    starting_price: Decimal
    bid_increment: Decimal
    end_time: datetime
    status: AuctionStatus = AuctionStatus.OPEN
    current_highest_bid: Decimal | None = None
    last_bid_at: datetime | None = None
    round: int = 1
    pending_void_request_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "starting_price": str(self.starting_price),
            "bid_increment": str(self.bid_increment),
            "end_time": format_timestamp(self.end_time),
            "status": self.status.value,
            "current_highest_bid": (
                str(self.current_highest_bid) if self.current_highest_bid is not None else None
            ),
            "last_bid_at": format_timestamp(self.last_bid_at) if self.last_bid_at else None,
            "round": self.round,
            "pending_void_request_id": self.pending_void_request_id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Auction":
        return cls(
            id=data["id"],
            seller_id=data["seller_id"],
            starting_price=Decimal(data["starting_price"]),
            bid_increment=Decimal(data["bid_increment"]),
            end_time=_ts(data["end_time"]),
            status=AuctionStatus(data["status"]),
            current_highest_bid=_amount(data.get("current_highest_bid")),
            last_bid_at=_ts(data.get("last_bid_at")),
            round=int(data.get("round", 1)),
            pending_void_request_id=data.get("pending_void_request_id"),
            created_at=_ts(data.get("created_at")) or utcnow(),
            updated_at=_ts(data.get("updated_at")) or utcnow(),
        )


@dataclass(frozen=True)
class Bid:
    id: str
    auction_id: str
    bidder_id: str
    amount: Decimal
    submitted_at: datetime
    display_name_masked: bool = False
    round: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "auction_id": self.auction_id,
            "bidder_id": self.bidder_id,
            "amount": str(self.amount),
            "submitted_at": format_timestamp(self.submitted_at),
            "display_name_masked": self.display_name_masked,
            "round": self.round,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bid":
        return cls(
            id=data["id"],
            auction_id=data["auction_id"],
            bidder_id=data["bidder_id"],
            amount=Decimal(data["amount"]),
            submitted_at=_ts(data["submitted_at"]),
            display_name_masked=bool(data.get("display_name_masked", False)),
            round=int(data.get("round", 1)),
        )

    def public_view(self) -> dict[str, Any]:
        """Bid as shown to other viewers, hiding the bidder when masked."""
        view = self.to_dict()
        if self.display_name_masked:
            view["bidder_id"] = mask_identifier(self.bidder_id)
        return view


def mask_identifier(value: str) -> str:
    if len(value) <= 2:
        return "*" * len(value)
    return f"{value[0]}{'*' * (len(value) - 2)}{value[-1]}"


@dataclass
class Transaction:
    id: str
    auction_id: str
    seller_id: str
    buyer_id: str
    amount: Decimal
    bid_id: str | None = None
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TRANSACTION_STATUSES

    def parties(self) -> tuple[str, str]:
        return (self.seller_id, self.buyer_id)

    def counterparty(self, user_id: str) -> str | None:
        if user_id == self.seller_id:
            return self.buyer_id
        if user_id == self.buyer_id:
            return self.seller_id
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "auction_id": self.auction_id,
            "seller_id": self.seller_id,
            "buyer_id": self.buyer_id,
            "amount": str(self.amount),
            "bid_id": self.bid_id,
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transaction":
        return cls(
            id=data["id"],
            auction_id=data["auction_id"],
            seller_id=data["seller_id"],
            buyer_id=data["buyer_id"],
            amount=Decimal(data["amount"]),
            bid_id=data.get("bid_id"),
            status=TransactionStatus(data["status"]),
            created_at=_ts(data.get("created_at")) or utcnow(),
            updated_at=_ts(data.get("updated_at")) or utcnow(),
        )


@dataclass(frozen=True)
class SecondBidderOffer:
    bidder_id: str
    amount: Decimal
    status: OfferStatus = OfferStatus.OFFERED
    bid_id: str | None = None

    def with_status(self, status: OfferStatus) -> "SecondBidderOffer":
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bidder_id": self.bidder_id,
            "amount": str(self.amount),
            "status": self.status.value,
            "bid_id": self.bid_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecondBidderOffer":
        return cls(
            bidder_id=data["bidder_id"],
            amount=Decimal(data["amount"]),
            status=OfferStatus(data["status"]),
            bid_id=data.get("bid_id"),
        )


@dataclass
class VoidRequest:
    id: str
    transaction_id: str
    auction_id: str
    initiator_id: str
    reason: str
    stage: str
    status: VoidStatus = VoidStatus.PENDING
    remediation: Remediation = Remediation.NONE
    second_bidder_offer: SecondBidderOffer | None = None
    rejection_reason: str | None = None
    declined_bidders: list[str] = field(default_factory=list)
    replacement_transaction_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "auction_id": self.auction_id,
            "initiator_id": self.initiator_id,
            "reason": self.reason,
            "stage": self.stage,
            "status": self.status.value,
            "remediation": self.remediation.value,
            "second_bidder_offer": (
                self.second_bidder_offer.to_dict() if self.second_bidder_offer else None
            ),
            "rejection_reason": self.rejection_reason,
            "declined_bidders": list(self.declined_bidders),
            "replacement_transaction_id": self.replacement_transaction_id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VoidRequest":
        offer = data.get("second_bidder_offer")
        return cls(
            id=data["id"],
            transaction_id=data["transaction_id"],
            auction_id=data["auction_id"],
            initiator_id=data["initiator_id"],
            reason=data["reason"],
            stage=data["stage"],
            status=VoidStatus(data["status"]),
            remediation=Remediation(data.get("remediation", Remediation.NONE.value)),
            second_bidder_offer=SecondBidderOffer.from_dict(offer) if offer else None,
            rejection_reason=data.get("rejection_reason"),
            declined_bidders=list(data.get("declined_bidders") or []),
            replacement_transaction_id=data.get("replacement_transaction_id"),
            created_at=_ts(data.get("created_at")) or utcnow(),
            updated_at=_ts(data.get("updated_at")) or utcnow(),
        )


@dataclass(frozen=True)
class BidOutcome:
    accepted: bool
    new_highest: Decimal
    bid: Bid

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "new_highest": str(self.new_highest),
            "bid": self.bid.public_view(),
        }


@dataclass(frozen=True)
class AuctionSnapshot:
    auction_id: str
    status: AuctionStatus
    current_highest_bid: Decimal | None
    bid_count: int
    last_bid_at: datetime | None
    end_time: datetime
    round: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "auction_id": self.auction_id,
            "status": self.status.value,
            "current_highest_bid": (
                str(self.current_highest_bid) if self.current_highest_bid is not None else None
            ),
            "bid_count": self.bid_count,
            "last_bid_at": format_timestamp(self.last_bid_at) if self.last_bid_at else None,
            "end_time": format_timestamp(self.end_time),
            "round": self.round,
        }


@dataclass(frozen=True)
class ExpiryOutcome:
    changed: bool
    status: AuctionStatus
    transaction: Transaction | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed": self.changed,
            "status": self.status.value,
            "transaction": self.transaction.to_dict() if self.transaction else None,
        }


def parse_amount(value: Any) -> Decimal:
    """Parse a client-supplied money amount; raises ``ValueError`` when unusable."""
    if value is None or isinstance(value, bool):
        raise ValueError("amount is required")
    value_str = str(value).strip()
    if not value_str:
        raise ValueError("amount is required")
    try:
        amount = Decimal(value_str)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValueError(f"amount {value_str!r} is not a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValueError("amount must be a positive number")
    return amount
