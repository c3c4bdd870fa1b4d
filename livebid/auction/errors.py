"""Typed failures returned by the engine and dispute workflow.

Every error carries a stable ``code`` that clients can branch on and a
``category`` telling them whether a retry can help. Validation failures are
permanent for the request as sent; contention failures are transient.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONTENTION = "contention"


class AuctionError(ValueError):
    code = "AuctionError"
    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.CONTENTION

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "reason": self.code,
            "detail": self.message,
            "retryable": self.retryable,
        }
        payload.update({key: _jsonable(value) for key, value in self.context.items()})
        return payload


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    return str(value)


class NotFound(AuctionError):
    code = "NotFound"
    category = ErrorCategory.NOT_FOUND


class InvalidAmount(AuctionError):
    code = "InvalidAmount"


class AuctionClosed(AuctionError):
    code = "AuctionClosed"


class AuctionExpired(AuctionError):
    code = "AuctionExpired"


class AmountTooLow(AuctionError):
    code = "AmountTooLow"


class NotAuctionOwner(AuctionError):
    code = "NotAuctionOwner"


class NoBids(AuctionError):
    code = "NoBids"


class NotAParty(AuctionError):
    code = "NotAParty"


class AlreadyResolved(AuctionError):
    code = "AlreadyResolved"


class WrongState(AuctionError):
    code = "WrongState"


class VoidAlreadyPending(AuctionError):
    code = "VoidAlreadyPending"


class NoSecondBidderAvailable(AuctionError):
    code = "NoSecondBidderAvailable"


class TooManyPendingOperations(AuctionError):
    code = "TooManyPendingOperations"
    category = ErrorCategory.CONTENTION


class SerializationTimeout(AuctionError):
    code = "SerializationTimeout"
    category = ErrorCategory.CONTENTION


class SellerCannotBid(AuctionError):
    code = "SellerCannotBid"
