"""Void/dispute finite state machine."""

from __future__ import annotations

from enum import Enum

from ..auction.errors import WrongState


class DisputeStage(str, Enum):
    VOID_PENDING = "void_pending"
    VOID_REJECTED = "void_rejected"
    VOID_APPROVED = "void_approved"
    RESTARTED = "restarted"
    SECOND_BIDDER_PENDING = "second_bidder_pending"
    SECOND_BIDDER_ACCEPTED = "second_bidder_accepted"
    SECOND_BIDDER_DECLINED = "second_bidder_declined"
    CLOSED_UNSOLD = "closed_unsold"


class DisputeAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    RESTART = "restart_bidding"
    OFFER_SECOND_BIDDER = "offer_second_bidder"
    SECOND_BIDDER_ACCEPT = "second_bidder_accept"
    SECOND_BIDDER_DECLINE = "second_bidder_decline"
    CLOSE = "close"


TERMINAL_STAGES = frozenset(
    {
        DisputeStage.VOID_REJECTED,
        DisputeStage.RESTARTED,
        DisputeStage.SECOND_BIDDER_ACCEPTED,
        DisputeStage.CLOSED_UNSOLD,
    }
)

# Stages in which the seller owes a remediation decision.
AWAITING_SELLER = frozenset({DisputeStage.VOID_APPROVED, DisputeStage.SECOND_BIDDER_DECLINED})


_TRANSITIONS = {
    (DisputeStage.VOID_PENDING, DisputeAction.APPROVE): DisputeStage.VOID_APPROVED,
    (DisputeStage.VOID_PENDING, DisputeAction.REJECT): DisputeStage.VOID_REJECTED,
    (DisputeStage.VOID_APPROVED, DisputeAction.RESTART): DisputeStage.RESTARTED,
    (
        DisputeStage.VOID_APPROVED,
        DisputeAction.OFFER_SECOND_BIDDER,
    ): DisputeStage.SECOND_BIDDER_PENDING,
    (DisputeStage.VOID_APPROVED, DisputeAction.CLOSE): DisputeStage.CLOSED_UNSOLD,
    (
        DisputeStage.SECOND_BIDDER_PENDING,
        DisputeAction.SECOND_BIDDER_ACCEPT,
    ): DisputeStage.SECOND_BIDDER_ACCEPTED,
    (
        DisputeStage.SECOND_BIDDER_PENDING,
        DisputeAction.SECOND_BIDDER_DECLINE,
    ): DisputeStage.SECOND_BIDDER_DECLINED,
    (DisputeStage.SECOND_BIDDER_DECLINED, DisputeAction.RESTART): DisputeStage.RESTARTED,
    (
        DisputeStage.SECOND_BIDDER_DECLINED,
        DisputeAction.OFFER_SECOND_BIDDER,
    ): DisputeStage.SECOND_BIDDER_PENDING,
    (DisputeStage.SECOND_BIDDER_DECLINED, DisputeAction.CLOSE): DisputeStage.CLOSED_UNSOLD,
}


def transition(current: DisputeStage, action: DisputeAction) -> DisputeStage:
    try:
        return _TRANSITIONS[(current, action)]
    except KeyError as exc:
        raise WrongState(
            f"cannot {action.value} from {current.value}", stage=current.value
        ) from exc
