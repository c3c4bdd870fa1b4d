"""Typed state-change events and their wire encoding."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from ..transport.canonical_json import canonical_dumps, canonical_loads
from ..transport.timestamps import format_timestamp, parse_timestamp


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    BID_PLACED = "bid_placed"
    ACCEPTED = "accepted"
    ENDED = "ended"
    VOID_REQUESTED = "void_requested"
    VOID_REJECTED = "void_rejected"
    VOIDED = "voided"
    RESTARTED = "restarted"
    SECOND_BIDDER_OFFERED = "second_bidder_offered"
    SECOND_BIDDER_DECLINED = "second_bidder_declined"
    CONNECTED = "connected"
    BROKER_STATUS = "broker_status"


def auction_topic(auction_id: str) -> str:
    return f"auction:{auction_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    ts: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "ts": format_timestamp(self.ts), **self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        body = dict(data)
        event_type = EventType(body.pop("type"))
        ts = body.pop("ts", None)
        return cls(type=event_type, payload=body, ts=parse_timestamp(ts) if ts else utcnow())

    def encode(self) -> bytes:
        return canonical_dumps(self.to_dict())

    @classmethod
    def decode(cls, raw: bytes | str) -> "Event":
        return cls.from_dict(canonical_loads(raw))

    def sse_frame(self) -> str:
        return f"data: {self.encode().decode()}\n\n"


class EventPublisher(Protocol):
    """The one seam between mutating code and fan-out.

    ``publish`` must return without waiting for delivery.
    """

    def publish(self, topic: str, event: Event) -> None: ...
