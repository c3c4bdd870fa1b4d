"""UTC timestamps as they appear in stored records, events and identity assertions."""

from __future__ import annotations

from datetime import datetime, timezone


class TimestampError(ValueError):
    """Malformed timestamp, or one too far from the local clock."""


def parse_timestamp(value: str) -> datetime:
    """Parse ISO-8601 (``Z`` suffix allowed) into an aware UTC datetime."""
    if not value:
        raise TimestampError("timestamp missing")
    text = f"{value[:-1]}+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise TimestampError(f"{value!r} is not an ISO-8601 timestamp") from exc
    if parsed.tzinfo is None:
        raise TimestampError(f"{value!r} has no timezone")
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        raise TimestampError("naive datetimes cannot be stored")
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def assert_within_skew(value: str, *, max_skew_ms: int, now: datetime | None = None) -> datetime:
    stamped = parse_timestamp(value)
    reference = now or datetime.now(timezone.utc)
    skew_ms = abs((reference - stamped).total_seconds()) * 1000
    if skew_ms > max_skew_ms:
        raise TimestampError(f"clock skew {skew_ms:.0f}ms is over the {max_skew_ms}ms limit")
    return stamped
