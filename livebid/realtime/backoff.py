"""Reconnect delays and adaptive polling intervals."""

from __future__ import annotations

import random
from datetime import datetime


def reconnect_delay(
    attempt: int,
    *,
    base_ms: int = 1000,
    max_ms: int = 30000,
    jitter: float = 0.0,
) -> float:
    """Seconds to wait before reconnect ``attempt`` (0-indexed).

    Exponential ``base * 2**attempt`` capped at ``max_ms``, with optional
    jitter expressed as a fraction of the delay.
    """
    delay_ms = min(base_ms * (2**attempt), max_ms)
    if jitter:
        delay_ms += random.uniform(-jitter, jitter) * delay_ms
    return max(0.0, delay_ms / 1000)


def poll_interval(
    end_time: datetime | None,
    now: datetime,
    *,
    near_end_ms: int,
    idle_ms: int,
    near_end_window_seconds: int,
) -> float:
    """Seconds between status polls; tighter as the auction clock runs out."""
    if end_time is None:
        return idle_ms / 1000
    remaining = (end_time - now).total_seconds()
    if remaining <= near_end_window_seconds:
        return near_end_ms / 1000
    return idle_ms / 1000
