"""Timestamp parsing, validity checks and human formatting helpers."""
from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any

from agentaudit import config


def now_ms() -> float:
    return time.time() * 1000.0


def parse_timestamp_ms(value: Any) -> float | None:
    """Parse an ISO-8601 timestamp string into epoch milliseconds.

    Naive values are read as UTC. Returns None for anything that does not
    parse to a finite number.
    """
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        millis = parsed.timestamp() * 1000.0
    except (OverflowError, OSError, ValueError):
        return None
    return millis if math.isfinite(millis) else None


def is_valid_timestamp(value: Any, now: float | None = None) -> bool:
    """True when *value* parses, is positive and not too far in the future."""
    millis = parse_timestamp_ms(value)
    if millis is None or millis <= 0:
        return False
    current = now_ms() if now is None else now
    return millis <= current + config.FUTURE_TOLERANCE_SECONDS * 1000


def ms_to_datetime(millis: float) -> datetime:
    return datetime.fromtimestamp(millis / 1000.0, timezone.utc)


def format_relative_time(value: datetime, now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    diff_sec = math.floor((current - value).total_seconds())
    diff_min = math.floor(diff_sec / 60)
    diff_hour = math.floor(diff_min / 60)
    diff_day = math.floor(diff_hour / 24)

    if diff_sec < 60:
        return f"{diff_sec}s ago"
    if diff_min < 60:
        return f"{diff_min}m ago"
    if diff_hour < 24:
        return f"{diff_hour}h ago"
    if diff_day < 7:
        return f"{diff_day}d ago"
    return value.date().isoformat()


def format_axis_time(millis: float) -> str:
    # Local wall-clock, like the timeline labels operators read
    return datetime.fromtimestamp(millis / 1000.0).strftime("%H:%M")


def format_tokens(tokens: int | float) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}k"
    return str(tokens)
