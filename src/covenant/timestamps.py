"""ISO-8601 timestamp helpers with UTC millisecond precision."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 date-time into an aware UTC datetime.

    A trailing ``Z`` is accepted; naive values are taken as UTC.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Timestamp must be a non-empty ISO-8601 string: {value!r}")
    candidate = value.strip()
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as e:
        raise ValueError(f"Invalid ISO-8601 timestamp: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def timestamp_in(seconds: float, now: Optional[datetime] = None) -> str:
    """Timestamp ``seconds`` after ``now`` (default: current time)."""
    return format_timestamp((now or utc_now()) + timedelta(seconds=seconds))


def parse_duration_to_seconds(value: str) -> int:
    """Parse durations like ``90s``, ``20m``, ``72h``, ``30d``."""
    raw = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 20m, 72h, 30d)")
    return int(raw[:-1]) * units[raw[-1]]
