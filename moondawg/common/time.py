"""Timestamp helpers shared by the client, stores, and orchestrator."""

from __future__ import annotations

import datetime as dt

def utcnow() -> dt.datetime:
    """Return an aware UTC timestamp."""
    return dt.datetime.now(dt.UTC)


def ensure_utc(value: dt.datetime, *, field: str) -> dt.datetime:
    """Return ``value`` converted to UTC, rejecting naive datetimes."""
    if value.tzinfo is None:
        msg = f"{field} must be timezone-aware"
        raise ValueError(msg)
    return value.astimezone(dt.UTC)


def parse_iso_datetime(value: str) -> dt.datetime:
    """Parse an ISO-8601 timestamp as emitted by GitLab (``...Z`` suffix)."""
    parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        msg = f"timestamp missing timezone: {value}"
        raise ValueError(msg)
    return parsed.astimezone(dt.UTC)


def to_epoch_seconds(value: dt.datetime) -> int:
    """Return whole epoch seconds for an aware datetime."""
    return int(ensure_utc(value, field="timestamp").timestamp())
