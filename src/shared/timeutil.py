"""ISO-8601 timestamp helpers.  All pipeline timestamps are UTC strings."""

from __future__ import annotations

from datetime import UTC, datetime

TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def parse_ts(iso: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` or offset suffix) to an aware UTC datetime."""
    dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_ts(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime(TS_FORMAT)


def utc_now() -> str:
    return format_ts(datetime.now(UTC))
