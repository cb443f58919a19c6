"""Timestamps: epoch milliseconds for local bookkeeping, ISO strings on the wire."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Return the current time as integer epoch milliseconds."""
    return int(now_utc().timestamp() * 1000)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax server timestamp into a timezone-aware datetime.

    Accepts ISO 8601 variants with or without the ``T`` separator, with or
    without an offset, and date-only strings. Missing timezone defaults to
    ``default_tz``. Raises ``ValueError`` on unparseable input.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    parsed = pendulum.parse(value.strip(), tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def to_ms(value: str | datetime) -> int:
    """Convert a server timestamp to epoch milliseconds."""
    return int(parse_datetime(value).timestamp() * 1000)
