"""Datetime helpers: git timestamps in, human-readable ages out."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum

# Git Data API timestamps: YYYY-MM-DDTHH:MM:SSZ
GIT_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_git_date(dt: datetime) -> str:
    """Format a datetime the way GitHub expects commit author dates."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(GIT_DATE_FORMAT)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def parse_datetime(value: str, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string (ISO 8601 and variants) into an aware datetime."""
    parsed = pendulum.parse(value.strip(), tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def humanize_age(value: str, now: datetime | None = None) -> str:
    """Render a timestamp relative to *now*, e.g. ``"3 hours ago"``.

    Returns the input unchanged when it cannot be parsed.
    """
    try:
        parsed = pendulum.instance(parse_datetime(value))
    except ValueError:
        return value
    reference = pendulum.instance(now) if now is not None else pendulum.now("UTC")
    words = parsed.diff_for_humans(reference, absolute=True)
    return f"{words} ago" if parsed <= reference else f"in {words}"
