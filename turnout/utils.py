"""Utility helpers for Turnout."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def pluralize(count: int, singular: str, plural: str | None = None) -> str:
    """Return ``"1 slot"`` / ``"3 slots"`` style phrases."""
    word = singular if count == 1 else (plural or f"{singular}s")
    return f"{count} {word}"


def humanize_time(value: datetime | None, *, now: datetime | None = None) -> str:
    """Return a friendly string such as 'in 2 weeks' or '3 hours ago'."""
    if not value:
        return ""
    now = now or utcnow()
    delta_seconds = (value - now).total_seconds()
    past = delta_seconds < 0
    seconds = abs(delta_seconds)

    units = [
        ("year", 365 * 24 * 3600),
        ("month", 30 * 24 * 3600),
        ("week", 7 * 24 * 3600),
        ("day", 24 * 3600),
        ("hour", 3600),
        ("minute", 60),
    ]

    for name, step in units:
        value_count = int(seconds // step)
        if value_count >= 1:
            phrase = pluralize(value_count, name)
            break
    else:
        return "in moments" if not past else "moments ago"

    if past:
        return f"{phrase} ago"
    return f"in {phrase}"
