"""
core/clock.py -- Injectable clock.

Every component that compares timestamps takes a `clock` callable in its
constructor instead of calling datetime.now() itself, so tests can move time
forward without sleeping. A clock returns a timezone-aware UTC datetime.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: the current wall-clock time in UTC."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO-8601 string.

    The microsecond component is always emitted so that lexical ordering of
    stored strings matches chronological ordering in SQL comparisons.
    Naive datetimes are assumed to already be UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a string written by to_iso() back into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
