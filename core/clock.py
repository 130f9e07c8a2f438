"""
core/clock.py -- Wall clock used for every expiry and window comparison.

Stores and services accept a `clock` callable instead of calling
datetime.now() inline, so tests can move time forward deterministically.
All timestamps are timezone-aware UTC.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as fixed-width ISO 8601 UTC.

    Fixed width (always microseconds, always +00:00) keeps lexicographic
    order equal to chronological order, which the stores rely on when
    comparing TEXT timestamp columns in SQL.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        # Naive value -- treat as UTC
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def as_utc(dt: datetime) -> datetime:
    """Return dt as an aware UTC datetime. Naive input is taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
