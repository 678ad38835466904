"""
Time utilities and the clock abstraction.

Key concepts:
  - Every engine component that needs "now" receives a ``Clock`` instead of
    calling ``datetime.now()`` directly, so cycles are reproducible in tests.
  - All datetimes are timezone-aware UTC.  Naive datetimes read from storage
    are assumed to be UTC.
  - Demand buckets are aligned to a fixed window anchored at the Unix epoch.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """A clock pinned to an explicit instant.  ``advance()`` moves it forward.

    Thread-safe: the orchestrator reads the clock from worker threads.
    """

    def __init__(self, instant: datetime) -> None:
        self._instant = ensure_utc(instant)
        self._lock    = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._instant

    def advance(self, **delta: float) -> datetime:
        """Move the clock forward by ``timedelta(**delta)`` and return the new time."""
        with self._lock:
            self._instant = self._instant + timedelta(**delta)
            return self._instant

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._instant = ensure_utc(instant)


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone info.

    Prefer this over ``datetime.utcnow()`` (which returns naive datetimes).
    """
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch-milliseconds number into UTC.

    Returns ``None`` for ``None``.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return _EPOCH + timedelta(milliseconds=float(value))
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"Cannot parse timestamp from {type(value).__name__}: {value!r}")


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as an ISO-8601 UTC string (``None`` passes through)."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def align_to_bucket(instant: datetime, bucket_minutes: int) -> datetime:
    """Floor ``instant`` to the start of its ``bucket_minutes``-wide bucket.

    Raises:
        ValueError: If ``bucket_minutes < 1``.
    """
    if bucket_minutes < 1:
        raise ValueError(f"bucket_minutes must be >= 1, got {bucket_minutes}.")
    width_s  = bucket_minutes * 60
    elapsed  = int((ensure_utc(instant) - _EPOCH).total_seconds())
    return _EPOCH + timedelta(seconds=(elapsed // width_s) * width_s)


def minutes_between(start: datetime, end: datetime) -> float:
    """Return ``end - start`` in minutes, floored at zero."""
    return max(0.0, (ensure_utc(end) - ensure_utc(start)).total_seconds() / 60.0)


def ms_between(start: datetime, end: datetime) -> int:
    """Return ``end - start`` in whole milliseconds, floored at zero."""
    return max(0, int((ensure_utc(end) - ensure_utc(start)).total_seconds() * 1000))


def to_epoch_ms(value: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to Unix epoch milliseconds (``None`` passes through)."""
    if value is None:
        return None
    return int((ensure_utc(value) - _EPOCH).total_seconds() * 1000)
