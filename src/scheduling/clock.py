"""
Clock abstraction.

The policy and the service never read the wall clock directly; they ask an
injected clock so that lateness detection and due-ness stay deterministic in
tests.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything with a timezone-aware UTC ``now()``."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """
    Settable clock.

    Used by tests and simulations to move time forward explicitly.
    """

    def __init__(self, start: datetime | None = None):
        self._now = ensure_utc(start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)

    def advance(self, *, days: float = 0, hours: float = 0, seconds: float = 0) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(days=days, hours=hours, seconds=seconds)
            return self._now


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: datetime) -> datetime:
    """Midnight (UTC) of the given instant's day."""
    value = ensure_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(value: datetime) -> datetime:
    """Last representable instant (UTC) of the given instant's day."""
    return start_of_day(value) + timedelta(days=1) - timedelta(microseconds=1)
