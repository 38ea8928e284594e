"""
Clock gate for time-locked groups.

The gate answers one question: has a group's unlock instant been reached?
It holds no state and performs no I/O, so callers evaluate it on every
read rather than caching the answer; "now" moves on without any data event.

Clocks are injected. Components receive a Clock at construction and never
read the wall clock themselves, which keeps tests deterministic.

Invariants:
    - is_unlocked(unlock_at, now) == (now >= unlock_at)
    - Equality at the exact instant counts as unlocked
    - Once unlocked for some now, unlocked for every later now
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"{name} must be timezone-aware")


def is_unlocked(unlock_at: datetime, now: datetime) -> bool:
    """Return True once `now` has reached `unlock_at`.

    Args:
        unlock_at: Group unlock instant
        now: Current instant

    Returns:
        True when unlocked

    Raises:
        ValueError: If either datetime is naive
    """
    _require_aware(unlock_at, "unlock_at")
    _require_aware(now, "now")
    return now >= unlock_at


def time_until_unlock(unlock_at: datetime, now: datetime) -> timedelta:
    """Remaining lock time, zero once unlocked."""
    if is_unlocked(unlock_at, now):
        return timedelta(0)
    return unlock_at - now


def lock_message(unlock_at: datetime, now: datetime) -> str | None:
    """Visibility message for a locked group, None once unlocked."""
    if is_unlocked(unlock_at, now):
        return None
    stamp = unlock_at.astimezone(timezone.utc).isoformat(timespec="minutes")
    return f"Locked until {stamp}"


@runtime_checkable
class Clock(Protocol):
    """Source of the current instant."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to.

    Example:
        >>> clock = ManualClock(datetime(2026, 1, 1, tzinfo=timezone.utc))
        >>> clock.advance(hours=1)
    """

    def __init__(self, start: datetime | None = None) -> None:
        start = start or datetime.now(timezone.utc)
        _require_aware(start, "start")
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        _require_aware(value, "value")
        self._now = value

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Move forward by `delta` or by timedelta keyword arguments."""
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self._now = self._now + step
        return self._now
