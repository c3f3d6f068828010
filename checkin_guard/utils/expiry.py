# checkin_guard/utils/expiry.py
"""
Self-expiring soft state.

Temporary blocks, stale reentrancy locks, PIN lockouts and override grants are
all "a value that stops being true at some instant". They share one shape,
``ExpiringFact``, and one liveness test, ``is_live``.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple, Optional


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExpiringFact(NamedTuple):
    value: Any
    expires_at: Optional[datetime]  # None means it never expires

    @classmethod
    def lasting(cls, value: Any, started_at: datetime, duration: timedelta) -> "ExpiringFact":
        return cls(value, ensure_utc(started_at) + duration)


def is_live(fact: Optional[ExpiringFact], now: Optional[datetime] = None) -> bool:
    """True while the fact holds: it exists and ``now`` is before its expiry."""
    if fact is None or fact.value is None:
        return False
    if fact.expires_at is None:
        return True
    now = ensure_utc(now) if now else utcnow()
    return now < ensure_utc(fact.expires_at)


def seconds_left(fact: ExpiringFact, now: Optional[datetime] = None) -> int:
    if fact.expires_at is None:
        return 0
    now = ensure_utc(now) if now else utcnow()
    return max(0, int((ensure_utc(fact.expires_at) - now).total_seconds()))
