"""Shared throttle state for operator notifications."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import select

from spendwatch.core.timeutils import ensure_utc, utcnow

from .database import session_scope
from .models import NotificationThrottle


class ThrottleStore(Protocol):
    def should_throttle(self, key: str, window: timedelta, now: datetime | None = None) -> bool: ...

    def record_sent(self, key: str, now: datetime | None = None) -> None: ...


class DatabaseThrottleStore:
    """Throttle backed by the database so every process sees the same state."""

    def should_throttle(self, key: str, window: timedelta, now: datetime | None = None) -> bool:
        current = now or utcnow()
        with session_scope() as session:
            last_sent = session.scalar(
                select(NotificationThrottle.last_sent_at).where(NotificationThrottle.key == key)
            )
        if last_sent is None:
            return False
        return current - ensure_utc(last_sent) < window

    def record_sent(self, key: str, now: datetime | None = None) -> None:
        current = ensure_utc(now or utcnow())
        with session_scope() as session:
            row = session.get(NotificationThrottle, key)
            if row is None:
                session.add(NotificationThrottle(key=key, last_sent_at=current))
            else:
                row.last_sent_at = current


class InMemoryThrottleStore:
    """Process-local stand-in for tests."""

    def __init__(self) -> None:
        self._sent: dict[str, datetime] = {}

    def should_throttle(self, key: str, window: timedelta, now: datetime | None = None) -> bool:
        last_sent = self._sent.get(key)
        if last_sent is None:
            return False
        return (now or utcnow()) - last_sent < window

    def record_sent(self, key: str, now: datetime | None = None) -> None:
        self._sent[key] = now or utcnow()
