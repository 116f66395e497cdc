"""
Clock Module

Source of "today" for status reconciliation and repayment validation.
Components take a Clock instead of reading the wall clock so that
reconciliation is deterministic under test.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract clock"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timestamp (timezone-aware, UTC)"""
        pass

    def today(self) -> date:
        """Current calendar date, no time-of-day"""
        return self.now().date()


class SystemClock(Clock):
    """Wall clock in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to a date, movable by tests and batch replays"""

    def __init__(self, today: date, at: Optional[datetime] = None):
        self._now = at or datetime(today.year, today.month, today.day, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, today: date) -> None:
        self._now = datetime(today.year, today.month, today.day, 9, 0, tzinfo=timezone.utc)

    def advance(self, days: int = 1) -> None:
        self._now = self._now + timedelta(days=days)
