"""
Injectable time source for the expense engine.

Approval and rejection timestamps, reimbursement dates, petrol-rate lookups,
mileage default periods and audit ``occurred_at`` values all read the time
through a ``Clock`` handed to the component's constructor, so a test can
pin every one of them to a single instant.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timezone


class Clock(ABC):
    """Source of the current instant. ``now()`` is always timezone-aware UTC."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        """Calendar date of ``now()`` in UTC."""
        return self.now().date()


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Clock frozen at one instant; naive datetimes are refused."""

    DEFAULT_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, fixed_time: datetime | None = None):
        fixed_time = fixed_time or self.DEFAULT_TIME
        if fixed_time.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware datetime")
        self._fixed_time = fixed_time.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._fixed_time
