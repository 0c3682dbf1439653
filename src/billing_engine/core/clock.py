"""Injectable clocks.

Billing code never calls ``datetime.now()`` directly; every "now"
comparison goes through a ``Clock`` so schedules can be tested.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """A clock that only moves when told to.

    Example:
        clock = FrozenClock(datetime(2024, 1, 31, tzinfo=UTC))
        clock.advance(days=1)
    """

    def __init__(self, current: datetime) -> None:
        self.current = current if current.tzinfo else current.replace(tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current if current.tzinfo else current.replace(tzinfo=UTC)

    def advance(self, **kwargs: float) -> datetime:
        """Move the clock forward by a ``timedelta(**kwargs)``."""
        self.current = self.current + timedelta(**kwargs)
        return self.current
