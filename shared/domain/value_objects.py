"""
Common Value Objects

Value objects used across multiple domains:
- TimeWindow: Represents a rental window [start, end)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from shared.domain.base import ValueObject
from shared.domain.exceptions import ValidationError

CENT = Decimal('0.01')


def round_cents(amount: Decimal) -> Decimal:
    """Round to currency minor units (half-up, the way card processors do)."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TimeWindow(ValueObject):
    """
    Rental time window

    start_at is inclusive, end_at is exclusive.
    Used for bookings, reservation holds and availability queries.
    """
    start_at: datetime
    end_at: datetime

    def __post_init__(self):
        if self.start_at is None or self.end_at is None:
            raise ValidationError("Rental window requires both start and end")
        if self.end_at <= self.start_at:
            raise ValidationError(
                f"Return time ({self.end_at.isoformat()}) must be after pickup time ({self.start_at.isoformat()})",
                code='invalid_window',
            )

    def overlaps_with(self, other: 'TimeWindow', buffer: timedelta = timedelta(0)) -> bool:
        """
        Check if this window overlaps another, padding both ends by ``buffer``

        The buffer is the unit's cleaning gap: a unit returned at 10:00 with
        a 2 hour buffer cannot go out again before 12:00.
        Adjacent windows (end == start) do not overlap when buffer is zero.
        """
        if not isinstance(other, TimeWindow):
            raise TypeError("Can only check overlap with another TimeWindow")
        return (self.start_at < other.end_at + buffer and
                other.start_at < self.end_at + buffer)

    @property
    def rental_days(self) -> int:
        """
        Number of billable rental days

        Counted on calendar dates of pickup and return, minimum one day.
        """
        return max(1, (self.end_at.date() - self.start_at.date()).days)

    def __str__(self):
        return f"{self.start_at:%Y-%m-%d %H:%M} - {self.end_at:%Y-%m-%d %H:%M}"

    def __repr__(self):
        return f"TimeWindow({self.start_at.isoformat()}, {self.end_at.isoformat()})"
