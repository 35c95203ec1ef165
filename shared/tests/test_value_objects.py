"""Tests for the shared value objects."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from shared.domain.exceptions import ValidationError
from shared.domain.value_objects import TimeWindow, round_cents

T0 = datetime(2030, 6, 1, 10, 0, tzinfo=timezone.utc)


def window(start_hours: float, end_hours: float) -> TimeWindow:
    return TimeWindow(T0 + timedelta(hours=start_hours), T0 + timedelta(hours=end_hours))


def test_window_rejects_end_before_start() -> None:
    with pytest.raises(ValidationError) as exc_info:
        window(5, 5)
    assert exc_info.value.code == "invalid_window"


def test_adjacent_windows_do_not_overlap_without_buffer() -> None:
    assert not window(0, 24).overlaps_with(window(24, 48))
    assert window(0, 24).overlaps_with(window(23, 48))


def test_cleaning_buffer_pads_both_sides() -> None:
    two_hours = timedelta(hours=2)
    assert window(0, 24).overlaps_with(window(25, 48), two_hours)
    assert not window(0, 24).overlaps_with(window(26, 48), two_hours)
    assert window(26, 48).overlaps_with(window(0, 24.5), two_hours)


def test_rental_days_counts_calendar_days() -> None:
    assert window(0, 72).rental_days == 3
    assert window(0, 2).rental_days == 1
    assert window(0, 74).rental_days == 3


def test_round_cents_is_half_up() -> None:
    assert round_cents(Decimal("0.125")) == Decimal("0.13")
    assert round_cents(Decimal("0.124")) == Decimal("0.12")
