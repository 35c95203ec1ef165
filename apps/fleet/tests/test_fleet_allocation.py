"""Tests for unit allocation, release and category changes."""

from __future__ import annotations

import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import connection, connections

from apps.audit.models import AuditLog
from apps.bookings.models import Booking
from apps.fleet import services as fleet
from apps.fleet.domain.schedule import Occupation, UnitSchedule
from apps.fleet.models import VehicleUnit
from shared.domain.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NoUnitsAvailable,
    PermissionDeniedError,
)
from shared.domain.value_objects import TimeWindow


@pytest.mark.django_db
def test_assign_flips_unit_and_links_booking(make_unit, make_booking, staff) -> None:
    unit = make_unit()
    booking = make_booking()

    result = fleet.assign_unit(booking.pk, actor=staff)

    unit.refresh_from_db()
    assert result.assigned_unit_id == unit.pk
    assert unit.status == VehicleUnit.Status.ON_RENT
    assert AuditLog.objects.for_entity("booking", booking.pk).filter(action="fleet.unit_assigned").exists()


@pytest.mark.django_db
def test_unit_at_other_location_is_rejected(make_unit, make_booking, other_location, staff) -> None:
    remote_unit = make_unit(location=other_location)
    booking = make_booking()

    with pytest.raises(ConflictError) as exc_info:
        fleet.assign_unit(booking.pk, unit_id=remote_unit.pk, actor=staff)
    assert exc_info.value.code == "location_mismatch"

    with pytest.raises(ConflictError) as exc_info:
        fleet.assign_unit(booking.pk, booking.category_id, other_location.pk, actor=staff)
    assert exc_info.value.code == "location_mismatch"

    remote_unit.refresh_from_db()
    assert remote_unit.status == VehicleUnit.Status.AVAILABLE
    assert Booking.objects.get(pk=booking.pk).assigned_unit_id is None


@pytest.mark.django_db
def test_last_unit_goes_to_exactly_one_booking(make_unit, make_booking, staff) -> None:
    make_unit()
    bookings = [make_booking() for _ in range(4)]

    outcomes = []
    for booking in bookings:
        try:
            fleet.assign_unit(booking.pk, actor=staff)
            outcomes.append("assigned")
        except NoUnitsAvailable:
            outcomes.append("none")

    assert outcomes.count("assigned") == 1
    assert outcomes.count("none") == 3
    assert Booking.objects.filter(assigned_unit__isnull=False).count() == 1


@pytest.mark.django_db
def test_assigning_twice_returns_existing_unit(make_unit, make_booking, staff) -> None:
    first = make_unit()
    make_unit()
    booking = make_booking()

    fleet.assign_unit(booking.pk, actor=staff)
    again = fleet.assign_unit(booking.pk, actor=staff)

    assert again.assigned_unit_id == first.pk
    assert VehicleUnit.objects.filter(status=VehicleUnit.Status.ON_RENT).count() == 1


@pytest.mark.django_db
def test_cleaning_buffer_blocks_tight_turnaround(make_unit, make_booking, category, location, staff, pickup_at) -> None:
    unit = make_unit(cleaning_buffer_hours=2)
    # Unit-level checkout hold ending at 10:00.
    fleet.create_reservation_hold(
        category.pk, location.pk,
        TimeWindow(pickup_at - timedelta(days=1), pickup_at),
        "session-prev",
        unit_id=unit.pk,
    )

    tight = make_booking(start_at=pickup_at + timedelta(hours=1), days=2)
    with pytest.raises(NoUnitsAvailable):
        fleet.assign_unit(tight.pk, unit_id=unit.pk, actor=staff)

    clear = make_booking(start_at=pickup_at + timedelta(hours=2), days=2)
    assert fleet.assign_unit(clear.pk, unit_id=unit.pk, actor=staff).assigned_unit_id == unit.pk


@pytest.mark.django_db
def test_units_out_of_service_are_never_picked(make_unit, make_booking, staff) -> None:
    make_unit(status=VehicleUnit.Status.MAINTENANCE)
    make_unit(status=VehicleUnit.Status.DAMAGE)
    booking = make_booking()

    with pytest.raises(NoUnitsAvailable):
        fleet.assign_unit(booking.pk, actor=staff)


@pytest.mark.django_db
def test_customer_cannot_assign(make_unit, make_booking, customer) -> None:
    make_unit()
    booking = make_booking()
    with pytest.raises(PermissionDeniedError):
        fleet.assign_unit(booking.pk, actor=customer)


@pytest.mark.django_db
def test_release_resets_unit(make_unit, make_booking, staff) -> None:
    unit = make_unit()
    booking = make_booking()
    fleet.assign_unit(booking.pk, actor=staff)

    released = fleet.release_unit(booking.pk, VehicleUnit.Status.MAINTENANCE, actor=staff, reason="oil leak")

    unit.refresh_from_db()
    assert released.assigned_unit_id is None
    assert unit.status == VehicleUnit.Status.MAINTENANCE


@pytest.mark.django_db
def test_change_category_keeps_price_and_releases_unit(make_unit, make_booking, suv_category, staff) -> None:
    unit = make_unit()
    booking = make_booking(days=4)
    fleet.assign_unit(booking.pk, actor=staff)
    total = Booking.objects.get(pk=booking.pk).total_amount

    moved = fleet.change_category(booking.pk, suv_category.pk, actor=staff)

    unit.refresh_from_db()
    assert moved.category_id == suv_category.pk
    assert moved.total_amount == total
    assert moved.assigned_unit_id is None
    assert unit.status == VehicleUnit.Status.AVAILABLE


@pytest.mark.django_db
def test_upgrade_fee_round_trip(make_booking, suv_category, staff) -> None:
    booking = make_booking(days=4)
    old_total = booking.total_amount
    fleet.change_category(booking.pk, suv_category.pk, actor=staff)

    upgraded = fleet.apply_upgrade_fee(booking.pk, daily_fee=Decimal("25"), reason="requested SUV", actor=staff)
    assert upgraded.total_amount == old_total + Decimal("100.00")

    restored = fleet.remove_upgrade_fee(booking.pk, actor=staff)
    assert restored.total_amount == old_total
    assert restored.upgrade_daily_fee is None


@pytest.mark.django_db
def test_upgrade_fee_defaults_to_rate_delta_and_allows_zero(make_booking, suv_category, staff) -> None:
    booking = make_booking(days=4)
    old_total = booking.total_amount
    fleet.change_category(booking.pk, suv_category.pk, actor=staff)

    assert fleet.apply_upgrade_fee(booking.pk, actor=staff).total_amount == old_total + Decimal("100.00")
    waived = fleet.apply_upgrade_fee(booking.pk, daily_fee=Decimal("0"), reason="goodwill", actor=staff)
    assert waived.total_amount == old_total
    assert waived.upgrade_daily_fee == Decimal("0.00")


@pytest.mark.django_db
def test_cannot_assign_to_terminal_booking(make_unit, make_booking, staff) -> None:
    make_unit()
    booking = make_booking(status=Booking.Status.CANCELLED)
    with pytest.raises(InvalidTransitionError):
        fleet.assign_unit(booking.pk, actor=staff)


def test_schedule_rejects_overlap_including_buffer() -> None:
    from datetime import datetime, timezone

    start = datetime(2030, 6, 1, 10, tzinfo=timezone.utc)
    taken = TimeWindow(start, start + timedelta(days=1))
    schedule = UnitSchedule(
        unit_id="unit-1",
        cleaning_buffer=timedelta(hours=2),
        occupations=[Occupation(window=taken, booking_id="booking-a")],
    )

    soon = TimeWindow(taken.end_at + timedelta(hours=1), taken.end_at + timedelta(days=1))
    later = TimeWindow(taken.end_at + timedelta(hours=2), taken.end_at + timedelta(days=1))
    assert not schedule.can_allocate(soon)
    assert schedule.can_allocate(soon, booking_id="booking-a")
    with pytest.raises(ConflictError):
        schedule.allocate("booking-b", soon)

    schedule.allocate("booking-b", later)
    assert len(schedule.events) == 1
    assert [o.booking_id for o in schedule.occupations] == ["booking-a", "booking-b"]


@pytest.mark.skipif(connection.vendor != "postgresql", reason="needs row-level locks (PostgreSQL)")
@pytest.mark.django_db(transaction=True)
def test_concurrent_callers_race_for_last_unit(make_unit, make_booking, staff) -> None:
    make_unit()
    bookings = [make_booking() for _ in range(6)]
    barrier = threading.Barrier(len(bookings))
    outcomes: list[str] = []
    lock = threading.Lock()

    def attempt(booking_id) -> None:
        barrier.wait()
        result = "error"
        try:
            fleet.assign_unit(booking_id, actor=staff)
            result = "assigned"
        except NoUnitsAvailable:
            result = "none"
        finally:
            connections.close_all()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(b.pk,)) for b in bookings]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("assigned") == 1
    assert outcomes.count("none") == len(bookings) - 1
    assert VehicleUnit.objects.filter(status=VehicleUnit.Status.ON_RENT).count() == 1
