"""Shared pytest fixtures: actors, a small fleet and a booking factory."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

import pytest

from apps.bookings.models import Booking, StepCompletion
from apps.bookings.services import reprice
from apps.fleet.models import Location, VehicleCategory, VehicleUnit
from apps.users.models import CustomUser

# 2030-06-01 is a Saturday.
SATURDAY = datetime(2030, 6, 1, 10, 0, tzinfo=dt_timezone.utc)


@pytest.fixture
def pickup_at() -> datetime:
    return SATURDAY


@pytest.fixture
def customer(db) -> CustomUser:
    return CustomUser.objects.create_user(email="driver@example.com", password="pass12345")


@pytest.fixture
def staff(db) -> CustomUser:
    return CustomUser.objects.create_user(
        email="counter@example.com", password="pass12345", role=CustomUser.RoleChoices.STAFF
    )


@pytest.fixture
def manager(db) -> CustomUser:
    return CustomUser.objects.create_user(
        email="manager@example.com", password="pass12345", role=CustomUser.RoleChoices.MANAGER
    )


@pytest.fixture
def location(db) -> Location:
    return Location.objects.create(name="Vancouver Airport", code="yvr")


@pytest.fixture
def other_location(db) -> Location:
    return Location.objects.create(name="Downtown", code="downtown")


@pytest.fixture
def category(db) -> VehicleCategory:
    return VehicleCategory.objects.create(name="Compact", daily_rate=Decimal("100.00"))


@pytest.fixture
def suv_category(db) -> VehicleCategory:
    return VehicleCategory.objects.create(name="SUV", daily_rate=Decimal("125.00"), sort_order=1)


@pytest.fixture
def make_unit(db, category, location):
    counter = itertools.count(1)

    def factory(**kwargs) -> VehicleUnit:
        number = next(counter)
        fields = {
            "vin": f"2T1BURHE0JC{number:06d}",
            "plate": f"DD{number:04d}",
            "category": category,
            "location": location,
        }
        fields.update(kwargs)
        return VehicleUnit.objects.create(**fields)

    return factory


@pytest.fixture
def make_booking(db, customer, category, location):
    """Create a priced pending booking directly, skipping checkout availability checks."""

    def factory(start_at: datetime = SATURDAY, days: int = 3, **kwargs) -> Booking:
        fields = {
            "customer": customer,
            "category": category,
            "location": location,
            "start_at": start_at,
            "end_at": start_at + timedelta(days=days),
        }
        fields.update(kwargs)
        fields.setdefault("daily_rate", fields["category"].daily_rate)
        booking = Booking(**fields)
        breakdown = reprice(booking)
        booking.deposit_amount = breakdown.deposit_amount
        booking.save()
        StepCompletion.objects.create(booking=booking)
        return booking

    return factory
