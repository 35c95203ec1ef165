"""Tests for locked pricing snapshots."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from apps.bookings.application.command_handlers import (
    EditBookingWindowCommand,
    LockPricingCommand,
)
from apps.pricing.models import PricingSnapshot
from shared.application.message_bus import message_bus
from shared.domain.exceptions import DomainError


@pytest.mark.django_db
def test_lock_freezes_quote_and_edits_never_touch_it(make_booking, make_unit, staff, pickup_at) -> None:
    make_unit()
    booking = make_booking(days=3)

    result = message_bus.handle_command(LockPricingCommand(booking_id=booking.pk, actor=staff))
    snapshot = PricingSnapshot.objects.get(pk=result.details["snapshot_id"])
    assert snapshot.version == 1
    assert snapshot.total == Decimal("378.00")
    frozen = dict(snapshot.breakdown)

    result = message_bus.handle_command(EditBookingWindowCommand(
        booking_id=booking.pk,
        start_at=pickup_at,
        end_at=pickup_at + timedelta(days=4),
        actor=staff,
    ))
    booking = result.booking
    snapshot.refresh_from_db()

    assert booking.needs_relock is True
    assert booking.total_amount != snapshot.total
    assert snapshot.breakdown == frozen
    assert snapshot.total == Decimal("378.00")

    relocked = message_bus.handle_command(LockPricingCommand(booking_id=booking.pk, actor=staff))
    assert relocked.booking.needs_relock is False
    assert PricingSnapshot.objects.get(pk=relocked.details["snapshot_id"]).version == 2
    assert PricingSnapshot.objects.filter(booking=booking).count() == 2


@pytest.mark.django_db
def test_lock_twice_without_changes_is_already_complete(make_booking, staff) -> None:
    booking = make_booking()
    message_bus.handle_command(LockPricingCommand(booking_id=booking.pk, actor=staff))
    again = message_bus.handle_command(LockPricingCommand(booking_id=booking.pk, actor=staff))
    assert again.already_complete
    assert PricingSnapshot.objects.count() == 1


@pytest.mark.django_db
def test_snapshot_rows_are_write_once(make_booking, staff) -> None:
    booking = make_booking()
    result = message_bus.handle_command(LockPricingCommand(booking_id=booking.pk, actor=staff))
    snapshot = PricingSnapshot.objects.get(pk=result.details["snapshot_id"])

    snapshot.total = Decimal("1.00")
    with pytest.raises(DomainError):
        snapshot.save()
    with pytest.raises(DomainError):
        PricingSnapshot.objects.filter(pk=snapshot.pk).update(total=Decimal("1.00"))
    with pytest.raises(DomainError):
        snapshot.delete()
    assert PricingSnapshot.objects.get(pk=snapshot.pk).total == Decimal("378.00")
