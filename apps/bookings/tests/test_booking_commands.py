"""Tests for booking command handlers: handover, return, cancel and edits."""

from __future__ import annotations

from datetime import timedelta

import pytest

from apps.audit.models import AuditLog
from apps.bookings.application.command_handlers import (
    ActivateBookingCommand,
    AdvanceReturnCommand,
    BackupActivateBookingCommand,
    CancelBookingCommand,
    ConfirmBookingCommand,
    EditBookingLocationCommand,
    EditBookingWindowCommand,
    FinalizeReturnCommand,
    RecordOpsStepCommand,
    UpdateDeliveryStatusCommand,
)
from apps.bookings.models import Booking, ReturnStepRecord
from apps.bookings.services import transition_status
from apps.fleet import services as fleet
from apps.fleet.models import ReservationHold, VehicleUnit
from shared.application.message_bus import message_bus
from shared.domain.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NoUnitsAvailable,
    PermissionDeniedError,
    ValidationError,
)

CHECKIN_OK = {
    "gov_id_verified": True,
    "license_on_file": True,
    "name_matches": True,
    "license_not_expired": True,
    "age_verified": True,
}


def record(booking, step, data, actor):
    return message_bus.handle_command(
        RecordOpsStepCommand(booking_id=booking.pk, step_id=step, data=data, actor=actor)
    )


def advance(booking, target, actor, **kwargs):
    return message_bus.handle_command(
        AdvanceReturnCommand(booking_id=booking.pk, target_state=target, actor=actor, **kwargs)
    )


def walk_return_to_closeout(booking, actor) -> None:
    advance(booking, "initiated", actor)
    advance(booking, "intake_done", actor, payload={"odometer": 45210, "fuel_level": 80})
    advance(booking, "evidence_done", actor, payload={"photo_count": 6})
    advance(booking, "issues_reviewed", actor)
    advance(booking, "closeout_done", actor)


@pytest.fixture
def on_rent_booking(make_unit, make_booking):
    unit = make_unit(status=VehicleUnit.Status.ON_RENT)
    return make_booking(status=Booking.Status.ACTIVE, assigned_unit=unit)


# ---------------------------------------------------------------------------
# Handover
# ---------------------------------------------------------------------------


@pytest.mark.django_db
def test_activation_blocked_until_checklist_complete(make_unit, make_booking, staff) -> None:
    make_unit()
    booking = make_booking()

    with pytest.raises(InvalidTransitionError) as exc_info:
        message_bus.handle_command(ActivateBookingCommand(booking_id=booking.pk, actor=staff))
    assert exc_info.value.code == "checklist_incomplete"

    message_bus.handle_command(ConfirmBookingCommand(booking_id=booking.pk, actor=staff))
    record(booking, "checkin", CHECKIN_OK, staff)
    record(booking, "payment", {"deposit_collected": True}, staff)
    record(booking, "agreement", {"agreement_signed": True}, staff)
    record(booking, "walkaround", {"inspection_complete": True, "odometer": 45000, "fuel_level": 100}, staff)
    result = record(booking, "photos", {"photos_complete": True, "photo_count": 12}, staff)
    assert result.details["missing"] == ["unit_assignment"]

    fleet.assign_unit(booking.pk, actor=staff)
    result = message_bus.handle_command(ActivateBookingCommand(booking_id=booking.pk, actor=staff, sms_sent=True))

    assert result.booking.status == Booking.Status.ACTIVE
    assert result.booking.activation_method == Booking.ActivationMethod.NORMAL
    assert Booking.objects.get(pk=booking.pk).status == Booking.Status.ACTIVE

    again = message_bus.handle_command(ActivateBookingCommand(booking_id=booking.pk, actor=staff))
    assert again.already_complete
    assert AuditLog.objects.filter(action="booking.activated").count() == 1


@pytest.mark.django_db
def test_derived_steps_cannot_be_recorded(make_booking, staff) -> None:
    booking = make_booking()
    with pytest.raises(ValidationError):
        record(booking, "unit_assignment", {}, staff)
    with pytest.raises(ValidationError):
        record(booking, "handover", {"activated": True}, staff)


@pytest.mark.django_db
def test_backup_activation_is_audited_distinctly(make_unit, make_booking, staff) -> None:
    make_unit()
    booking = make_booking()

    with pytest.raises(ConflictError):
        message_bus.handle_command(BackupActivateBookingCommand(
            booking_id=booking.pk, actor=staff, reason="card reader offline", photo_count=2,
        ))

    fleet.assign_unit(booking.pk, actor=staff)
    with pytest.raises(ValidationError):
        message_bus.handle_command(BackupActivateBookingCommand(
            booking_id=booking.pk, actor=staff, reason="offline", photo_count=2,
        ))

    result = message_bus.handle_command(BackupActivateBookingCommand(
        booking_id=booking.pk, actor=staff, reason="card reader offline", photo_count=2,
    ))

    assert result.booking.status == Booking.Status.ACTIVE
    assert result.booking.activation_method == Booking.ActivationMethod.BACKUP
    entry = AuditLog.objects.get(action="booking.backup_activated")
    assert "checkin" in entry.new_data["skipped_steps"]
    assert not AuditLog.objects.filter(action="booking.activated").exists()


@pytest.mark.django_db
def test_delivery_backup_activation_waits_for_driver(make_unit, make_booking, staff) -> None:
    make_unit()
    booking = make_booking(fulfillment_type=Booking.FulfillmentType.DELIVERY)
    fleet.assign_unit(booking.pk, actor=staff)
    command = BackupActivateBookingCommand(
        booking_id=booking.pk, actor=staff, reason="customer at curb, tablet dead", photo_count=1,
    )

    with pytest.raises(ValidationError):
        message_bus.handle_command(command)

    message_bus.handle_command(UpdateDeliveryStatusCommand(
        booking_id=booking.pk, delivery_status="arrived", actor=staff,
    ))
    assert message_bus.handle_command(command).booking.status == Booking.Status.ACTIVE


@pytest.mark.django_db
def test_stale_transition_loses(make_booking) -> None:
    booking = make_booking()
    first_view = Booking.objects.get(pk=booking.pk)
    second_view = Booking.objects.get(pk=booking.pk)

    transition_status(first_view, Booking.Status.PENDING, Booking.Status.CONFIRMED)
    with pytest.raises(InvalidTransitionError) as exc_info:
        transition_status(second_view, Booking.Status.PENDING, Booking.Status.CANCELLED)

    assert exc_info.value.code == "stale_status"
    assert exc_info.value.current_state == Booking.Status.CONFIRMED
    assert Booking.objects.get(pk=booking.pk).status == Booking.Status.CONFIRMED


# ---------------------------------------------------------------------------
# Return
# ---------------------------------------------------------------------------


@pytest.mark.django_db
def test_return_skip_leaves_state_unchanged(on_rent_booking, staff) -> None:
    with pytest.raises(InvalidTransitionError):
        advance(on_rent_booking, "closeout_done", staff)

    on_rent_booking.refresh_from_db()
    assert on_rent_booking.return_state == Booking.ReturnState.NOT_STARTED
    assert not ReturnStepRecord.objects.exists()


@pytest.mark.django_db
def test_return_steps_are_stamped_and_idempotent(on_rent_booking, staff) -> None:
    advance(on_rent_booking, "initiated", staff)
    result = advance(on_rent_booking, "intake_done", staff, payload={"odometer": 45210, "fuel_level": 80})
    assert result.booking.return_state == Booking.ReturnState.INTAKE_DONE

    repeat = advance(on_rent_booking, "initiated", staff)
    assert repeat.already_complete

    steps = list(ReturnStepRecord.objects.filter(booking=on_rent_booking))
    assert [(s.from_state, s.to_state) for s in steps] == [
        ("not_started", "initiated"), ("initiated", "intake_done"),
    ]
    assert steps[1].actor == staff
    assert steps[1].payload == {"odometer": 45210, "fuel_level": 80}


@pytest.mark.django_db
def test_intake_without_readings_is_rejected(on_rent_booking, staff) -> None:
    advance(on_rent_booking, "initiated", staff)
    with pytest.raises(ValidationError):
        advance(on_rent_booking, "intake_done", staff, payload={"odometer": 45210})
    on_rent_booking.refresh_from_db()
    assert on_rent_booking.return_state == Booking.ReturnState.INITIATED


@pytest.mark.django_db
def test_finalize_is_manager_only_and_releases_unit(on_rent_booking, staff, manager) -> None:
    walk_return_to_closeout(on_rent_booking, staff)
    unit = on_rent_booking.assigned_unit

    with pytest.raises(PermissionDeniedError):
        message_bus.handle_command(FinalizeReturnCommand(booking_id=on_rent_booking.pk, actor=staff))

    result = message_bus.handle_command(FinalizeReturnCommand(booking_id=on_rent_booking.pk, actor=manager))

    unit.refresh_from_db()
    assert result.booking.status == Booking.Status.COMPLETED
    assert result.booking.completed_by == manager
    assert result.booking.assigned_unit_id is None
    assert unit.status == VehicleUnit.Status.AVAILABLE


@pytest.mark.django_db
def test_finalize_requires_closeout(on_rent_booking, manager, staff) -> None:
    advance(on_rent_booking, "initiated", staff)
    with pytest.raises(InvalidTransitionError) as exc_info:
        message_bus.handle_command(FinalizeReturnCommand(booking_id=on_rent_booking.pk, actor=manager))
    assert exc_info.value.code == "closeout_required"


@pytest.mark.django_db
def test_finalize_can_send_unit_to_damage(on_rent_booking, staff, manager) -> None:
    walk_return_to_closeout(on_rent_booking, staff)
    unit = on_rent_booking.assigned_unit

    message_bus.handle_command(FinalizeReturnCommand(
        booking_id=on_rent_booking.pk, actor=manager, unit_status=VehicleUnit.Status.DAMAGE,
    ))

    unit.refresh_from_db()
    assert unit.status == VehicleUnit.Status.DAMAGE


@pytest.mark.django_db
def test_returned_unit_keeps_cleaning_buffer_before_next_rental(make_unit, make_booking, staff, manager) -> None:
    unit = make_unit(status=VehicleUnit.Status.ON_RENT, cleaning_buffer_hours=2)
    finished = make_booking(status=Booking.Status.ACTIVE, assigned_unit=unit)
    walk_return_to_closeout(finished, staff)
    message_bus.handle_command(FinalizeReturnCommand(booking_id=finished.pk, actor=manager))
    finished.refresh_from_db()
    assert finished.assigned_unit_id is None
    assert finished.returned_unit_id == unit.pk

    tight = make_booking(start_at=finished.end_at + timedelta(minutes=30))
    with pytest.raises(NoUnitsAvailable):
        fleet.assign_unit(tight.pk, actor=staff)

    later = make_booking(start_at=finished.end_at + timedelta(hours=2))
    fleet.assign_unit(later.pk, actor=staff)
    later.refresh_from_db()
    assert later.assigned_unit_id == unit.pk


# ---------------------------------------------------------------------------
# Cancel and edits
# ---------------------------------------------------------------------------


@pytest.mark.django_db
def test_customer_cancel_releases_unit_and_hold(make_unit, make_booking, category, location, customer, staff, pickup_at) -> None:
    unit = make_unit()
    hold = ReservationHold.objects.create(
        category=category, location=location, session_key="checkout",
        start_at=pickup_at, end_at=pickup_at + timedelta(days=3),
        expires_at=pickup_at,
    )
    booking = make_booking(reservation_hold=hold)
    fleet.assign_unit(booking.pk, actor=staff)

    result = message_bus.handle_command(
        CancelBookingCommand(booking_id=booking.pk, reason="plans changed", actor=customer)
    )

    unit.refresh_from_db()
    hold.refresh_from_db()
    assert result.booking.status == Booking.Status.CANCELLED
    assert result.booking.assigned_unit_id is None
    assert unit.status == VehicleUnit.Status.AVAILABLE
    assert hold.status == ReservationHold.Status.RELEASED

    again = message_bus.handle_command(
        CancelBookingCommand(booking_id=booking.pk, reason="plans changed", actor=customer)
    )
    assert again.already_complete


@pytest.mark.django_db
def test_cancel_needs_reason_and_owner(make_booking, staff) -> None:
    from apps.users.models import CustomUser

    booking = make_booking()
    stranger = CustomUser.objects.create_user(email="someone@example.com", password="pass12345")

    with pytest.raises(ValidationError):
        message_bus.handle_command(CancelBookingCommand(booking_id=booking.pk, reason=" ", actor=staff))
    with pytest.raises(PermissionDeniedError):
        message_bus.handle_command(CancelBookingCommand(booking_id=booking.pk, reason="nope", actor=stranger))


@pytest.mark.django_db
def test_customer_cannot_cancel_active_rental(on_rent_booking, customer) -> None:
    with pytest.raises(PermissionDeniedError):
        message_bus.handle_command(
            CancelBookingCommand(booking_id=on_rent_booking.pk, reason="done early", actor=customer)
        )


@pytest.mark.django_db
def test_edit_window_reprices(make_unit, make_booking, staff, pickup_at) -> None:
    make_unit()
    booking = make_booking(days=3)
    before = booking.total_amount

    result = message_bus.handle_command(EditBookingWindowCommand(
        booking_id=booking.pk, start_at=pickup_at, end_at=pickup_at + timedelta(days=7), actor=staff,
    ))

    assert result.booking.total_amount > before
    assert result.booking.quote["discountTier"] == "weekly"
    assert result.booking.needs_relock is False


@pytest.mark.django_db
def test_edit_window_checks_assigned_unit(make_unit, make_booking, category, location, staff, pickup_at) -> None:
    unit = make_unit()
    booking = make_booking(days=3)
    fleet.assign_unit(booking.pk, actor=staff)
    ReservationHold.objects.create(
        category=category, location=location, unit=unit, session_key="other",
        start_at=pickup_at + timedelta(days=4), end_at=pickup_at + timedelta(days=6),
        expires_at=pickup_at + timedelta(days=1),
    )

    with pytest.raises(ConflictError) as exc_info:
        message_bus.handle_command(EditBookingWindowCommand(
            booking_id=booking.pk, start_at=pickup_at, end_at=pickup_at + timedelta(days=5), actor=staff,
        ))
    assert exc_info.value.code == "unit_window_conflict"


@pytest.mark.django_db
def test_edit_location_clears_unit(make_unit, make_booking, other_location, staff) -> None:
    unit = make_unit()
    make_unit(location=other_location)
    booking = make_booking()
    fleet.assign_unit(booking.pk, actor=staff)

    result = message_bus.handle_command(
        EditBookingLocationCommand(booking_id=booking.pk, location_id=other_location.pk, actor=staff)
    )

    unit.refresh_from_db()
    assert result.booking.location_id == other_location.pk
    assert result.booking.assigned_unit_id is None
    assert unit.status == VehicleUnit.Status.AVAILABLE
    assert AuditLog.objects.filter(action="fleet.unit_released", entity_id=str(booking.pk)).exists()
