"""
Booking Command Handlers

These are the use cases for the booking domain.
They orchestrate domain operations within transactions.

Commands:
- CreateBookingCommand: Create a pending booking (optionally from a checkout hold)
- ConfirmBookingCommand: Record payment (PENDING -> CONFIRMED)
- RecordOpsStepCommand: Record handover checklist data
- ActivateBookingCommand: Normal handover (-> ACTIVE)
- BackupActivateBookingCommand: Handover without a complete checklist
- AdvanceReturnCommand: Move the return workflow one step
- FinalizeReturnCommand: Close the contract (ACTIVE -> COMPLETED)
- CancelBookingCommand: Cancel from any non-terminal status
- EditBookingWindowCommand / EditBookingLocationCommand: Edits with repricing
- LockPricingCommand: Freeze the current quote into a PricingSnapshot

Every handler returns a TransitionResult holding the updated booking.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID
import logging

from django.conf import settings
from django.utils import timezone

from shared.application.uow import DjangoUnitOfWork
from shared.domain.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NoUnitsAvailable,
    PermissionDeniedError,
    ValidationError,
)
from shared.domain.value_objects import TimeWindow
from shared.infrastructure.locking import get_locked
from apps.audit.services import record_audit
from apps.fleet import services as fleet
from apps.fleet.domain.schedule import UnitSchedule
from apps.fleet.models import Location, ReservationHold, VehicleCategory, VehicleUnit
from apps.pricing.services import create_snapshot, pricing_input_for_booking, quote
from apps.users.services import require_actor, require_manager, require_staff
from apps.bookings.domain.entities import BookingStatus, plan_status_transition
from apps.bookings.domain.events import (
    BookingActivated,
    BookingCancelled,
    BookingCompleted,
    BookingCreated,
    PricingLocked,
    ReturnStepRecorded,
)
from apps.bookings.domain.ops_workflow import (
    STEP_TYPES,
    OpsStepId,
    parse_step_id,
    validate_backup_activation,
)
from apps.bookings.domain.return_workflow import (
    ReturnState,
    plan_return_transition,
    validate_return_payload,
)
from apps.bookings.models import Booking, ReturnStepRecord, StepCompletion
from apps.bookings.services import (
    PRICING_FIELDS,
    TransitionResult,
    get_booking_for_update,
    load_checklist,
    reprice,
    transition_status,
    update_ops_step,
)

logger = logging.getLogger(__name__)


def _rules() -> dict:
    return getattr(settings, 'RENTAL_RULES', {})


def _snapshot(booking: Booking) -> dict:
    return {
        'status': booking.status,
        'return_state': booking.return_state,
        'assigned_unit': booking.assigned_unit_id,
        'start_at': booking.start_at,
        'end_at': booking.end_at,
        'location': booking.location_id,
        'total_amount': booking.total_amount,
    }


def _require_owner_or_staff(actor, booking: Booking):
    actor = require_actor(actor)
    if actor.pk != booking.customer_id and not actor.is_ops_staff:
        raise PermissionDeniedError("Only the customer or staff can change this booking.")
    return actor


# ===== Commands =====

@dataclass
class CreateBookingCommand:
    """
    Command to create a pending booking at checkout

    With ``hold_id`` the checkout hold is converted into the booking;
    without it availability is checked under the category lock.
    """
    actor: Any
    category_id: UUID
    location_id: UUID
    start_at: datetime
    end_at: datetime
    hold_id: UUID | None = None
    customer_id: int | None = None
    driver_age_band: str | None = None
    protection_daily_rate: Decimal = Decimal('0')
    addons_total: Decimal = Decimal('0')
    fulfillment_type: str = Booking.FulfillmentType.PICKUP
    delivery_fee: Decimal = Decimal('0')


@dataclass
class ConfirmBookingCommand:
    """Command to confirm a booking after payment was taken"""
    booking_id: UUID
    actor: Any


@dataclass
class RecordOpsStepCommand:
    booking_id: UUID
    step_id: str
    data: dict
    actor: Any


@dataclass
class ActivateBookingCommand:
    booking_id: UUID
    actor: Any
    sms_sent: bool = False


@dataclass
class BackupActivateBookingCommand:
    booking_id: UUID
    actor: Any
    reason: str
    photo_count: int


@dataclass
class UpdateDeliveryStatusCommand:
    booking_id: UUID
    delivery_status: str
    actor: Any


@dataclass
class AdvanceReturnCommand:
    booking_id: UUID
    target_state: str
    actor: Any
    payload: dict = field(default_factory=dict)
    is_exception: bool = False
    exception_reason: str = ''


@dataclass
class FinalizeReturnCommand:
    """Command to finalize the contract once the return is closed out"""
    booking_id: UUID
    actor: Any
    unit_status: str = VehicleUnit.Status.AVAILABLE


@dataclass
class CancelBookingCommand:
    booking_id: UUID
    reason: str
    actor: Any


@dataclass
class EditBookingWindowCommand:
    booking_id: UUID
    start_at: datetime
    end_at: datetime
    actor: Any


@dataclass
class EditBookingLocationCommand:
    booking_id: UUID
    location_id: UUID
    actor: Any


@dataclass
class LockPricingCommand:
    booking_id: UUID
    actor: Any


# ===== Command Handlers =====

class CreateBookingHandler:
    """
    Handler for CreateBooking command

    1. Validate the window and the actor
    2. Lock the category row (serialises against concurrent checkouts)
    3. Convert the checkout hold, or check the pool still has a unit
    4. Price the booking with the category's current rate
    5. Create the booking and its empty checklist
    6. Publish BookingCreated after commit
    """

    def handle(self, command: CreateBookingCommand) -> TransitionResult:
        actor = require_actor(command.actor)
        customer = actor
        if command.customer_id is not None and command.customer_id != actor.pk:
            require_staff(actor)
            from apps.users.models import CustomUser

            customer = CustomUser.objects.filter(pk=command.customer_id).first()
            if customer is None:
                raise ValidationError(f"Customer {command.customer_id} does not exist.", code='not_found')

        window = TimeWindow(command.start_at, command.end_at)
        if command.fulfillment_type not in Booking.FulfillmentType.values:
            raise ValidationError(
                f"Unknown fulfillment type '{command.fulfillment_type}'.", code='invalid_fulfillment'
            )

        with DjangoUnitOfWork() as uow:
            category = get_locked(VehicleCategory, command.category_id, label='Vehicle category')
            if not category.is_active:
                raise ConflictError(f"Category {category.name} is not offered.", code='category_inactive')
            location = Location.objects.filter(pk=command.location_id, is_active=True).first()
            if location is None:
                raise ValidationError(f"Location {command.location_id} does not exist.", code='not_found')

            hold = None
            if command.hold_id is not None:
                hold = get_locked(ReservationHold, command.hold_id, label='Reservation hold')
                if (hold.category_id != category.pk or hold.location_id != location.pk
                        or hold.start_at != window.start_at or hold.end_at != window.end_at):
                    raise ConflictError(
                        "The checkout hold was placed for a different vehicle, location or time.",
                        code='hold_mismatch',
                    )
                fleet.convert_reservation_hold(hold)
            elif not fleet.find_available(category.pk, location.pk, window):
                raise NoUnitsAvailable(
                    f"No units available for {category.name} at {location.name} for {window}."
                )

            booking = Booking(
                customer=customer,
                location=location,
                category=category,
                reservation_hold=hold,
                start_at=window.start_at,
                end_at=window.end_at,
                fulfillment_type=command.fulfillment_type,
                driver_age_band=command.driver_age_band or '',
                daily_rate=category.daily_rate,
                protection_daily_rate=command.protection_daily_rate,
                addons_total=command.addons_total,
                delivery_fee=command.delivery_fee,
            )
            breakdown = reprice(booking)
            booking.deposit_amount = breakdown.deposit_amount
            booking.save()
            StepCompletion.objects.create(booking=booking)

            record_audit('booking.created', booking, actor, new_data=_snapshot(booking), entity_type='booking')
            uow.add_event(BookingCreated(
                aggregate_id=booking.pk,
                booking_id=booking.pk,
                code=booking.code,
                customer_id=customer.pk,
            ))
            logger.info(f"Created booking {booking.code} for {window} ({category.name} @ {location.name})")

        return TransitionResult(booking)


class ConfirmBookingHandler:
    """Handler for ConfirmBooking command (PENDING -> CONFIRMED)"""

    def handle(self, command: ConfirmBookingCommand) -> TransitionResult:
        actor = require_staff(command.actor)
        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(command.booking_id)
            plan = plan_status_transition(booking.status, BookingStatus.CONFIRMED)
            if plan.already_complete:
                return TransitionResult(booking, already_complete=True)

            transition_status(booking, Booking.Status.PENDING, Booking.Status.CONFIRMED)
            update_ops_step(booking, OpsStepId.PAYMENT, {'payment_complete': True}, actor=actor, uow=uow)
            record_audit(
                'booking.confirmed', booking, actor,
                old_data={'status': Booking.Status.PENDING},
                new_data={'status': booking.status},
                entity_type='booking',
            )
        return TransitionResult(booking)


class RecordOpsStepHandler:
    """Handler for RecordOpsStep command (staff records checklist data)"""

    def handle(self, command: RecordOpsStepCommand) -> TransitionResult:
        actor = require_staff(command.actor)
        step_id = parse_step_id(command.step_id)
        if not STEP_TYPES[step_id].recordable:
            raise ValidationError(
                f"Step '{step_id.value}' is derived by the system and cannot be recorded.",
                code='step_not_recordable',
            )

        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(command.booking_id)
            if booking.status not in (Booking.Status.PENDING, Booking.Status.CONFIRMED):
                raise InvalidTransitionError(
                    f"The handover checklist is closed for a {booking.status} booking.",
                    current_state=booking.status,
                )
            checklist, changed = update_ops_step(booking, step_id, command.data, actor=actor, uow=uow)

        return TransitionResult(
            booking,
            already_complete=not changed,
            details={'checklist': checklist.summary(), 'missing': [s.value for s in checklist.missing_steps()]},
        )


class ActivateBookingHandler:
    """
    Handler for ActivateBooking command

    Normal handover: every activation step must be complete.
    """

    def handle(self, command: ActivateBookingCommand) -> TransitionResult:
        actor = require_staff(command.actor)
        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(command.booking_id)
            plan = plan_status_transition(booking.status, BookingStatus.ACTIVE)
            if plan.already_complete:
                return TransitionResult(booking, already_complete=True)

            _completion, checklist = load_checklist(booking)
            missing = checklist.missing_steps()
            if missing:
                raise InvalidTransitionError(
                    "Activation blocked; incomplete steps: " + ", ".join(step.value for step in missing),
                    code='checklist_incomplete',
                    current_state=booking.status,
                )

            previous = booking.status
            now = timezone.now()
            transition_status(
                booking, previous, Booking.Status.ACTIVE,
                activation_method=Booking.ActivationMethod.NORMAL,
                activated_at=now,
                activated_by=actor,
            )
            update_ops_step(
                booking, OpsStepId.HANDOVER,
                {'activated': True, 'sms_sent': bool(command.sms_sent)},
                actor=actor,
            )
            record_audit(
                'booking.activated', booking, actor,
                old_data={'status': previous},
                new_data={'status': booking.status, 'method': Booking.ActivationMethod.NORMAL},
                entity_type='booking',
            )
            uow.add_event(BookingActivated(
                aggregate_id=booking.pk, booking_id=booking.pk, method=Booking.ActivationMethod.NORMAL,
            ))
            logger.info(f"Booking {booking.code} activated by {actor.pk}")
        return TransitionResult(booking)


class BackupActivateBookingHandler:
    """
    Handler for BackupActivateBooking command

    Activation without a complete checklist. Needs a written reason,
    evidence photos, an assigned unit and, for deliveries, a driver who
    has at least arrived. Audited as a distinct action.
    """

    def handle(self, command: BackupActivateBookingCommand) -> TransitionResult:
        actor = require_staff(command.actor)
        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(command.booking_id)
            plan = plan_status_transition(booking.status, BookingStatus.ACTIVE)
            if plan.already_complete:
                return TransitionResult(booking, already_complete=True)

            validate_backup_activation(
                reason=command.reason,
                photo_count=command.photo_count,
                is_delivery=booking.is_delivery,
                delivery_status=booking.delivery_status,
                min_reason_length=int(_rules().get('BACKUP_ACTIVATION_MIN_REASON_LENGTH', 10)),
            )
            if booking.assigned_unit_id is None:
                raise ConflictError(
                    "Assign a vehicle unit before activating the booking.", code='unit_required'
                )

            _completion, checklist = load_checklist(booking)
            previous = booking.status
            transition_status(
                booking, previous, Booking.Status.ACTIVE,
                activation_method=Booking.ActivationMethod.BACKUP,
                activated_at=timezone.now(),
                activated_by=actor,
                backup_activation_reason=command.reason.strip(),
                backup_photo_count=command.photo_count,
            )
            update_ops_step(booking, OpsStepId.HANDOVER, {'activated': True}, actor=actor)
            record_audit(
                'booking.backup_activated', booking, actor,
                old_data={'status': previous},
                new_data={
                    'status': booking.status,
                    'method': Booking.ActivationMethod.BACKUP,
                    'reason': booking.backup_activation_reason,
                    'photo_count': command.photo_count,
                    'skipped_steps': [step.value for step in checklist.missing_steps()],
                },
                entity_type='booking',
            )
            uow.add_event(BookingActivated(
                aggregate_id=booking.pk, booking_id=booking.pk, method=Booking.ActivationMethod.BACKUP,
            ))
            logger.warning(f"Booking {booking.code} backup-activated by {actor.pk}: {command.reason!r}")
        return TransitionResult(booking)


class UpdateDeliveryStatusHandler:
    """Delivery progress only moves forward."""

    def handle(self, command: UpdateDeliveryStatusCommand) -> TransitionResult:
        actor = require_staff(command.actor)
        order = list(Booking.DeliveryStatus.values)
        if command.delivery_status not in order:
            raise ValidationError(
                f"Unknown delivery status '{command.delivery_status}'.", code='invalid_delivery_status'
            )
        with DjangoUnitOfWork():
            booking = get_booking_for_update(command.booking_id)
            if not booking.is_delivery:
                raise ConflictError(f"Booking {booking.code} is a counter pickup.", code='not_delivery')
            if order.index(command.delivery_status) <= order.index(booking.delivery_status):
                return TransitionResult(booking, already_complete=True)
            old = booking.delivery_status
            booking.delivery_status = command.delivery_status
            booking.save(update_fields=['delivery_status', 'updated_at'])
            if command.delivery_status in (Booking.DeliveryStatus.ARRIVED, Booking.DeliveryStatus.DELIVERED):
                update_ops_step(booking, OpsStepId.CHECKIN, {'driver_arrived': True}, actor=actor)
            record_audit(
                'booking.delivery_status', booking, actor,
                old_data={'delivery_status': old},
                new_data={'delivery_status': booking.delivery_status},
                entity_type='booking',
            )
        return TransitionResult(booking)


class AdvanceReturnHandler:
    """
    Handler for AdvanceReturn command

    The current state is always read from the locked row; the command only
    names the target. Skips are rejected before anything is written.
    """

    def handle(self, command: AdvanceReturnCommand) -> TransitionResult:
        actor = require_staff(command.actor)
        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(command.booking_id)
            plan = plan_return_transition(booking.return_state, command.target_state)
            if plan.already_complete:
                return TransitionResult(booking, already_complete=True)
            if booking.status != Booking.Status.ACTIVE:
                raise InvalidTransitionError(
                    f"Returns can only be processed for active bookings (booking is {booking.status}).",
                    current_state=booking.status,
                )

            payload = validate_return_payload(
                plan.target,
                command.payload,
                is_exception=command.is_exception,
                exception_reason=command.exception_reason,
            )
            updated = Booking.objects.filter(
                pk=booking.pk, status=Booking.Status.ACTIVE, return_state=plan.current.value,
            ).update(return_state=plan.target.value, updated_at=timezone.now())
            if not updated:
                raise InvalidTransitionError(
                    "The return was advanced by someone else; reload and try again.",
                    code='stale_return_state',
                    current_state=plan.current.value,
                )
            booking.return_state = plan.target.value

            record = ReturnStepRecord.objects.create(
                booking=booking,
                from_state=plan.current.value,
                to_state=plan.target.value,
                actor=actor,
                is_exception=command.is_exception,
                exception_reason=command.exception_reason.strip(),
                payload=payload,
            )
            record_audit(
                'return.step_recorded', booking, actor,
                old_data={'return_state': plan.current.value},
                new_data={
                    'return_state': plan.target.value,
                    'is_exception': record.is_exception,
                    'exception_reason': record.exception_reason,
                    'payload': payload,
                },
                entity_type='booking',
            )
            uow.add_event(ReturnStepRecorded(
                aggregate_id=booking.pk,
                booking_id=booking.pk,
                from_state=plan.current.value,
                to_state=plan.target.value,
            ))
        return TransitionResult(booking, details={'record_id': record.pk})


class FinalizeReturnHandler:
    """
    Handler for FinalizeReturn command (ACTIVE -> COMPLETED)

    Separate, manager-only step after closeout. Releases the unit. The
    deposit is left for an explicit capture or release.
    """

    def handle(self, command: FinalizeReturnCommand) -> TransitionResult:
        actor = require_manager(command.actor)
        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(command.booking_id)
            plan = plan_status_transition(booking.status, BookingStatus.COMPLETED)
            if plan.already_complete:
                return TransitionResult(booking, already_complete=True)
            if booking.return_state != ReturnState.CLOSEOUT_DONE.value:
                raise InvalidTransitionError(
                    f"Return is at '{booking.return_state}'; closeout must be done before finalizing.",
                    code='closeout_required',
                    current_state=booking.return_state,
                )

            transition_status(
                booking, Booking.Status.ACTIVE, Booking.Status.COMPLETED,
                completed_at=timezone.now(),
                completed_by=actor,
                returned_unit_id=booking.assigned_unit_id,
            )
            released = fleet.clear_unit_assignment(
                booking, actor=actor, reason='rental completed', new_status=command.unit_status,
            )
            if released:
                uow.add_event(released)
            record_audit(
                'booking.completed', booking, actor,
                old_data={'status': Booking.Status.ACTIVE},
                new_data={'status': booking.status, 'unit_status': command.unit_status},
                entity_type='booking',
            )
            uow.add_event(BookingCompleted(aggregate_id=booking.pk, booking_id=booking.pk))
            logger.info(f"Booking {booking.code} completed by {actor.pk}")
        return TransitionResult(booking)


class CancelBookingHandler:
    """
    Handler for CancelBooking command

    Releases the unit and any live checkout hold. An authorized deposit
    stays authorized until someone releases it explicitly.
    """

    def handle(self, command: CancelBookingCommand) -> TransitionResult:
        reason = (command.reason or '').strip()
        if not reason:
            raise ValidationError("A cancellation reason is required.", code='reason_required')

        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(command.booking_id)
            actor = _require_owner_or_staff(command.actor, booking)
            plan = plan_status_transition(booking.status, BookingStatus.CANCELLED)
            if plan.already_complete:
                return TransitionResult(booking, already_complete=True)
            if booking.status == Booking.Status.ACTIVE:
                require_staff(actor)

            old_status = booking.status
            transition_status(
                booking, old_status, Booking.Status.CANCELLED,
                cancelled_at=timezone.now(),
                cancellation_reason=reason[:255],
                cancelled_by=actor,
            )
            released = fleet.clear_unit_assignment(booking, actor=actor, reason='booking cancelled')
            if released:
                uow.add_event(released)
            if booking.reservation_hold_id:
                ReservationHold.objects.filter(
                    pk=booking.reservation_hold_id, status=ReservationHold.Status.ACTIVE,
                ).update(status=ReservationHold.Status.RELEASED)

            record_audit(
                'booking.cancelled', booking, actor,
                old_data={'status': old_status},
                new_data={'status': booking.status, 'reason': booking.cancellation_reason},
                entity_type='booking',
            )
            uow.add_event(BookingCancelled(
                aggregate_id=booking.pk, booking_id=booking.pk, reason=reason, old_status=old_status,
            ))
            logger.info(f"Booking {booking.code} cancelled ({old_status}): {reason}")
        return TransitionResult(booking)


class EditBookingWindowHandler:
    """
    Handler for EditBookingWindow command

    The assigned unit (if any) must still be free for the new window; an
    unassigned booking needs room in its category pool. The quote is
    recomputed; a locked snapshot is kept and flagged for re-lock.
    """

    def handle(self, command: EditBookingWindowCommand) -> TransitionResult:
        actor = require_staff(command.actor)
        window = TimeWindow(command.start_at, command.end_at)

        with DjangoUnitOfWork():
            booking = get_booking_for_update(command.booking_id)
            if booking.status not in (Booking.Status.PENDING, Booking.Status.CONFIRMED):
                raise InvalidTransitionError(
                    f"Cannot change the dates of a {booking.status} booking.",
                    current_state=booking.status,
                )
            if window == booking.window:
                return TransitionResult(booking, already_complete=True)
            old = _snapshot(booking)

            if booking.assigned_unit_id:
                unit = get_locked(VehicleUnit, booking.assigned_unit_id, label='Vehicle unit')
                schedule: UnitSchedule = fleet.load_unit_schedules([unit], window)[unit.pk]
                conflicts = schedule.conflicts_with(window, ignore_booking=booking.pk)
                if conflicts:
                    raise ConflictError(
                        f"Unit {unit.plate} is not free for {window}; release it or pick other dates.",
                        code='unit_window_conflict',
                    )
            else:
                get_locked(VehicleCategory, booking.category_id, label='Vehicle category')
                if not fleet.find_available(
                    booking.category_id, booking.location_id, window, exclude_booking_id=booking.pk,
                ):
                    raise NoUnitsAvailable(f"No units available for this category for {window}.")

            booking.start_at = window.start_at
            booking.end_at = window.end_at
            reprice(booking)
            booking.save(update_fields=['start_at', 'end_at', *PRICING_FIELDS])
            record_audit('booking.window_edited', booking, actor, old_data=old,
                         new_data=_snapshot(booking), entity_type='booking')
        return TransitionResult(booking, details={'needs_relock': booking.needs_relock})


class EditBookingLocationHandler:
    """
    Handler for EditBookingLocation command

    Units are location-scoped, so the current assignment is explicitly
    cleared before the location changes.
    """

    def handle(self, command: EditBookingLocationCommand) -> TransitionResult:
        actor = require_staff(command.actor)
        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(command.booking_id)
            if booking.status not in (Booking.Status.PENDING, Booking.Status.CONFIRMED):
                raise InvalidTransitionError(
                    f"Cannot move a {booking.status} booking to another location.",
                    current_state=booking.status,
                )
            location = Location.objects.filter(pk=command.location_id, is_active=True).first()
            if location is None:
                raise ValidationError(f"Location {command.location_id} does not exist.", code='not_found')
            if location.pk == booking.location_id:
                return TransitionResult(booking, already_complete=True)
            old = _snapshot(booking)

            released = fleet.clear_unit_assignment(booking, actor=actor, reason='location changed')
            if released:
                uow.add_event(released)

            get_locked(VehicleCategory, booking.category_id, label='Vehicle category')
            if not fleet.find_available(
                booking.category_id, location.pk, booking.window, exclude_booking_id=booking.pk,
            ):
                raise NoUnitsAvailable(
                    f"No units available for this category at {location.name} for {booking.window}."
                )

            booking.location = location
            reprice(booking)
            booking.save(update_fields=['location', *PRICING_FIELDS])
            record_audit('booking.location_edited', booking, actor, old_data=old,
                         new_data=_snapshot(booking), entity_type='booking')
        return TransitionResult(booking, details={'needs_relock': booking.needs_relock})


class LockPricingHandler:
    """Freeze the current quote into a new PricingSnapshot."""

    def handle(self, command: LockPricingCommand) -> TransitionResult:
        actor = require_staff(command.actor)
        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(command.booking_id)
            if booking.is_terminal:
                raise InvalidTransitionError(
                    f"Cannot lock pricing on a {booking.status} booking.", current_state=booking.status,
                )
            if booking.locked_snapshot_id and not booking.needs_relock:
                return TransitionResult(booking, already_complete=True)

            data = pricing_input_for_booking(booking)
            breakdown = quote(data)
            snapshot = create_snapshot(booking, data, breakdown, actor)
            previous = booking.locked_snapshot_id
            booking.locked_snapshot = snapshot
            booking.needs_relock = False
            booking.save(update_fields=['locked_snapshot', 'needs_relock', 'updated_at'])
            record_audit(
                'pricing.locked', booking, actor,
                old_data={'locked_snapshot': previous},
                new_data={'locked_snapshot': snapshot.pk, 'version': snapshot.version, 'total': snapshot.total},
                entity_type='booking',
            )
            uow.add_event(PricingLocked(
                aggregate_id=booking.pk, booking_id=booking.pk, snapshot_id=snapshot.pk, total=snapshot.total,
            ))
        return TransitionResult(booking, details={'snapshot_id': snapshot.pk})


COMMAND_HANDLERS = {
    CreateBookingCommand: CreateBookingHandler,
    ConfirmBookingCommand: ConfirmBookingHandler,
    RecordOpsStepCommand: RecordOpsStepHandler,
    ActivateBookingCommand: ActivateBookingHandler,
    BackupActivateBookingCommand: BackupActivateBookingHandler,
    UpdateDeliveryStatusCommand: UpdateDeliveryStatusHandler,
    AdvanceReturnCommand: AdvanceReturnHandler,
    FinalizeReturnCommand: FinalizeReturnHandler,
    CancelBookingCommand: CancelBookingHandler,
    EditBookingWindowCommand: EditBookingWindowHandler,
    EditBookingLocationCommand: EditBookingLocationHandler,
    LockPricingCommand: LockPricingHandler,
}


def register_handlers(bus) -> None:
    for command_type, handler_class in COMMAND_HANDLERS.items():
        bus.register_command_handler(command_type, _bound(handler_class))


_HANDLER_CACHE: dict = {}


def _bound(handler_class):
    # One stable callable per handler class so re-registration is a no-op.
    if handler_class not in _HANDLER_CACHE:
        _HANDLER_CACHE[handler_class] = handler_class().handle
    return _HANDLER_CACHE[handler_class]
