"""Fleet allocation services.

Every change to which physical unit serves which booking goes through
this module. Each mutating function runs inside a unit of work, locks the
rows it contends for and writes its audit entry in the same transaction.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Iterable

from django.conf import settings  # type: ignore
from django.db.models import Q  # type: ignore
from django.utils import timezone  # type: ignore

from apps.audit.services import record_audit
from apps.pricing.domain.upgrade import apply_upgrade
from apps.users.services import require_staff
from shared.application.uow import DjangoUnitOfWork
from shared.domain.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NoUnitsAvailable,
    ValidationError,
)
from shared.domain.value_objects import TimeWindow, round_cents
from shared.infrastructure.locking import get_locked, lock_queryset_if_possible

from .domain.events import ReservationHoldPlaced, UnitReleased
from .domain.schedule import Occupation, UnitSchedule
from .models import Location, ReservationHold, VehicleCategory, VehicleUnit

logger = logging.getLogger(__name__)


def _booking_model():
    from apps.bookings.models import Booking  # Local import to prevent circular dependency

    return Booking


def _get_booking_for_update(booking_id):
    return get_locked(_booking_model(), booking_id, label="Booking")


def _ids_match(left, right) -> bool:
    return str(left) == str(right)


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


def load_unit_schedules(
    units: Iterable[VehicleUnit],
    window: TimeWindow,
    *,
    now=None,
) -> dict:
    """
    Build a UnitSchedule per unit holding every booking, completed rental
    and unit-level hold that could collide with ``window`` once padded by
    the unit's cleaning buffer.
    """

    Booking = _booking_model()
    units = list(units)
    if not units:
        return {}

    max_buffer = max((unit.cleaning_buffer for unit in units), default=timedelta(0))
    padded_start = window.start_at - max_buffer
    padded_end = window.end_at + max_buffer
    unit_ids = [unit.pk for unit in units]

    occupations: dict = defaultdict(list)
    bookings = Booking.objects.filter(
        Q(assigned_unit_id__in=unit_ids, status__in=Booking.BLOCKING_STATUSES)
        | Q(returned_unit_id__in=unit_ids, status=Booking.Status.COMPLETED),
        start_at__lt=padded_end,
        end_at__gt=padded_start,
    ).values_list("id", "assigned_unit_id", "returned_unit_id", "start_at", "end_at")
    for booking_id, assigned_id, returned_id, start_at, end_at in bookings:
        unit_id = assigned_id if assigned_id is not None else returned_id
        occupations[unit_id].append(
            Occupation(window=TimeWindow(start_at, end_at), booking_id=booking_id)
        )

    holds = (
        ReservationHold.objects.active(now)
        .filter(unit_id__in=unit_ids, start_at__lt=padded_end, end_at__gt=padded_start)
        .values_list("id", "unit_id", "start_at", "end_at")
    )
    for hold_id, unit_id, start_at, end_at in holds:
        occupations[unit_id].append(Occupation(window=TimeWindow(start_at, end_at), hold_id=hold_id))

    return {
        unit.pk: UnitSchedule(
            id=unit.pk,
            unit_id=unit.pk,
            cleaning_buffer=unit.cleaning_buffer,
            occupations=occupations.get(unit.pk, []),
        )
        for unit in units
    }


def _free_units(category_id, location_id, window: TimeWindow, *, now=None) -> list[VehicleUnit]:
    units = list(
        VehicleUnit.objects.filter(
            category_id=category_id,
            location_id=location_id,
            status=VehicleUnit.Status.AVAILABLE,
        ).order_by("created_at", "vin")
    )
    schedules = load_unit_schedules(units, window, now=now)
    return [unit for unit in units if schedules[unit.pk].can_allocate(window)]


def _category_demand(category_id, location_id, window: TimeWindow, *, now=None, exclude_booking_id=None) -> int:
    """Claims on the category pool that have no unit yet: checkout holds and unassigned bookings."""

    Booking = _booking_model()
    holds = (
        ReservationHold.objects.active(now)
        .overlapping(window)
        .filter(category_id=category_id, location_id=location_id, unit__isnull=True)
        .count()
    )
    unassigned = Booking.objects.filter(
        category_id=category_id,
        location_id=location_id,
        assigned_unit__isnull=True,
        status__in=(Booking.Status.PENDING, Booking.Status.CONFIRMED),
        start_at__lt=window.end_at,
        end_at__gt=window.start_at,
    )
    if exclude_booking_id is not None:
        unassigned = unassigned.exclude(pk=exclude_booking_id)
    return holds + unassigned.count()


def find_available(
    category_id,
    location_id,
    window: TimeWindow,
    *,
    now=None,
    exclude_booking_id=None,
) -> list[VehicleUnit]:
    """
    Units of the category at the location that can still be promised for
    ``window``.

    Read-only. Active, unexpired checkout holds and bookings that are not
    yet tied to a unit occupy inventory, so the result is shortened by
    that many units.
    """

    free = _free_units(category_id, location_id, window, now=now)
    demand = _category_demand(
        category_id, location_id, window, now=now, exclude_booking_id=exclude_booking_id
    )
    return free[: max(0, len(free) - demand)]


def category_availability(category_id, location_id, window: TimeWindow, *, now=None) -> dict:
    """Derived counts for one category at one location; nothing here is stored."""

    total = VehicleUnit.objects.filter(category_id=category_id, location_id=location_id).count()
    available = len(find_available(category_id, location_id, window, now=now))
    return {"total_units": total, "available_units": available}


def available_categories(location_id, window: TimeWindow, *, now=None) -> list[dict]:
    """Active categories with at least one promisable unit, in display order."""

    result = []
    for category in VehicleCategory.objects.filter(is_active=True):
        counts = category_availability(category.pk, location_id, window, now=now)
        if counts["available_units"] > 0:
            result.append({"category": category, **counts})
    return result


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


def assign_unit(booking_id, category_id=None, location_id=None, *, unit_id=None, actor=None):
    """
    Atomically pick one qualifying unit, flip it to on_rent and link it to
    the booking.

    The candidate unit rows are locked and the claim is a conditional
    ``available -> on_rent`` update, so two concurrent callers racing for
    the last unit can never both succeed.

    Raises:
        ConflictError: location/category mismatch with the booking, or an
            explicitly requested unit that cannot serve it
        NoUnitsAvailable: nothing in the pool is free for the window
        InvalidTransitionError: booking is not pending/confirmed
    """

    Booking = _booking_model()
    require_staff(actor)

    with DjangoUnitOfWork() as uow:
        booking = _get_booking_for_update(booking_id)
        if booking.status not in (Booking.Status.PENDING, Booking.Status.CONFIRMED):
            raise InvalidTransitionError(
                f"Cannot assign a unit to a {booking.status} booking.",
                current_state=booking.status,
            )

        category_id = category_id or booking.category_id
        location_id = location_id or booking.location_id
        if not _ids_match(location_id, booking.location_id):
            raise ConflictError(
                f"Booking {booking.code} is scoped to location {booking.location_id}, "
                f"not {location_id}.",
                code="location_mismatch",
            )
        if not _ids_match(category_id, booking.category_id):
            raise ConflictError(
                f"Booking {booking.code} draws from category {booking.category_id}; "
                "change the category before assigning from another pool.",
                code="category_mismatch",
            )

        if booking.assigned_unit_id:
            if unit_id is None or _ids_match(unit_id, booking.assigned_unit_id):
                return booking
            raise ConflictError(
                f"Booking {booking.code} already has unit {booking.assigned_unit_id}; release it first.",
                code="already_assigned",
            )

        candidates = VehicleUnit.objects.filter(
            category_id=category_id,
            location_id=location_id,
            status=VehicleUnit.Status.AVAILABLE,
        ).order_by("created_at", "vin")

        if unit_id is not None:
            requested = VehicleUnit.objects.filter(pk=unit_id).first()
            if requested is None:
                raise ValidationError(f"Vehicle unit {unit_id} does not exist.", code="not_found")
            if requested.location_id != booking.location_id:
                raise ConflictError(
                    f"Unit {requested.plate} is at a different location than booking {booking.code}.",
                    code="location_mismatch",
                )
            if requested.category_id != booking.category_id:
                raise ConflictError(
                    f"Unit {requested.plate} belongs to another category than booking {booking.code}.",
                    code="category_mismatch",
                )
            candidates = candidates.filter(pk=requested.pk)

        units = list(lock_queryset_if_possible(candidates))
        window = booking.window
        schedules = load_unit_schedules(units, window)
        now = timezone.now()

        for unit in units:
            schedule = schedules[unit.pk]
            if not schedule.can_allocate(window, booking_id=booking.pk):
                continue
            claimed = VehicleUnit.objects.filter(
                pk=unit.pk, status=VehicleUnit.Status.AVAILABLE
            ).update(status=VehicleUnit.Status.ON_RENT, updated_at=now)
            if not claimed:
                logger.info(f"Unit {unit.pk} was claimed concurrently, trying next candidate")
                continue

            schedule.allocate(booking.pk, window)
            booking.assigned_unit = unit
            booking.save(update_fields=["assigned_unit", "updated_at"])
            unit.status = VehicleUnit.Status.ON_RENT

            record_audit(
                "fleet.unit_assigned",
                booking,
                actor,
                old_data={"assigned_unit": None},
                new_data={"assigned_unit": unit.pk, "vin": unit.vin, "plate": unit.plate},
                entity_type="booking",
            )
            uow.collect_events(schedule)
            logger.info(f"Assigned unit {unit.plate} to booking {booking.code}")
            return booking

        logger.warning(
            f"No units available for booking {booking.code} "
            f"(category={category_id}, location={location_id}, window={window})"
        )
        if unit_id is not None:
            raise NoUnitsAvailable(
                f"Unit {unit_id} is not available for {window}.",
            )
        raise NoUnitsAvailable(
            f"No units available for this category at this location for {window}.",
        )


def _release_locked_unit(booking, new_status: str, actor, *, reason: str = ""):
    """Unlink the booking's unit; caller holds the booking row lock."""

    if new_status not in VehicleUnit.Status.values:
        raise ValidationError(f"Unknown unit status '{new_status}'.", code="invalid_unit_status")
    unit_id = booking.assigned_unit_id
    if unit_id is None:
        return None

    unit = get_locked(VehicleUnit, unit_id, label="Vehicle unit")
    old_status = unit.status
    VehicleUnit.objects.filter(pk=unit.pk).update(status=new_status, updated_at=timezone.now())
    unit.status = new_status

    booking.assigned_unit = None
    booking.save(update_fields=["assigned_unit", "updated_at"])

    record_audit(
        "fleet.unit_released",
        booking,
        actor,
        old_data={"assigned_unit": unit.pk, "unit_status": old_status},
        new_data={"assigned_unit": None, "unit_status": new_status, "reason": reason},
        entity_type="booking",
    )
    logger.info(f"Released unit {unit.plate} from booking {booking.code} -> {new_status}")
    return UnitReleased(aggregate_id=unit.pk, unit_id=unit.pk, booking_id=booking.pk, new_status=new_status)


def release_unit(booking_id, new_status: str = VehicleUnit.Status.AVAILABLE, *, actor=None, reason: str = ""):
    """Unlink the assigned unit and reset its status. A booking with no unit is left as is."""

    require_staff(actor)
    with DjangoUnitOfWork() as uow:
        booking = _get_booking_for_update(booking_id)
        event = _release_locked_unit(booking, new_status, actor, reason=reason)
        if event:
            uow.add_event(event)
    return booking


def clear_unit_assignment(
    booking, *, actor=None, reason: str = "", new_status: str = VehicleUnit.Status.AVAILABLE
):
    """
    Explicitly drop the unit link, e.g. after a location edit.

    Joins the caller's transaction; the caller must hold the booking lock.
    """

    return _release_locked_unit(booking, new_status, actor, reason=reason)


def change_category(booking_id, new_category_id, *, actor=None):
    """
    Move the booking to another category pool.

    The price is left alone: any delta must be applied through
    ``apply_upgrade_fee``. A unit from the old pool is released.
    """

    Booking = _booking_model()
    require_staff(actor)
    with DjangoUnitOfWork() as uow:
        booking = _get_booking_for_update(booking_id)
        if booking.status not in (Booking.Status.PENDING, Booking.Status.CONFIRMED):
            raise InvalidTransitionError(
                f"Cannot change the category of a {booking.status} booking.",
                current_state=booking.status,
            )
        category = VehicleCategory.objects.filter(pk=new_category_id).first()
        if category is None:
            raise ValidationError(f"Vehicle category {new_category_id} does not exist.", code="not_found")
        if category.pk == booking.category_id:
            return booking

        old_category_id = booking.category_id
        if booking.assigned_unit_id:
            event = _release_locked_unit(
                booking, VehicleUnit.Status.AVAILABLE, actor, reason="category changed"
            )
            if event:
                uow.add_event(event)

        booking.category = category
        booking.save(update_fields=["category", "updated_at"])
        record_audit(
            "fleet.category_changed",
            booking,
            actor,
            old_data={"category": old_category_id},
            new_data={"category": category.pk},
            entity_type="booking",
        )
        logger.info(f"Booking {booking.code} moved to category {category.name}")
    return booking


def apply_upgrade_fee(booking_id, *, daily_fee=None, reason: str = "", actor=None):
    """
    Add ``daily_fee x rental days`` to the booking total.

    Without an override the fee is the rate delta between the booking's
    quoted daily rate and its current category's rate, clamped at zero.
    Re-applying replaces the previous fee rather than stacking it.
    """

    require_staff(actor)
    with DjangoUnitOfWork():
        booking = _get_booking_for_update(booking_id)
        if booking.is_terminal:
            raise InvalidTransitionError(
                f"Cannot change the price of a {booking.status} booking.",
                current_state=booking.status,
            )
        upgrade = apply_upgrade(
            booking.total_amount,
            booking.rental_days,
            daily_fee=daily_fee,
            old_daily_rate=booking.daily_rate,
            new_daily_rate=booking.category.daily_rate,
            pre_upgrade_total=booking.pre_upgrade_total,
        )
        old = {
            "total_amount": booking.total_amount,
            "upgrade_daily_fee": booking.upgrade_daily_fee,
        }
        if booking.pre_upgrade_total is None:
            booking.pre_upgrade_total = booking.total_amount
        booking.upgrade_daily_fee = upgrade.daily_fee
        booking.total_amount = round_cents(upgrade.new_total)
        booking.upgrade_reason = reason
        booking.upgraded_at = timezone.now()
        booking.upgraded_by = actor
        booking.save(update_fields=[
            "pre_upgrade_total", "upgrade_daily_fee", "total_amount",
            "upgrade_reason", "upgraded_at", "upgraded_by", "updated_at",
        ])
        record_audit(
            "pricing.upgrade_fee_applied",
            booking,
            actor,
            old_data=old,
            new_data={
                "total_amount": booking.total_amount,
                "upgrade_daily_fee": booking.upgrade_daily_fee,
                "rental_days": upgrade.rental_days,
                "reason": reason,
            },
            entity_type="booking",
        )
        logger.info(
            f"Upgrade fee {upgrade.daily_fee}/day applied to {booking.code}: total {booking.total_amount}"
        )
    return booking


def remove_upgrade_fee(booking_id, *, actor=None):
    """Drop the upgrade fee and restore the exact total it was applied to."""

    require_staff(actor)
    with DjangoUnitOfWork():
        booking = _get_booking_for_update(booking_id)
        if booking.pre_upgrade_total is None:
            return booking
        if booking.is_terminal:
            raise InvalidTransitionError(
                f"Cannot change the price of a {booking.status} booking.",
                current_state=booking.status,
            )
        old = {"total_amount": booking.total_amount, "upgrade_daily_fee": booking.upgrade_daily_fee}
        booking.total_amount = booking.pre_upgrade_total
        booking.pre_upgrade_total = None
        booking.upgrade_daily_fee = None
        booking.upgrade_reason = ""
        booking.upgraded_at = None
        booking.upgraded_by = None
        booking.save(update_fields=[
            "pre_upgrade_total", "upgrade_daily_fee", "total_amount",
            "upgrade_reason", "upgraded_at", "upgraded_by", "updated_at",
        ])
        record_audit(
            "pricing.upgrade_fee_removed",
            booking,
            actor,
            old_data=old,
            new_data={"total_amount": booking.total_amount, "upgrade_daily_fee": None},
            entity_type="booking",
        )
    return booking


# ---------------------------------------------------------------------------
# Checkout holds
# ---------------------------------------------------------------------------


def _hold_minutes() -> int:
    return int(settings.RENTAL_RULES.get("RESERVATION_HOLD_MINUTES", 15))


def create_reservation_hold(
    category_id,
    location_id,
    window: TimeWindow,
    session_key: str,
    *,
    unit_id=None,
    actor=None,
) -> ReservationHold:
    """
    Reserve one unit's worth of inventory while the customer checks out.

    Holds for the same category are serialised on the category row, so two
    checkouts can never both take the last promisable unit. An active
    hold for the same session is refreshed instead of duplicated.
    """

    if not session_key:
        raise ValidationError("A checkout session is required to hold inventory.", code="missing_session")

    with DjangoUnitOfWork() as uow:
        get_locked(VehicleCategory, category_id, label="Vehicle category")
        if not Location.objects.filter(pk=location_id).exists():
            raise ValidationError(f"Location {location_id} does not exist.", code="not_found")

        now = timezone.now()
        expires_at = now + timedelta(minutes=_hold_minutes())

        existing = (
            ReservationHold.objects.active(now)
            .filter(session_key=session_key, category_id=category_id, location_id=location_id)
            .first()
        )
        if existing and existing.start_at == window.start_at and existing.end_at == window.end_at:
            existing.expires_at = expires_at
            existing.save(update_fields=["expires_at"])
            return existing
        if existing:
            # A changed window releases the old hold before re-checking availability.
            existing.status = ReservationHold.Status.RELEASED
            existing.save(update_fields=["status"])

        if unit_id is not None:
            # Same row lock assign_unit takes, so the unit cannot flip to on_rent mid-check.
            unit = lock_queryset_if_possible(VehicleUnit.objects.filter(pk=unit_id)).first()
            if unit is None or not _ids_match(unit.category_id, category_id) \
                    or not _ids_match(unit.location_id, location_id):
                raise ConflictError(
                    "The requested unit cannot serve this category and location.",
                    code="unit_mismatch",
                )
            if unit not in _free_units(category_id, location_id, window, now=now):
                raise NoUnitsAvailable(f"Unit {unit.plate} is not available for {window}.")
        elif not find_available(category_id, location_id, window, now=now):
            raise NoUnitsAvailable(
                f"No units available for this category at this location for {window}."
            )

        hold = ReservationHold.objects.create(
            category_id=category_id,
            location_id=location_id,
            unit_id=unit_id,
            session_key=session_key,
            start_at=window.start_at,
            end_at=window.end_at,
            expires_at=expires_at,
        )
        record_audit(
            "fleet.hold_created",
            hold,
            actor,
            new_data={"session_key": session_key, "window": str(window), "expires_at": expires_at},
            entity_type="reservation_hold",
        )
        uow.add_event(ReservationHoldPlaced(
            aggregate_id=hold.pk,
            hold_id=hold.pk,
            category_id=hold.category_id,
            location_id=hold.location_id,
            window=window,
        ))
        logger.info(f"Reservation hold {hold.pk} placed until {expires_at.isoformat()}")
    return hold


def release_reservation_hold(hold_id, *, actor=None) -> ReservationHold:
    """Give an active hold back to the pool. Releasing twice is a no-op."""

    with DjangoUnitOfWork():
        hold = get_locked(ReservationHold, hold_id, label="Reservation hold")
        if hold.status != ReservationHold.Status.ACTIVE:
            return hold
        hold.status = ReservationHold.Status.RELEASED
        hold.save(update_fields=["status"])
        record_audit(
            "fleet.hold_released", hold, actor,
            old_data={"status": ReservationHold.Status.ACTIVE},
            new_data={"status": hold.status},
            entity_type="reservation_hold",
        )
    return hold


def convert_reservation_hold(hold: ReservationHold, *, now=None) -> ReservationHold:
    """Turn an active hold into a booking's claim. Joins the caller's transaction."""

    now = now or timezone.now()
    converted = ReservationHold.objects.filter(
        pk=hold.pk, status=ReservationHold.Status.ACTIVE, expires_at__gt=now
    ).update(status=ReservationHold.Status.CONVERTED)
    if not converted:
        raise ConflictError(
            "The checkout hold has expired or was already used; please search availability again.",
            code="hold_expired",
        )
    hold.status = ReservationHold.Status.CONVERTED
    return hold


def expire_stale_holds(now=None) -> int:
    """
    Housekeeping only: mark lapsed holds expired.

    Availability never depends on this having run; expired holds are
    already ignored at read time.
    """

    now = now or timezone.now()
    count = ReservationHold.objects.filter(
        Q(status=ReservationHold.Status.ACTIVE) & Q(expires_at__lte=now)
    ).update(status=ReservationHold.Status.EXPIRED)
    if count:
        logger.info(f"Marked {count} reservation holds expired")
    return count
