"""Domain services for booking workflows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from django.utils import timezone  # type: ignore

from apps.audit.services import record_audit
from apps.pricing.domain.engine import PriceBreakdown
from apps.pricing.services import pricing_input_for_booking, quote
from shared.domain.exceptions import InvalidTransitionError
from shared.domain.value_objects import round_cents
from shared.infrastructure.locking import get_locked

from .domain.events import InspectionCompleted, PaymentConfirmed
from .domain.ops_workflow import OpsChecklist, OpsStepId, StepContext
from .models import Booking, StepCompletion

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    """What a booking operation returns: the updated booking, never a stale copy."""
    booking: Booking
    already_complete: bool = False
    details: dict = field(default_factory=dict)


def get_booking_for_update(booking_id) -> Booking:
    return get_locked(Booking, booking_id, label="Booking")


def transition_status(booking: Booking, expected: str, target: str, **changes: Any) -> Booking:
    """
    Apply ``expected -> target`` only if the stored status still is ``expected``.

    Exactly one of several concurrent callers wins; the others get
    InvalidTransitionError carrying the status they lost to.
    """

    now = timezone.now()
    updated = Booking.objects.filter(pk=booking.pk, status=expected).update(
        status=target, updated_at=now, **changes
    )
    if not updated:
        current = Booking.objects.filter(pk=booking.pk).values_list("status", flat=True).first()
        logger.warning(
            f"Booking {booking.pk} transition {expected} -> {target} lost: status is now {current}"
        )
        raise InvalidTransitionError(
            f"Booking is {current}, expected {expected}; it was changed by someone else.",
            code="stale_status",
            current_state=current,
        )
    booking.status = target
    booking.updated_at = now
    for name, value in changes.items():
        setattr(booking, name, value)
    return booking


# ---------------------------------------------------------------------------
# Ops checklist
# ---------------------------------------------------------------------------


def step_context(booking: Booking) -> StepContext:
    return StepContext(is_delivery=booking.is_delivery, assigned_unit_id=booking.assigned_unit_id)


def load_checklist(booking: Booking) -> tuple[StepCompletion, OpsChecklist]:
    completion, _created = StepCompletion.objects.get_or_create(booking=booking)
    return completion, OpsChecklist.from_storage(completion.steps, step_context(booking))


def update_ops_step(
    booking: Booking,
    step_id: OpsStepId,
    changes: Mapping[str, Any],
    *,
    actor=None,
    uow=None,
) -> tuple[OpsChecklist, bool]:
    """
    Merge ``changes`` into one step record and persist the checklist.

    Joins the caller's transaction. Returns the new checklist and whether
    anything changed. Completing the payment or walkaround step queues the
    matching notification event on ``uow``.
    """

    completion, checklist = load_checklist(booking)
    before = checklist.get(step_id)
    updated = checklist.with_step(step_id, changes)
    after = updated.get(step_id)
    if after == before:
        return checklist, False

    completion.steps = updated.to_storage()
    completion.save(update_fields=["steps", "updated_at"])
    record_audit(
        f"ops.step_{step_id.value}",
        booking,
        actor,
        old_data=before.to_dict(),
        new_data=after.to_dict(),
        entity_type="booking",
    )

    newly_complete = updated.is_step_complete(step_id) and not checklist.is_step_complete(step_id)
    if newly_complete and uow is not None:
        if step_id == OpsStepId.PAYMENT:
            uow.add_event(PaymentConfirmed(aggregate_id=booking.pk, booking_id=booking.pk))
        elif step_id == OpsStepId.WALKAROUND:
            uow.add_event(InspectionCompleted(aggregate_id=booking.pk, booking_id=booking.pk))
    logger.info(f"Booking {booking.code} step {step_id.value} updated (complete={updated.is_step_complete(step_id)})")
    return updated, True


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def reprice(booking: Booking) -> PriceBreakdown:
    """
    Recompute the unlocked quote from the booking's stored inputs.

    A locked snapshot is never touched: the booking is only flagged
    ``needs_relock`` when the new quote differs from it. An applied upgrade
    fee is carried over on top of the new total.
    """

    breakdown = quote(pricing_input_for_booking(booking))
    booking.quote = breakdown.to_dict()
    booking.subtotal = breakdown.subtotal
    booking.tax_amount = breakdown.tax_amount
    booking.currency = breakdown.currency
    if booking.upgrade_daily_fee is not None:
        booking.pre_upgrade_total = breakdown.total
        booking.total_amount = round_cents(
            breakdown.total + booking.upgrade_daily_fee * breakdown.rental_days
        )
    else:
        booking.total_amount = breakdown.total

    if booking.locked_snapshot_id:
        booking.needs_relock = booking.locked_snapshot.breakdown != booking.quote
    return breakdown


PRICING_FIELDS = [
    "quote", "subtotal", "tax_amount", "total_amount", "currency",
    "pre_upgrade_total", "needs_relock", "updated_at",
]
