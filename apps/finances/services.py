"""Deposit hold orchestration.

Drives a booking's card authorization through the processor and keeps
the local DepositHold row and the booking ledger consistent with it.

Processor calls are never made while holding row locks: each operation
moves the hold into a transient state in one short transaction, calls
the processor, then records the outcome (with the ledger update) in a
second transaction. A crash in between leaves a transient state that
``sync_hold`` reconciles from the processor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from django.conf import settings  # type: ignore
from django.db import transaction  # type: ignore
from django.utils import timezone  # type: ignore

from apps.audit.services import record_audit
from apps.bookings.domain.ops_workflow import OpsStepId
from apps.bookings.models import Booking
from apps.bookings.services import get_booking_for_update, update_ops_step
from apps.users.services import require_actor, require_manager, require_staff
from shared.application.uow import DjangoUnitOfWork
from shared.domain.exceptions import (
    ConflictError,
    ExternalServiceError,
    PermissionDeniedError,
    ValidationError,
)
from shared.domain.value_objects import round_cents
from shared.infrastructure.locking import get_locked

from .domain.deposit import (
    NOTHING_HELD,
    RESTARTABLE,
    DepositStatus,
    ensure_transition,
    map_processor_status,
    next_poll_delay,
)
from .domain.events import DepositAuthorized, DepositCaptured, DepositReleased
from .gateway import UNEXPECTED_STATE, GatewayIntent, get_gateway
from .models import DepositHold

logger = logging.getLogger(__name__)


@dataclass
class HoldResult:
    hold: DepositHold
    already_exists: bool = False
    already_released: bool = False
    already_captured: bool = False
    released: bool = False
    captured_amount: Decimal | None = None
    released_amount: Decimal | None = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data: dict = {"status": self.hold.status}
        if self.already_exists:
            data["alreadyExists"] = True
        if self.already_released:
            data["alreadyReleased"] = True
        if self.already_captured:
            data["alreadyCaptured"] = True
        if self.released:
            data["released"] = True
        if self.captured_amount is not None:
            data["capturedAmount"] = str(self.captured_amount)
            data["releasedAmount"] = str(self.released_amount)
        if self.hold.client_secret and self.hold.status == DepositStatus.REQUIRES_PAYMENT.value:
            data["clientSecret"] = self.hold.client_secret
        return data


def _authorization_days() -> int:
    return int(settings.RENTAL_RULES.get("DEPOSIT_AUTHORIZATION_DAYS", 7))


def _require_reason(reason: str, action: str) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError(f"A reason is required to {action} a deposit.", code="reason_required")
    return reason


def _hold_snapshot(hold: DepositHold) -> dict:
    return {
        "status": hold.status,
        "amount": hold.amount,
        "captured_amount": hold.captured_amount,
        "released_amount": hold.released_amount,
        "provider_ref": hold.provider_ref,
    }


class DepositHoldOrchestrator:
    """
    Create, capture, release and reconcile deposit holds.

    ``gateway`` defaults to the configured PAYMENT_GATEWAY_CLASS; tests
    pass their own object with the same four methods.
    """

    def __init__(self, gateway=None):
        self.gateway = gateway or get_gateway()

    # -- helpers -------------------------------------------------------

    def _lock(self, booking_id) -> tuple[Booking, DepositHold]:
        booking = get_booking_for_update(booking_id)
        hold, _created = DepositHold.objects.get_or_create(
            booking=booking, defaults={"currency": booking.currency}
        )
        hold = get_locked(DepositHold, hold.pk, label="Deposit hold")
        return booking, hold

    def _set_status(self, hold: DepositHold, booking: Booking, target: DepositStatus, actor, action: str,
                    *, check: bool = True, **changes) -> None:
        if check:
            ensure_transition(hold.status, target)
        old = _hold_snapshot(hold)
        hold.status = target.value
        for name, value in changes.items():
            setattr(hold, name, value)
        hold.save()
        record_audit(action, booking, actor, old_data=old, new_data=_hold_snapshot(hold), entity_type="booking")

    def _apply_intent(self, booking: Booking, hold: DepositHold, intent: GatewayIntent, actor, uow,
                      *, action: str) -> DepositStatus:
        """
        Record the processor's view on the locked hold and the booking ledger.

        The processor is authoritative, so no transition check is made.
        """
        previous = hold.state
        target = map_processor_status(intent.status, intent.cancellation_reason)
        now = timezone.now()
        changes: dict = {
            "provider_ref": intent.id or hold.provider_ref,
            "last_synced_at": now,
            "last_error": "",
        }
        if intent.client_secret:
            changes["client_secret"] = intent.client_secret
        if intent.card_brand:
            changes["card_brand"] = intent.card_brand
        if intent.card_last4:
            changes["card_last4"] = intent.card_last4

        if target == DepositStatus.AUTHORIZED and previous != DepositStatus.AUTHORIZED:
            changes["authorized_at"] = hold.authorized_at or now
            changes["expires_at"] = (hold.authorized_at or now) + timedelta(days=_authorization_days())
        if target == DepositStatus.CAPTURED:
            captured = intent.amount_captured or hold.captured_amount
            changes["captured_amount"] = captured
            changes["released_amount"] = max(Decimal("0.00"), hold.amount - captured)
            changes["captured_at"] = hold.captured_at or now
        if target in (DepositStatus.CANCELED, DepositStatus.EXPIRED) and previous in (
            DepositStatus.AUTHORIZED, DepositStatus.RELEASING,
        ):
            changes["released_amount"] = hold.amount
            changes["released_at"] = hold.released_at or now

        self._set_status(hold, booking, target, actor, action, check=False, **changes)

        if target == DepositStatus.AUTHORIZED and previous != DepositStatus.AUTHORIZED:
            booking.deposit_amount = hold.amount
            booking.save(update_fields=["deposit_amount", "updated_at"])
            update_ops_step(booking, OpsStepId.PAYMENT, {"deposit_collected": True}, actor=actor, uow=uow)
            uow.add_event(DepositAuthorized(aggregate_id=booking.pk, booking_id=booking.pk, amount=hold.amount))
        if target == DepositStatus.CAPTURED and previous != DepositStatus.CAPTURED:
            booking.deposit_captured_amount = hold.captured_amount
            booking.save(update_fields=["deposit_captured_amount", "updated_at"])
        if target != previous:
            logger.info(f"Deposit for booking {booking.code}: {previous.value} -> {target.value}")
        return target

    def _schedule_poll(self, booking_id, status) -> None:
        """Queue a status poll after commit while the hold is still unsettled."""
        delay = poll_delay(0, status)
        if delay is None:
            return
        from .tasks import poll_deposit_status

        def enqueue():
            try:
                poll_deposit_status.apply_async(args=[str(booking_id), 1], countdown=delay)
            except Exception as e:
                logger.error(f"Could not queue deposit poll for booking {booking_id}: {e}", exc_info=True)

        transaction.on_commit(enqueue)

    # -- operations ----------------------------------------------------

    def create_hold(self, booking_id, amount=None, *, actor=None) -> HoldResult:
        """
        Start a deposit authorization for the booking.

        Idempotent: an already authorized hold comes back with
        ``already_exists`` and no second authorization is requested; a hold
        still waiting for the customer's card returns its client secret.
        """

        actor = require_actor(actor)
        with DjangoUnitOfWork():
            booking, hold = self._lock(booking_id)
            if actor.pk != booking.customer_id and not actor.is_ops_staff:
                raise PermissionDeniedError("Only the customer or staff can place this deposit.")
            if booking.is_terminal:
                raise ConflictError(f"Booking {booking.code} is {booking.status}.", code="booking_closed")

            if hold.state == DepositStatus.AUTHORIZED:
                return HoldResult(hold, already_exists=True)
            if hold.state == DepositStatus.REQUIRES_PAYMENT and hold.provider_ref:
                return HoldResult(hold)

            # A create that timed out may have authorized at the processor:
            # resend it under the same attempt so the idempotency key matches.
            interrupted = (
                hold.state == DepositStatus.AUTHORIZING and not hold.provider_ref and bool(hold.last_error)
            )
            if hold.state not in RESTARTABLE and not interrupted:
                raise ConflictError(
                    f"A deposit operation is already in progress ({hold.status}).", code="deposit_busy"
                )

            if interrupted:
                amount = hold.amount
                logger.info(f"Resending deposit authorization for booking {booking.code} (attempt {hold.attempt})")
            else:
                try:
                    amount = round_cents(Decimal(str(amount))) if amount is not None else booking.deposit_amount
                except InvalidOperation:
                    raise ValidationError(f"Invalid deposit amount '{amount}'.", code="invalid_amount")
                if amount <= 0:
                    raise ValidationError("The deposit amount must be positive.", code="invalid_amount")

                self._set_status(
                    hold, booking, DepositStatus.AUTHORIZING, actor, "deposit.authorizing",
                    amount=amount, currency=booking.currency, attempt=hold.attempt + 1,
                    captured_amount=Decimal("0.00"), released_amount=Decimal("0.00"),
                    provider_ref="", client_secret="", last_reason="", last_error="",
                )
            idempotency_key = hold.idempotency_key("create")

        try:
            intent = self.gateway.create_authorization(
                booking_id=booking.pk,
                amount=amount,
                currency=booking.currency,
                idempotency_key=idempotency_key,
                description=f"Security deposit for booking {booking.code}",
            )
        except ExternalServiceError as exc:
            with DjangoUnitOfWork():
                booking, hold = self._lock(booking_id)
                if exc.retryable:
                    # Outcome unknown: stay AUTHORIZING on this attempt.
                    self._set_status(hold, booking, DepositStatus.AUTHORIZING, actor, "deposit.create_interrupted",
                                     check=False, last_error=exc.message)
                else:
                    self._set_status(hold, booking, DepositStatus.FAILED, actor, "deposit.failed",
                                     last_error=exc.message)
            raise

        with DjangoUnitOfWork() as uow:
            booking, hold = self._lock(booking_id)
            self._apply_intent(booking, hold, intent, actor, uow, action="deposit.created")
        self._schedule_poll(booking_id, hold.status)
        return HoldResult(hold)

    def capture_hold(self, booking_id, amount=None, *, reason: str, actor=None) -> HoldResult:
        """
        Capture all or part of an authorized deposit.

        The uncaptured remainder is released by the processor with the
        same call; the result reports both amounts.
        """

        actor = require_manager(actor)
        reason = _require_reason(reason, "capture")

        with DjangoUnitOfWork():
            booking, hold = self._lock(booking_id)
            if hold.state == DepositStatus.CAPTURED:
                return HoldResult(hold, already_captured=True, captured_amount=hold.captured_amount,
                                  released_amount=hold.released_amount)
            if hold.state != DepositStatus.AUTHORIZED:
                raise ConflictError(
                    f"Only an authorized deposit can be captured (deposit is {hold.status}).",
                    code="deposit_not_authorized",
                )
            try:
                to_capture = round_cents(Decimal(str(amount))) if amount is not None else hold.amount
            except InvalidOperation:
                raise ValidationError(f"Invalid capture amount '{amount}'.", code="invalid_amount")
            if to_capture <= 0 or to_capture > hold.amount:
                raise ValidationError(
                    f"Capture amount must be between 0.01 and {hold.amount}.", code="invalid_amount"
                )
            self._set_status(hold, booking, DepositStatus.CAPTURING, actor, "deposit.capturing",
                             last_reason=reason)
            ref, idempotency_key = hold.provider_ref, hold.idempotency_key("capture")

        try:
            intent = self.gateway.capture(ref, amount=to_capture, idempotency_key=idempotency_key)
        except ExternalServiceError as exc:
            with DjangoUnitOfWork():
                booking, hold = self._lock(booking_id)
                self._set_status(hold, booking, DepositStatus.AUTHORIZED, actor, "deposit.capture_failed",
                                 last_error=exc.message)
            raise

        with DjangoUnitOfWork() as uow:
            booking, hold = self._lock(booking_id)
            if not intent.amount_captured:
                intent = replace(intent, amount_captured=to_capture)
            self._apply_intent(booking, hold, intent, actor, uow, action="deposit.captured")
            if hold.state == DepositStatus.CAPTURED:
                uow.add_event(DepositCaptured(
                    aggregate_id=booking.pk,
                    booking_id=booking.pk,
                    captured_amount=hold.captured_amount,
                    released_amount=hold.released_amount,
                    reason=reason,
                ))
        self._schedule_poll(booking_id, hold.status)
        logger.info(
            f"Captured {hold.captured_amount} of deposit for {booking.code}; released {hold.released_amount}"
        )
        return HoldResult(hold, captured_amount=hold.captured_amount, released_amount=hold.released_amount)

    def release_hold(self, booking_id, *, reason: str, actor=None, bypass_status_check: bool = False) -> HoldResult:
        """
        Release an authorized deposit.

        Only for completed or cancelled bookings unless a manager bypasses
        the check. Idempotent: a second call reports ``already_released``
        and makes no processor call.
        """

        actor = require_manager(actor) if bypass_status_check else require_staff(actor)
        reason = _require_reason(reason, "release")

        with DjangoUnitOfWork():
            booking, hold = self._lock(booking_id)
            if hold.state in NOTHING_HELD:
                return HoldResult(hold, already_released=True)
            if not bypass_status_check and booking.status not in Booking.TERMINAL_STATUSES:
                raise ConflictError(
                    f"Booking {booking.code} is {booking.status}; deposits are released after "
                    "completion or cancellation.",
                    code="booking_not_closed",
                )
            if hold.state not in (DepositStatus.AUTHORIZED, DepositStatus.REQUIRES_PAYMENT) or not hold.provider_ref:
                raise ConflictError(
                    f"There is no authorized deposit to release (deposit is {hold.status}).",
                    code="deposit_not_authorized",
                )
            previous = hold.state
            self._set_status(hold, booking, DepositStatus.RELEASING, actor, "deposit.releasing",
                             last_reason=reason)
            ref, idempotency_key = hold.provider_ref, hold.idempotency_key("release")

        try:
            intent = self.gateway.cancel(ref, reason=reason, idempotency_key=idempotency_key)
        except ExternalServiceError as exc:
            if exc.provider_code != UNEXPECTED_STATE:
                with DjangoUnitOfWork():
                    booking, hold = self._lock(booking_id)
                    self._set_status(hold, booking, previous, actor, "deposit.release_failed",
                                     last_error=exc.message)
                raise
            # Already canceled (or captured) at the processor; take its word for it.
            intent = self.gateway.retrieve(ref)

        with DjangoUnitOfWork() as uow:
            booking, hold = self._lock(booking_id)
            held_amount = hold.amount
            target = map_processor_status(intent.status, intent.cancellation_reason)
            if target == DepositStatus.CANCELED:
                self._set_status(
                    hold, booking, DepositStatus.RELEASED, actor, "deposit.released",
                    check=False,
                    provider_ref=intent.id or hold.provider_ref,
                    released_amount=held_amount,
                    released_at=timezone.now(),
                    last_synced_at=timezone.now(),
                    last_error="",
                )
                uow.add_event(DepositReleased(
                    aggregate_id=booking.pk, booking_id=booking.pk, amount=held_amount, reason=reason,
                ))
            else:
                self._apply_intent(booking, hold, intent, actor, uow, action="deposit.release_reconciled")
        logger.info(f"Deposit release for {booking.code} finished as {hold.status}")
        self._schedule_poll(booking_id, hold.status)
        return HoldResult(hold, released=hold.state == DepositStatus.RELEASED)

    def sync_hold(self, booking_id, *, actor=None) -> HoldResult:
        """Re-read the processor's state and reconcile the local row with it."""

        with DjangoUnitOfWork():
            booking, hold = self._lock(booking_id)
            ref = hold.provider_ref
        if not ref:
            return HoldResult(hold)

        intent = self.gateway.retrieve(ref)

        with DjangoUnitOfWork() as uow:
            booking, hold = self._lock(booking_id)
            if hold.provider_ref != ref:
                return HoldResult(hold)
            if hold.state == DepositStatus.RELEASED and intent.status == "canceled":
                hold.mark_synced()
                return HoldResult(hold)
            previous = hold.state
            target = self._apply_intent(booking, hold, intent, actor, uow, action="deposit.synced")
            if previous == DepositStatus.RELEASING and target == DepositStatus.CANCELED:
                self._set_status(hold, booking, DepositStatus.RELEASED, actor, "deposit.released", check=False)
                uow.add_event(DepositReleased(
                    aggregate_id=booking.pk, booking_id=booking.pk, amount=hold.amount, reason=hold.last_reason,
                ))
            if previous == DepositStatus.CAPTURING and target == DepositStatus.CAPTURED:
                uow.add_event(DepositCaptured(
                    aggregate_id=booking.pk,
                    booking_id=booking.pk,
                    captured_amount=hold.captured_amount,
                    released_amount=hold.released_amount,
                    reason=hold.last_reason,
                ))
        return HoldResult(hold)


def poll_delay(attempt: int, status) -> int | None:
    """Next poll in seconds, or None once the hold is stable or attempts ran out."""

    if attempt >= int(getattr(settings, "DEPOSIT_POLL_MAX_ATTEMPTS", 20)):
        return None
    return next_poll_delay(attempt, status, getattr(settings, "DEPOSIT_POLL_INTERVALS", [2, 5, 10, 30]))
