"""Celery tasks for deposit holds."""

from __future__ import annotations

import logging

from celery import shared_task  # type: ignore

from shared.domain.exceptions import DomainError, ExternalServiceError

from .services import DepositHoldOrchestrator, poll_delay

logger = logging.getLogger(__name__)


@shared_task(name="finances.poll_deposit_status")
def poll_deposit_status(booking_id: str, attempt: int = 0) -> str | None:
    """
    Reconcile a deposit hold with the processor.

    Reschedules itself with a growing delay while the hold is still
    authorizing, capturing, releasing or waiting for the customer's card,
    and stops at DEPOSIT_POLL_MAX_ATTEMPTS.

    Returns:
        The hold status after this poll, or None when the booking is gone.
    """

    try:
        result = DepositHoldOrchestrator().sync_hold(booking_id)
    except ExternalServiceError as exc:
        if not exc.retryable:
            logger.error(f"Deposit poll for booking {booking_id} rejected by processor: {exc.message}")
            return None
        delay = poll_delay(attempt, "authorizing")
        logger.warning(f"Deposit poll for booking {booking_id} failed (attempt {attempt}): {exc.message}")
        if delay is not None:
            poll_deposit_status.apply_async(args=[booking_id, attempt + 1], countdown=delay)
        return None
    except DomainError as exc:
        logger.warning(f"Deposit poll for booking {booking_id} skipped: {exc.message}")
        return None

    status = result.hold.status
    delay = poll_delay(attempt, status)
    if delay is not None:
        poll_deposit_status.apply_async(args=[booking_id, attempt + 1], countdown=delay)
    elif attempt:
        logger.info(f"Deposit poll for booking {booking_id} settled at {status} after {attempt} attempts")
    return status
