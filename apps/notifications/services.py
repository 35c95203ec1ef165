"""Notification services for booking milestone emails."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.conf import settings  # type: ignore
from django.core.mail import send_mail  # type: ignore
from django.db import models  # type: ignore

if TYPE_CHECKING:  # pragma: no cover
    from apps.bookings.models import Booking

logger = logging.getLogger(__name__)


class Stage(models.TextChoices):
    PAYMENT_CONFIRMED = "payment_confirmed", "Payment received"
    INSPECTION_COMPLETED = "inspection_completed", "Vehicle inspection complete"
    ACTIVATED = "activated", "Your rental has started"
    COMPLETED = "completed", "Your rental is complete"
    DEPOSIT_RELEASED = "deposit_released", "Deposit released"
    DEPOSIT_CAPTURED = "deposit_captured", "Deposit charged"


STAGE_MESSAGES = {
    Stage.PAYMENT_CONFIRMED: "We have received your payment and security deposit.",
    Stage.INSPECTION_COMPLETED: "The walkaround inspection of your vehicle has been recorded.",
    Stage.ACTIVATED: "Your vehicle has been handed over. Drive safely!",
    Stage.COMPLETED: "Thank you for returning your vehicle. Your rental contract is closed.",
    Stage.DEPOSIT_RELEASED: "The hold on your card for the security deposit has been released.",
    Stage.DEPOSIT_CAPTURED: "Part or all of your security deposit has been charged.",
}


# ============================================================================
# EMAIL NOTIFICATIONS
# ============================================================================

def send_email_notification(recipient_email: str, subject: str, message: str) -> bool:
    """
    Send one plain-text email.

    Returns:
        bool: True if the message was handed to the mail backend
    """
    try:
        send_mail(
            subject=subject,
            message=message,
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[recipient_email],
            fail_silently=False,
        )
        logger.info(f"Email sent successfully to {recipient_email}: {subject}")
        return True
    except Exception as e:
        logger.error(f"Failed to send email to {recipient_email}: {e}", exc_info=True)
        return False


def build_booking_message(booking: "Booking", stage: Stage) -> tuple[str, str]:
    subject = f"Booking {booking.code}: {stage.label}"
    lines = [
        f"Hello {booking.customer.get_full_name() or booking.customer.email},",
        "",
        STAGE_MESSAGES[stage],
        "",
        f"Booking: {booking.code}",
        f"Vehicle class: {booking.category.name}",
        f"Pick-up: {booking.start_at:%Y-%m-%d %H:%M}",
        f"Return: {booking.end_at:%Y-%m-%d %H:%M}",
    ]
    if stage == Stage.DEPOSIT_CAPTURED:
        lines.append(f"Amount charged: {booking.deposit_captured_amount} {booking.currency}")
    return subject, "\n".join(lines)


def send_booking_email(booking: "Booking", stage: Stage) -> bool:
    if not booking.customer.email:
        logger.warning(f"Booking {booking.code} has no customer email; {stage} notification skipped")
        return False
    subject, message = build_booking_message(booking, stage)
    return send_email_notification(booking.customer.email, subject, message)


def dispatch_booking_notification(booking_id, stage: str) -> None:
    """
    Queue the customer email for ``stage``.

    Called from post-commit event handlers; broker failures are logged and
    never reach the caller.
    """
    from .tasks import send_booking_notification

    try:
        send_booking_notification.delay(str(booking_id), str(stage))
    except Exception as e:
        logger.error(f"Could not queue {stage} notification for booking {booking_id}: {e}", exc_info=True)
