"""Celery tasks for customer notifications."""

from __future__ import annotations

import logging

from celery import shared_task  # type: ignore

from apps.bookings.models import Booking

from .services import Stage, send_booking_email

logger = logging.getLogger(__name__)


@shared_task(name="notifications.send_booking_notification")
def send_booking_notification(booking_id: str, stage: str) -> bool:
    """Email the booking's customer about a milestone. Never retried."""

    booking = (
        Booking.objects.select_related("customer", "category")
        .filter(pk=booking_id)
        .first()
    )
    if booking is None:
        logger.warning(f"Notification {stage} skipped: booking {booking_id} not found")
        return False
    return send_booking_email(booking, Stage(stage))
