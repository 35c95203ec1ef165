"""
Event Handlers

Map committed booking and deposit events to notification stages.
Handlers run after commit and must not raise.
"""

import logging

from apps.bookings.domain.events import (
    BookingActivated,
    BookingCompleted,
    InspectionCompleted,
    PaymentConfirmed,
)
from apps.finances.domain.events import DepositCaptured, DepositReleased

from .services import Stage, dispatch_booking_notification

logger = logging.getLogger(__name__)


EVENT_STAGES = {
    PaymentConfirmed: Stage.PAYMENT_CONFIRMED,
    InspectionCompleted: Stage.INSPECTION_COMPLETED,
    BookingActivated: Stage.ACTIVATED,
    BookingCompleted: Stage.COMPLETED,
    DepositReleased: Stage.DEPOSIT_RELEASED,
    DepositCaptured: Stage.DEPOSIT_CAPTURED,
}


def notify_customer(event) -> None:
    stage = EVENT_STAGES[type(event)]
    dispatch_booking_notification(event.booking_id, stage)


def register_event_handlers(bus) -> None:
    for event_type in EVENT_STAGES:
        bus.register_event_handler(event_type, notify_customer)
    logger.debug(f"Notification handlers registered for {len(EVENT_STAGES)} events")
