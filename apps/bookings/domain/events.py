"""
Booking Domain Events

Events that represent things that have happened in the booking domain.
These are published after successful transaction commits.
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from shared.domain.base import DomainEvent


@dataclass
class BookingCreated(DomainEvent):
    booking_id: UUID
    code: str
    customer_id: int


@dataclass
class PaymentConfirmed(DomainEvent):
    """
    Event: the payment step of the handover checklist is satisfied

    Triggers:
    - Customer notification "payment received"
    """
    booking_id: UUID


@dataclass
class InspectionCompleted(DomainEvent):
    """Event: walkaround inspection recorded as complete"""
    booking_id: UUID


@dataclass
class BookingActivated(DomainEvent):
    """
    Event: vehicle handed over (PENDING/CONFIRMED -> ACTIVE)

    ``method`` is "normal" or "backup".
    """
    booking_id: UUID
    method: str


@dataclass
class ReturnStepRecorded(DomainEvent):
    booking_id: UUID
    from_state: str
    to_state: str


@dataclass
class BookingCompleted(DomainEvent):
    """Event: return closed out and the contract finalized (ACTIVE -> COMPLETED)"""
    booking_id: UUID


@dataclass
class BookingCancelled(DomainEvent):
    booking_id: UUID
    reason: str
    old_status: str


@dataclass
class PricingLocked(DomainEvent):
    booking_id: UUID
    snapshot_id: UUID
    total: Decimal
