"""
Fleet Domain Events

Published after the allocation transaction commits.
"""

from dataclasses import dataclass
from uuid import UUID

from shared.domain.base import DomainEvent
from shared.domain.value_objects import TimeWindow


@dataclass
class UnitAssigned(DomainEvent):
    """A physical unit was linked to a booking and flipped to on_rent"""
    unit_id: UUID
    booking_id: UUID
    window: TimeWindow


@dataclass
class UnitReleased(DomainEvent):
    unit_id: UUID
    booking_id: UUID
    new_status: str


@dataclass
class ReservationHoldPlaced(DomainEvent):
    hold_id: UUID
    category_id: UUID
    location_id: UUID
    window: TimeWindow
