"""
Unit Schedule Aggregate

The consistency boundary that prevents double-booking a physical unit.
Every unit assignment is validated here after the unit row has been
locked, so the schedule loaded for a unit is complete for the duration
of the allocating transaction.

Strategy:
1. Pessimistic locking: SELECT FOR UPDATE on the candidate unit rows
2. Domain validation: can_allocate() checks windows padded by the
   unit's cleaning buffer
3. Conditional claim: the unit status flips available -> on_rent only
   if it is still available, so exactly one concurrent caller wins
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List
from uuid import UUID

from shared.domain.base import Aggregate
from shared.domain.exceptions import ConflictError
from shared.domain.value_objects import TimeWindow


@dataclass
class Occupation:
    """A window during which the unit is taken by a booking or a unit-level hold"""
    window: TimeWindow
    booking_id: UUID | None = None
    hold_id: UUID | None = None

    def __post_init__(self):
        if self.booking_id is None and self.hold_id is None:
            raise ValueError("Occupation must reference a booking or a hold")


@dataclass(eq=False, kw_only=True)
class UnitSchedule(Aggregate):
    """
    Unit Schedule Aggregate Root

    Key invariants:
    - No two occupations of the same unit overlap once padded by the
      unit's cleaning buffer
    - A booking occupies a unit at most once

    Usage:
        schedule = load_unit_schedule(unit)          # unit row already locked
        if schedule.can_allocate(booking.window):
            schedule.allocate(booking.id, booking.window)
    """

    unit_id: UUID
    cleaning_buffer: timedelta = timedelta(0)
    occupations: List[Occupation] = field(default_factory=list)

    def conflicts_with(self, window: TimeWindow, *, ignore_booking: UUID | None = None) -> List[Occupation]:
        return [
            occupation for occupation in self.occupations
            if not (ignore_booking and occupation.booking_id == ignore_booking)
            and occupation.window.overlaps_with(window, self.cleaning_buffer)
        ]

    def can_allocate(self, window: TimeWindow, *, booking_id: UUID | None = None) -> bool:
        return not self.conflicts_with(window, ignore_booking=booking_id)

    def allocate(self, booking_id: UUID, window: TimeWindow) -> Occupation:
        """
        Occupy the unit for a booking

        Raises:
            ConflictError: the window (plus cleaning buffer) overlaps
                another booking or hold on this unit
        """
        conflicts = self.conflicts_with(window, ignore_booking=booking_id)
        if conflicts:
            other = conflicts[0]
            holder = f"booking {other.booking_id}" if other.booking_id else f"hold {other.hold_id}"
            raise ConflictError(
                f"Unit {self.unit_id} is not free for {window} "
                f"(overlaps {holder} at {other.window} incl. cleaning buffer).",
                code="unit_window_conflict",
            )

        occupation = Occupation(window=window, booking_id=booking_id)
        self.occupations.append(occupation)

        from apps.fleet.domain.events import UnitAssigned

        self.add_event(UnitAssigned(
            aggregate_id=self.id,
            unit_id=self.unit_id,
            booking_id=booking_id,
            window=window,
        ))
        return occupation
