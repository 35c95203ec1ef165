"""
Booking Lifecycle

Booking status finite state machine, kept free of ORM concerns so the
command handlers can validate a transition before issuing the
conditional update that applies it.
"""

from dataclasses import dataclass
from enum import Enum

from shared.domain.exceptions import InvalidTransitionError


class BookingStatus(str, Enum):
    """
    Booking Status Finite State Machine

    State transitions:
    - PENDING -> CONFIRMED (payment taken)
    - PENDING/CONFIRMED -> ACTIVE (handover, normal or backup activation)
    - ACTIVE -> COMPLETED (return closed out and finalized)
    - any non-terminal -> CANCELLED
    """
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.COMPLETED, BookingStatus.CANCELLED)


# Position on the forward path; cancelled sits off it.
_PROGRESS = {
    BookingStatus.PENDING: 0,
    BookingStatus.CONFIRMED: 1,
    BookingStatus.ACTIVE: 2,
    BookingStatus.COMPLETED: 3,
}

ALLOWED_TRANSITIONS = frozenset({
    (BookingStatus.PENDING, BookingStatus.CONFIRMED),
    (BookingStatus.PENDING, BookingStatus.ACTIVE),
    (BookingStatus.CONFIRMED, BookingStatus.ACTIVE),
    (BookingStatus.ACTIVE, BookingStatus.COMPLETED),
    (BookingStatus.PENDING, BookingStatus.CANCELLED),
    (BookingStatus.CONFIRMED, BookingStatus.CANCELLED),
    (BookingStatus.ACTIVE, BookingStatus.CANCELLED),
})


@dataclass(frozen=True)
class TransitionPlan:
    current: BookingStatus
    target: BookingStatus
    already_complete: bool


def plan_status_transition(current, target) -> TransitionPlan:
    """
    Validate ``current -> target`` against the allow-list.

    Asking for a state that was already reached or passed is not an error:
    the plan comes back with ``already_complete`` so callers can skip side
    effects. Anything else outside the allow-list raises.
    """
    current = BookingStatus(current)
    target = BookingStatus(target)

    if current == target:
        return TransitionPlan(current, target, already_complete=True)
    if (current, target) in ALLOWED_TRANSITIONS:
        return TransitionPlan(current, target, already_complete=False)
    if (
        current != BookingStatus.CANCELLED
        and target != BookingStatus.CANCELLED
        and _PROGRESS[current] > _PROGRESS[target]
    ):
        return TransitionPlan(current, target, already_complete=True)

    raise InvalidTransitionError(
        f"Cannot move booking from {current.value} to {target.value}.",
        code='invalid_status_transition',
        current_state=current.value,
    )
