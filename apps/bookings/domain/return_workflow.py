"""
Return Workflow

Ordered drop-off states. The only accepted moves are the explicit
(from, to) pairs below, always checked against the persisted state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from shared.domain.exceptions import InvalidTransitionError, ValidationError


class ReturnState(str, Enum):
    NOT_STARTED = "not_started"
    INITIATED = "initiated"
    INTAKE_DONE = "intake_done"
    EVIDENCE_DONE = "evidence_done"
    ISSUES_REVIEWED = "issues_reviewed"
    CLOSEOUT_DONE = "closeout_done"


RETURN_SEQUENCE = list(ReturnState)

ALLOWED_RETURN_TRANSITIONS = frozenset(
    (RETURN_SEQUENCE[i], RETURN_SEQUENCE[i + 1]) for i in range(len(RETURN_SEQUENCE) - 1)
)


@dataclass(frozen=True)
class ReturnTransition:
    current: ReturnState
    target: ReturnState
    already_complete: bool


def parse_return_state(value) -> ReturnState:
    try:
        return ReturnState(value)
    except ValueError:
        raise ValidationError(f"Unknown return state '{value}'", code="invalid_return_state")


def plan_return_transition(current, target) -> ReturnTransition:
    """
    Reached or passed states come back as ``already_complete``; skips and
    anything else outside the allow-list raise InvalidTransitionError.
    """
    current = parse_return_state(current)
    target = parse_return_state(target)

    if RETURN_SEQUENCE.index(target) <= RETURN_SEQUENCE.index(current):
        return ReturnTransition(current, target, already_complete=True)
    if (current, target) not in ALLOWED_RETURN_TRANSITIONS:
        expected = RETURN_SEQUENCE[RETURN_SEQUENCE.index(current) + 1]
        raise InvalidTransitionError(
            f"Return is at '{current.value}'; the next step is '{expected.value}', not '{target.value}'.",
            code="invalid_return_transition",
            current_state=current.value,
        )
    return ReturnTransition(current, target, already_complete=False)


def validate_return_payload(
    target: ReturnState,
    payload: Mapping[str, Any],
    *,
    is_exception: bool = False,
    exception_reason: str = "",
) -> dict:
    """
    Check the data each step must carry and return the cleaned payload.

    intake_done needs odometer and fuel readings, evidence_done at least
    one photo, and an exception on issues_reviewed needs a reason.
    """
    payload = dict(payload or {})

    if is_exception and target != ReturnState.ISSUES_REVIEWED:
        raise ValidationError(
            "Only the issues review step can be flagged as an exception.",
            code="invalid_exception_flag",
        )
    if is_exception and not (exception_reason or "").strip():
        raise ValidationError("An exception needs a reason.", code="exception_reason_required")

    if target == ReturnState.INTAKE_DONE:
        odometer = payload.get("odometer")
        fuel_level = payload.get("fuel_level")
        if not isinstance(odometer, int) or isinstance(odometer, bool) or odometer < 0:
            raise ValidationError("Intake needs the odometer reading.", code="odometer_required")
        if not isinstance(fuel_level, int) or isinstance(fuel_level, bool) or not 0 <= fuel_level <= 100:
            raise ValidationError("Intake needs the fuel level (0-100%).", code="fuel_level_required")
    elif target == ReturnState.EVIDENCE_DONE:
        photo_count = payload.get("photo_count", 0)
        if not isinstance(photo_count, int) or photo_count < 1:
            raise ValidationError(
                "Return evidence needs at least one photo.", code="evidence_photo_required"
            )

    return payload
