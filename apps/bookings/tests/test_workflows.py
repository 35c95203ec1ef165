"""Tests for the pure booking, handover and return state machines."""

from __future__ import annotations

import pytest

from apps.bookings.domain.entities import BookingStatus, plan_status_transition
from apps.bookings.domain.ops_workflow import (
    OpsChecklist,
    OpsStepId,
    StepContext,
    validate_backup_activation,
)
from apps.bookings.domain.return_workflow import (
    ALLOWED_RETURN_TRANSITIONS,
    RETURN_SEQUENCE,
    ReturnState,
    plan_return_transition,
    validate_return_payload,
)
from shared.domain.exceptions import InvalidTransitionError, ValidationError

CHECKIN_OK = {
    "gov_id_verified": True,
    "license_on_file": True,
    "name_matches": True,
    "license_not_expired": True,
    "age_verified": True,
}


def test_forward_status_moves_are_allowed() -> None:
    assert not plan_status_transition("pending", "confirmed").already_complete
    assert not plan_status_transition("confirmed", "active").already_complete
    assert not plan_status_transition("active", "completed").already_complete


def test_reached_status_is_already_complete() -> None:
    assert plan_status_transition("active", "active").already_complete
    assert plan_status_transition("active", "confirmed").already_complete
    assert plan_status_transition("cancelled", "cancelled").already_complete


@pytest.mark.parametrize(
    "current, target",
    [("pending", "completed"), ("completed", "cancelled"), ("cancelled", "active")],
)
def test_illegal_status_moves_raise(current, target) -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        plan_status_transition(current, target)
    assert exc_info.value.current_state == current


def test_terminal_statuses() -> None:
    assert {s for s in BookingStatus if s.is_terminal} == {BookingStatus.COMPLETED, BookingStatus.CANCELLED}


def test_return_skip_is_rejected() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        plan_return_transition("not_started", "closeout_done")
    assert exc_info.value.current_state == "not_started"


def test_return_allow_list_is_consecutive_pairs_only() -> None:
    assert len(ALLOWED_RETURN_TRANSITIONS) == len(RETURN_SEQUENCE) - 1
    for current in ReturnState:
        for target in ReturnState:
            index_gap = RETURN_SEQUENCE.index(target) - RETURN_SEQUENCE.index(current)
            if index_gap > 1:
                with pytest.raises(InvalidTransitionError):
                    plan_return_transition(current, target)
            elif index_gap <= 0:
                assert plan_return_transition(current, target).already_complete


def test_intake_needs_readings() -> None:
    with pytest.raises(ValidationError):
        validate_return_payload(ReturnState.INTAKE_DONE, {"odometer": 12000})
    with pytest.raises(ValidationError):
        validate_return_payload(ReturnState.INTAKE_DONE, {"odometer": 12000, "fuel_level": 120})
    assert validate_return_payload(ReturnState.INTAKE_DONE, {"odometer": 12000, "fuel_level": 75}) == {
        "odometer": 12000, "fuel_level": 75,
    }


def test_exception_flag_only_on_issue_review() -> None:
    with pytest.raises(ValidationError):
        validate_return_payload(ReturnState.INITIATED, {}, is_exception=True, exception_reason="scratch")
    with pytest.raises(ValidationError):
        validate_return_payload(ReturnState.ISSUES_REVIEWED, {}, is_exception=True, exception_reason=" ")
    validate_return_payload(ReturnState.ISSUES_REVIEWED, {}, is_exception=True, exception_reason="bumper dent")


def test_checklist_reports_missing_steps() -> None:
    checklist = OpsChecklist.from_storage({}, StepContext())
    assert checklist.missing_steps() == [
        OpsStepId.CHECKIN, OpsStepId.PAYMENT, OpsStepId.AGREEMENT,
        OpsStepId.WALKAROUND, OpsStepId.PHOTOS, OpsStepId.UNIT_ASSIGNMENT,
    ]

    ready = (
        OpsChecklist.from_storage({}, StepContext(assigned_unit_id="unit-1"))
        .with_step(OpsStepId.CHECKIN, CHECKIN_OK)
        .with_step(OpsStepId.PAYMENT, {"payment_complete": True, "deposit_collected": True})
        .with_step(OpsStepId.AGREEMENT, {"agreement_signed": True})
        .with_step(OpsStepId.WALKAROUND, {"inspection_complete": True, "odometer": 100})
        .with_step(OpsStepId.PHOTOS, {"photos_complete": True, "photo_count": 8})
    )
    assert ready.ready_for_activation
    restored = OpsChecklist.from_storage(ready.to_storage(), ready.context)
    assert restored.summary() == ready.summary()


def test_delivery_checkin_satisfied_by_driver_arrival() -> None:
    pickup = OpsChecklist.from_storage({"checkin": {"driver_arrived": True}}, StepContext())
    delivery = OpsChecklist.from_storage({"checkin": {"driver_arrived": True}}, StepContext(is_delivery=True))
    assert not pickup.is_step_complete(OpsStepId.CHECKIN)
    assert delivery.is_step_complete(OpsStepId.CHECKIN)


def test_unknown_step_fields_are_rejected() -> None:
    checklist = OpsChecklist.from_storage({}, StepContext())
    with pytest.raises(ValidationError):
        checklist.with_step(OpsStepId.PAYMENT, {"paid": True})


def test_backup_activation_requirements() -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_backup_activation(reason="too short", photo_count=3, is_delivery=False, delivery_status=None)
    assert exc_info.value.code == "backup_reason_required"
    with pytest.raises(ValidationError) as exc_info:
        validate_backup_activation(
            reason="tablet offline at counter", photo_count=0, is_delivery=False, delivery_status=None
        )
    assert exc_info.value.code == "backup_photo_required"
    with pytest.raises(ValidationError) as exc_info:
        validate_backup_activation(
            reason="tablet offline at counter", photo_count=1, is_delivery=True, delivery_status="en_route"
        )
    assert exc_info.value.code == "delivery_not_arrived"
    validate_backup_activation(
        reason="tablet offline at counter", photo_count=1, is_delivery=True, delivery_status="arrived"
    )
