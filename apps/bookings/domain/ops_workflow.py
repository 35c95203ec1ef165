"""
Ops Handover Workflow

The pickup checklist as tagged variants: every step id maps to its own
completion record type, parsed from the persisted StepCompletion JSON.
Activation is gated on every required record reporting complete.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Type

from shared.domain.exceptions import ValidationError


class OpsStepId(str, Enum):
    CHECKIN = "checkin"
    PAYMENT = "payment"
    AGREEMENT = "agreement"
    WALKAROUND = "walkaround"
    PHOTOS = "photos"
    UNIT_ASSIGNMENT = "unit_assignment"
    HANDOVER = "handover"


class DeliveryStatus(str, Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    DELIVERED = "delivered"


DELIVERY_PROGRESS = list(DeliveryStatus)


@dataclass(frozen=True)
class StepContext:
    """Booking facts a step predicate may depend on"""
    is_delivery: bool = False
    assigned_unit_id: Any = None


@dataclass(frozen=True)
class StepRecord:
    step_id: ClassVar[OpsStepId]
    # Fields staff may set through record_ops_step.
    recordable: ClassVar[bool] = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "StepRecord":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for step '{cls.step_id.value}': {', '.join(sorted(unknown))}",
                code="invalid_step_field",
            )
        return cls(**data)

    def updated(self, changes: Mapping[str, Any]) -> "StepRecord":
        merged = {**asdict(self), **dict(changes)}
        return self.from_dict(merged)

    def to_dict(self) -> dict:
        return asdict(self)

    def is_complete(self, context: StepContext) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class CheckinStep(StepRecord):
    step_id: ClassVar[OpsStepId] = OpsStepId.CHECKIN

    gov_id_verified: bool = False
    license_on_file: bool = False
    name_matches: bool = False
    license_not_expired: bool = False
    age_verified: bool = False
    driver_arrived: bool = False

    def is_complete(self, context: StepContext) -> bool:
        if context.is_delivery and self.driver_arrived:
            return True
        return all((
            self.gov_id_verified,
            self.license_on_file,
            self.name_matches,
            self.license_not_expired,
            self.age_verified,
        ))


@dataclass(frozen=True)
class PaymentStep(StepRecord):
    step_id: ClassVar[OpsStepId] = OpsStepId.PAYMENT

    payment_complete: bool = False
    deposit_collected: bool = False

    def is_complete(self, context: StepContext) -> bool:
        return self.payment_complete and self.deposit_collected


@dataclass(frozen=True)
class AgreementStep(StepRecord):
    step_id: ClassVar[OpsStepId] = OpsStepId.AGREEMENT

    agreement_signed: bool = False

    def is_complete(self, context: StepContext) -> bool:
        return self.agreement_signed


@dataclass(frozen=True)
class WalkaroundStep(StepRecord):
    step_id: ClassVar[OpsStepId] = OpsStepId.WALKAROUND

    inspection_complete: bool = False
    odometer: int | None = None
    fuel_level: int | None = None

    def is_complete(self, context: StepContext) -> bool:
        return self.inspection_complete


@dataclass(frozen=True)
class PhotosStep(StepRecord):
    step_id: ClassVar[OpsStepId] = OpsStepId.PHOTOS

    photos_complete: bool = False
    photo_count: int = 0

    def is_complete(self, context: StepContext) -> bool:
        return self.photos_complete


@dataclass(frozen=True)
class UnitAssignmentStep(StepRecord):
    """Derived from the booking's unit link; never recorded directly."""
    step_id: ClassVar[OpsStepId] = OpsStepId.UNIT_ASSIGNMENT
    recordable: ClassVar[bool] = False

    def is_complete(self, context: StepContext) -> bool:
        return context.assigned_unit_id is not None


@dataclass(frozen=True)
class HandoverStep(StepRecord):
    step_id: ClassVar[OpsStepId] = OpsStepId.HANDOVER
    recordable: ClassVar[bool] = False

    activated: bool = False
    sms_sent: bool = False

    def is_complete(self, context: StepContext) -> bool:
        return self.activated


STEP_TYPES: Dict[OpsStepId, Type[StepRecord]] = {
    OpsStepId.CHECKIN: CheckinStep,
    OpsStepId.PAYMENT: PaymentStep,
    OpsStepId.AGREEMENT: AgreementStep,
    OpsStepId.WALKAROUND: WalkaroundStep,
    OpsStepId.PHOTOS: PhotosStep,
    OpsStepId.UNIT_ASSIGNMENT: UnitAssignmentStep,
    OpsStepId.HANDOVER: HandoverStep,
}

_missing = set(OpsStepId) - set(STEP_TYPES)
if _missing:
    raise RuntimeError(f"Ops steps without a completion record type: {sorted(s.value for s in _missing)}")

# Steps that gate activation, in the order staff work through them.
ACTIVATION_STEPS = (
    OpsStepId.CHECKIN,
    OpsStepId.PAYMENT,
    OpsStepId.AGREEMENT,
    OpsStepId.WALKAROUND,
    OpsStepId.PHOTOS,
    OpsStepId.UNIT_ASSIGNMENT,
)


def parse_step_id(value) -> OpsStepId:
    try:
        return OpsStepId(value)
    except ValueError:
        raise ValidationError(f"Unknown ops step '{value}'", code="invalid_step")


@dataclass(frozen=True)
class OpsChecklist:
    """Typed view over a booking's StepCompletion row"""
    steps: Mapping[OpsStepId, StepRecord]
    context: StepContext

    @classmethod
    def from_storage(cls, raw: Mapping[str, Any] | None, context: StepContext) -> "OpsChecklist":
        raw = raw or {}
        return cls(
            steps={step_id: STEP_TYPES[step_id].from_dict(raw.get(step_id.value)) for step_id in OpsStepId},
            context=context,
        )

    def to_storage(self) -> dict:
        return {
            step_id.value: record.to_dict()
            for step_id, record in self.steps.items()
            if record.to_dict()
        }

    def get(self, step_id: OpsStepId) -> StepRecord:
        return self.steps[step_id]

    def is_step_complete(self, step_id: OpsStepId) -> bool:
        return self.steps[step_id].is_complete(self.context)

    def with_step(self, step_id: OpsStepId, changes: Mapping[str, Any]) -> "OpsChecklist":
        updated = dict(self.steps)
        updated[step_id] = self.steps[step_id].updated(changes)
        return replace(self, steps=updated)

    def missing_steps(self) -> list[OpsStepId]:
        return [step_id for step_id in ACTIVATION_STEPS if not self.is_step_complete(step_id)]

    @property
    def ready_for_activation(self) -> bool:
        return not self.missing_steps()

    def summary(self) -> dict:
        return {step_id.value: self.is_step_complete(step_id) for step_id in OpsStepId}


def validate_backup_activation(
    *,
    reason: str,
    photo_count: int,
    is_delivery: bool,
    delivery_status: str | None,
    min_reason_length: int = 10,
) -> None:
    """
    Preconditions for activating without a complete checklist.

    Raises:
        ValidationError: naming the first unmet requirement
    """
    if len((reason or "").strip()) < min_reason_length:
        raise ValidationError(
            f"Backup activation needs a written reason of at least {min_reason_length} characters.",
            code="backup_reason_required",
        )
    if photo_count < 1:
        raise ValidationError(
            "Backup activation needs at least one evidence photo.",
            code="backup_photo_required",
        )
    if is_delivery:
        try:
            position = DELIVERY_PROGRESS.index(DeliveryStatus(delivery_status))
        except ValueError:
            position = -1
        if position < DELIVERY_PROGRESS.index(DeliveryStatus.ARRIVED):
            raise ValidationError(
                f"Delivery is '{delivery_status}'; the driver must have arrived before backup activation.",
                code="delivery_not_arrived",
            )
