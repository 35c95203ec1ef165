"""Booking domain models for DriveDesk."""

from __future__ import annotations

import secrets
import uuid
from decimal import Decimal

from django.conf import settings  # type: ignore
from django.core.serializers.json import DjangoJSONEncoder  # type: ignore
from django.db import models  # type: ignore
from django.utils.translation import gettext_lazy as _  # type: ignore

from shared.domain.value_objects import TimeWindow

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class Booking(models.Model):
    """Rental of one vehicle category at one location for a time window."""

    class Status(models.TextChoices):
        PENDING = "pending", _("Pending")
        CONFIRMED = "confirmed", _("Confirmed")
        ACTIVE = "active", _("Active (on rent)")
        COMPLETED = "completed", _("Completed")
        CANCELLED = "cancelled", _("Cancelled")

    class ReturnState(models.TextChoices):
        NOT_STARTED = "not_started", _("Not started")
        INITIATED = "initiated", _("Return initiated")
        INTAKE_DONE = "intake_done", _("Intake recorded")
        EVIDENCE_DONE = "evidence_done", _("Evidence captured")
        ISSUES_REVIEWED = "issues_reviewed", _("Issues reviewed")
        CLOSEOUT_DONE = "closeout_done", _("Closeout done")

    class FulfillmentType(models.TextChoices):
        PICKUP = "pickup", _("Counter pickup")
        DELIVERY = "delivery", _("Delivery")

    class DeliveryStatus(models.TextChoices):
        UNASSIGNED = "unassigned", _("Unassigned")
        ASSIGNED = "assigned", _("Driver assigned")
        PICKED_UP = "picked_up", _("Picked up")
        EN_ROUTE = "en_route", _("En route")
        ARRIVED = "arrived", _("Arrived")
        DELIVERED = "delivered", _("Delivered")

    class ActivationMethod(models.TextChoices):
        NORMAL = "normal", _("Normal handover")
        BACKUP = "backup", _("Backup activation")

    BLOCKING_STATUSES = (Status.PENDING, Status.CONFIRMED, Status.ACTIVE)
    TERMINAL_STATUSES = (Status.COMPLETED, Status.CANCELLED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=10, unique=True, editable=False)
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="bookings",
    )
    location = models.ForeignKey("fleet.Location", on_delete=models.PROTECT, related_name="bookings")
    category = models.ForeignKey(
        "fleet.VehicleCategory", on_delete=models.PROTECT, related_name="bookings"
    )
    assigned_unit = models.ForeignKey(
        "fleet.VehicleUnit",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="bookings",
    )
    # Unit that served a completed rental; keeps its turnaround buffer in force.
    returned_unit = models.ForeignKey(
        "fleet.VehicleUnit",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="returned_bookings",
    )
    reservation_hold = models.ForeignKey(
        "fleet.ReservationHold",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="bookings",
    )
    start_at = models.DateTimeField()
    end_at = models.DateTimeField()
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    return_state = models.CharField(
        max_length=20, choices=ReturnState.choices, default=ReturnState.NOT_STARTED
    )
    fulfillment_type = models.CharField(
        max_length=10, choices=FulfillmentType.choices, default=FulfillmentType.PICKUP
    )
    delivery_status = models.CharField(
        max_length=12, choices=DeliveryStatus.choices, default=DeliveryStatus.UNASSIGNED
    )

    # Pricing inputs, fixed at quote time.
    driver_age_band = models.CharField(max_length=8, blank=True)
    daily_rate = models.DecimalField(max_digits=10, decimal_places=2)
    protection_daily_rate = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    addons_total = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    delivery_fee = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))

    # Current (unlocked) quote and the snapshot the contract is locked to.
    quote = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    tax_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default="CAD")
    locked_snapshot = models.ForeignKey(
        "pricing.PricingSnapshot",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )
    needs_relock = models.BooleanField(default=False)

    upgrade_daily_fee = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    pre_upgrade_total = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    upgrade_reason = models.CharField(max_length=255, blank=True)
    upgraded_at = models.DateTimeField(null=True, blank=True)
    upgraded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )

    # Deposit ledger; the hold lifecycle itself lives on finances.DepositHold.
    deposit_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    deposit_captured_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))

    activation_method = models.CharField(max_length=8, choices=ActivationMethod.choices, blank=True)
    activated_at = models.DateTimeField(null=True, blank=True)
    activated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    backup_activation_reason = models.TextField(blank=True)
    backup_photo_count = models.PositiveSmallIntegerField(default=0)

    completed_at = models.DateTimeField(null=True, blank=True)
    completed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True)
    cancelled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(end_at__gt=models.F("start_at")),
                name="booking_valid_window",
            ),
        ]
        indexes = [
            models.Index(fields=["assigned_unit", "start_at", "end_at"]),
            models.Index(fields=["returned_unit", "end_at"]),
            models.Index(fields=["category", "location", "status"]),
            models.Index(fields=["status"]),
        ]

    def __str__(self) -> str:
        return f"Booking {self.code} ({self.status})"

    def save(self, *args, **kwargs):  # type: ignore
        if self._state.adding and not self.code:
            self.code = self.generate_code()
        super().save(*args, **kwargs)

    @staticmethod
    def generate_code() -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _position in range(8))

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start_at, self.end_at)

    @property
    def rental_days(self) -> int:
        return self.window.rental_days

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_delivery(self) -> bool:
        return self.fulfillment_type == self.FulfillmentType.DELIVERY


class StepCompletion(models.Model):
    """
    Raw per-step completion data for the ops handover checklist.

    Read through ``apps.bookings.domain.ops_workflow.OpsChecklist``, which
    parses each step into its own typed record.
    """

    booking = models.OneToOneField(Booking, on_delete=models.CASCADE, related_name="step_completion")
    steps = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"Checklist for {self.booking_id}"


class ReturnStepRecord(models.Model):
    """One accepted return workflow transition."""

    booking = models.ForeignKey(Booking, on_delete=models.CASCADE, related_name="return_steps")
    from_state = models.CharField(max_length=20, choices=Booking.ReturnState.choices)
    to_state = models.CharField(max_length=20, choices=Booking.ReturnState.choices)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, related_name="+"
    )
    is_exception = models.BooleanField(default=False)
    exception_reason = models.TextField(blank=True)
    payload = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(fields=["booking", "to_state"], name="return_step_once"),
        ]

    def __str__(self) -> str:
        return f"{self.booking_id}: {self.from_state} -> {self.to_state}"
