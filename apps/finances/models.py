"""Financial domain models for DriveDesk."""

from __future__ import annotations

import uuid
from decimal import Decimal

from django.db import models  # type: ignore
from django.utils import timezone  # type: ignore
from django.utils.translation import gettext_lazy as _  # type: ignore

from .domain.deposit import DepositStatus


class DepositHold(models.Model):
    """
    Security deposit authorization for one booking.

    The single source of truth for deposit state. The booking only keeps
    ledger totals (``deposit_amount``, ``deposit_captured_amount``) that are
    written in the same transaction as the hold changes.
    """

    class Status(models.TextChoices):
        NONE = DepositStatus.NONE.value, _("No deposit")
        REQUIRES_PAYMENT = DepositStatus.REQUIRES_PAYMENT.value, _("Awaiting card")
        AUTHORIZING = DepositStatus.AUTHORIZING.value, _("Authorizing")
        AUTHORIZED = DepositStatus.AUTHORIZED.value, _("Authorized (held)")
        CAPTURING = DepositStatus.CAPTURING.value, _("Capturing")
        CAPTURED = DepositStatus.CAPTURED.value, _("Captured")
        RELEASING = DepositStatus.RELEASING.value, _("Releasing")
        RELEASED = DepositStatus.RELEASED.value, _("Released")
        FAILED = DepositStatus.FAILED.value, _("Failed")
        EXPIRED = DepositStatus.EXPIRED.value, _("Expired")
        CANCELED = DepositStatus.CANCELED.value, _("Canceled")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    booking = models.OneToOneField(
        "bookings.Booking",
        on_delete=models.PROTECT,
        related_name="deposit_hold",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.NONE)
    amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default="CAD")
    captured_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    released_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    provider_ref = models.CharField(_("Processor authorization id"), max_length=128, blank=True, db_index=True)
    client_secret = models.CharField(max_length=255, blank=True)
    card_brand = models.CharField(max_length=20, blank=True)
    card_last4 = models.CharField(max_length=4, blank=True)
    attempt = models.PositiveSmallIntegerField(default=0)
    authorized_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    captured_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    last_reason = models.TextField(blank=True)
    last_error = models.TextField(blank=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Deposit {self.booking_id} ({self.status}, {self.amount} {self.currency})"

    @property
    def state(self) -> DepositStatus:
        return DepositStatus(self.status)

    def idempotency_key(self, operation: str) -> str:
        return f"deposit-{self.pk}-{self.attempt}-{operation}"

    def mark_synced(self) -> None:
        self.last_synced_at = timezone.now()
        self.save(update_fields=["last_synced_at", "updated_at"])
