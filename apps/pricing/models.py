"""Immutable pricing snapshots."""

from __future__ import annotations

import uuid

from django.conf import settings  # type: ignore
from django.core.serializers.json import DjangoJSONEncoder  # type: ignore
from django.db import models  # type: ignore

from shared.domain.exceptions import DomainError


def _immutable() -> DomainError:
    return DomainError("A locked pricing snapshot cannot be changed.", code="snapshot_immutable")


class PricingSnapshotQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise _immutable()

    def delete(self):
        raise _immutable()


class PricingSnapshot(models.Model):
    """
    Frozen price breakdown a booking was locked to.

    Rows are write-once. Re-pricing a booking produces a new quote and,
    on explicit re-lock, a new snapshot with a higher version.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    booking = models.ForeignKey(
        "bookings.Booking", on_delete=models.PROTECT, related_name="pricing_snapshots"
    )
    version = models.PositiveIntegerField()
    inputs = models.JSONField(encoder=DjangoJSONEncoder)
    breakdown = models.JSONField(encoder=DjangoJSONEncoder)
    total = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default="CAD")
    locked_at = models.DateTimeField(auto_now_add=True)
    locked_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )

    objects = PricingSnapshotQuerySet.as_manager()

    class Meta:
        ordering = ["booking", "version"]
        constraints = [
            models.UniqueConstraint(fields=["booking", "version"], name="snapshot_version_unique"),
        ]

    def __str__(self) -> str:
        return f"Snapshot v{self.version} for {self.booking_id}: {self.total} {self.currency}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise _immutable()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise _immutable()
