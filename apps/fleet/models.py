"""Fleet models: locations, categories, units and checkout holds."""

from __future__ import annotations

import uuid
from datetime import timedelta

from django.conf import settings  # type: ignore
from django.db import models  # type: ignore
from django.db.models import F, Q  # type: ignore
from django.utils import timezone  # type: ignore
from django.utils.translation import gettext_lazy as _  # type: ignore

from shared.domain.value_objects import TimeWindow


def default_cleaning_buffer_hours() -> int:
    return int(settings.RENTAL_RULES.get("DEFAULT_CLEANING_BUFFER_HOURS", 2))


class Location(models.Model):
    """Branch or pickup point. Units are scoped to exactly one location."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=120)
    code = models.SlugField(max_length=32, unique=True)
    address = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class VehicleCategory(models.Model):
    """
    Rentable vehicle class with a shared daily rate.

    Unit counts are derived from VehicleUnit rows and never stored here.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=120)
    pricing_tier = models.CharField(max_length=32, default="standard")
    daily_rate = models.DecimalField(max_digits=10, decimal_places=2)
    is_active = models.BooleanField(default=True)
    sort_order = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["sort_order", "name"]
        verbose_name_plural = "vehicle categories"
        constraints = [
            models.CheckConstraint(condition=Q(daily_rate__gte=0), name="category_rate_non_negative"),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.daily_rate}/day)"


class VehicleUnit(models.Model):
    """One physical vehicle (VIN)."""

    class Status(models.TextChoices):
        AVAILABLE = "available", _("Available")
        ON_RENT = "on_rent", _("On rent")
        MAINTENANCE = "maintenance", _("Maintenance")
        DAMAGE = "damage", _("Damage")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    vin = models.CharField(max_length=17, unique=True)
    plate = models.CharField(max_length=16, unique=True)
    category = models.ForeignKey(VehicleCategory, on_delete=models.PROTECT, related_name="units")
    location = models.ForeignKey(Location, on_delete=models.PROTECT, related_name="units")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.AVAILABLE)
    cleaning_buffer_hours = models.PositiveSmallIntegerField(default=default_cleaning_buffer_hours)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "vin"]
        indexes = [models.Index(fields=["category", "location", "status"])]

    def __str__(self) -> str:
        return f"{self.plate} ({self.vin})"

    @property
    def cleaning_buffer(self) -> timedelta:
        return timedelta(hours=self.cleaning_buffer_hours)


class ReservationHoldQuerySet(models.QuerySet):
    def active(self, now=None) -> "ReservationHoldQuerySet":
        """Holds that still occupy inventory; expiry is enforced here, at read time."""
        now = now or timezone.now()
        return self.filter(status=ReservationHold.Status.ACTIVE, expires_at__gt=now)

    def overlapping(self, window: TimeWindow) -> "ReservationHoldQuerySet":
        return self.filter(start_at__lt=window.end_at, end_at__gt=window.start_at)


class ReservationHold(models.Model):
    """Short-lived soft lock on a category (or a specific unit) during checkout."""

    class Status(models.TextChoices):
        ACTIVE = "active", _("Active")
        CONVERTED = "converted", _("Converted to booking")
        RELEASED = "released", _("Released")
        EXPIRED = "expired", _("Expired")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    category = models.ForeignKey(VehicleCategory, on_delete=models.CASCADE, related_name="holds")
    location = models.ForeignKey(Location, on_delete=models.CASCADE, related_name="holds")
    unit = models.ForeignKey(
        VehicleUnit, on_delete=models.CASCADE, related_name="holds", null=True, blank=True
    )
    session_key = models.CharField(max_length=64, db_index=True)
    start_at = models.DateTimeField()
    end_at = models.DateTimeField()
    expires_at = models.DateTimeField(db_index=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = ReservationHoldQuerySet.as_manager()

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.CheckConstraint(condition=Q(end_at__gt=F("start_at")), name="hold_window_valid"),
        ]

    def __str__(self) -> str:
        return f"Hold {self.id} ({self.status}) until {self.expires_at:%H:%M}"

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start_at, self.end_at)

    def is_active(self, now=None) -> bool:
        now = now or timezone.now()
        return self.status == self.Status.ACTIVE and self.expires_at > now
