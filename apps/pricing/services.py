"""Pricing services: policy from settings, quotes and snapshot locking."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from django.conf import settings  # type: ignore
from django.db.models import Max  # type: ignore

from shared.domain.value_objects import TimeWindow

from .domain.engine import PriceBreakdown, PricingInput, PricingPolicy, compute_price
from .models import PricingSnapshot

logger = logging.getLogger(__name__)


def get_pricing_policy() -> PricingPolicy:
    return PricingPolicy.from_rules(getattr(settings, "RENTAL_RULES", {}))


def build_pricing_input(
    daily_rate: Decimal,
    window: TimeWindow,
    *,
    driver_age_band: str | None = None,
    protection_daily_rate: Decimal | None = None,
    addons_total: Decimal | None = None,
    delivery_fee: Decimal | None = None,
    upgrade_daily_fee: Decimal | None = None,
) -> PricingInput:
    return PricingInput(
        daily_rate=daily_rate,
        rental_days=window.rental_days,
        pickup_date=window.start_at.date(),
        driver_age_band=driver_age_band or None,
        protection_daily_rate=protection_daily_rate or Decimal("0"),
        addons_total=addons_total or Decimal("0"),
        delivery_fee=delivery_fee or Decimal("0"),
        upgrade_daily_fee=upgrade_daily_fee or Decimal("0"),
    )


def pricing_input_for_booking(booking) -> PricingInput:
    """Inputs for a booking as currently stored; upgrades are tracked separately."""
    return build_pricing_input(
        booking.daily_rate,
        booking.window,
        driver_age_band=booking.driver_age_band,
        protection_daily_rate=booking.protection_daily_rate,
        addons_total=booking.addons_total,
        delivery_fee=booking.delivery_fee,
    )


def quote(data: PricingInput, policy: PricingPolicy | None = None) -> PriceBreakdown:
    return compute_price(data, policy or get_pricing_policy())


def inputs_to_dict(data: PricingInput) -> dict[str, Any]:
    return {
        "dailyRate": str(data.daily_rate),
        "rentalDays": data.rental_days,
        "pickupDate": data.pickup_date.isoformat(),
        "driverAgeBand": data.driver_age_band,
        "protectionDailyRate": str(data.protection_daily_rate),
        "addonsTotal": str(data.addons_total),
        "deliveryFee": str(data.delivery_fee),
        "upgradeDailyFee": str(data.upgrade_daily_fee),
    }


def create_snapshot(booking, data: PricingInput, breakdown: PriceBreakdown, actor=None) -> PricingSnapshot:
    """
    Freeze ``breakdown`` as the next snapshot version for ``booking``.

    The caller owns the transaction and has the booking row locked, so the
    version sequence cannot race.
    """

    latest = (
        PricingSnapshot.objects.filter(booking=booking).aggregate(v=Max("version"))["v"] or 0
    )
    snapshot = PricingSnapshot.objects.create(
        booking=booking,
        version=latest + 1,
        inputs=inputs_to_dict(data),
        breakdown=breakdown.to_dict(),
        total=breakdown.total,
        currency=breakdown.currency,
        locked_by=actor if getattr(actor, "pk", None) else None,
    )
    logger.info(f"Locked pricing snapshot v{snapshot.version} for booking {booking.pk}: {snapshot.total}")
    return snapshot
