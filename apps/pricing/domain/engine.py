"""
Pricing Engine

Pure function from (rate, duration, pickup date, options) to a price
breakdown. No I/O, no clock, no settings lookups: the policy is passed
in, so identical inputs always serialise to byte-identical output.

All arithmetic is exact Decimal. Each reported figure is rounded to
cents exactly once, from the exact value; intermediate results are never
rounded and re-used.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Mapping

from shared.domain.base import ValueObject
from shared.domain.exceptions import ValidationError
from shared.domain.value_objects import round_cents

ZERO = Decimal("0")

YOUNG_DRIVER_BAND = "20_24"
DRIVER_AGE_BANDS = (YOUNG_DRIVER_BAND, "25_70")

SATURDAY, SUNDAY = 5, 6


def _dec(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Go through str so 0.1 stays 0.1.
        return Decimal(repr(value))
    return Decimal(str(value))


@dataclass(frozen=True)
class PricingPolicy(ValueObject):
    """Business constants the engine applies. Built from settings.RENTAL_RULES."""

    pst_rate: Decimal = Decimal("0.07")
    gst_rate: Decimal = Decimal("0.05")
    daily_levy: Decimal = Decimal("1.50")
    daily_access_fee: Decimal = Decimal("1.00")
    weekend_surcharge_rate: Decimal = Decimal("0.15")
    weekly_discount_days: int = 7
    weekly_discount_rate: Decimal = Decimal("0.10")
    monthly_discount_days: int = 30
    monthly_discount_rate: Decimal = Decimal("0.20")
    young_driver_daily_fee: Decimal = Decimal("15.00")
    min_rental_days: int = 1
    max_rental_days: int = 30
    minimum_deposit: Decimal = Decimal("350.00")
    currency: str = "CAD"

    @classmethod
    def from_rules(cls, rules: Mapping[str, Any]) -> "PricingPolicy":
        defaults = cls()

        def pick(key: str, current):
            if key not in rules:
                return current
            return type(current)(rules[key]) if isinstance(current, int) else _dec(rules[key])

        return cls(
            pst_rate=pick("PST_RATE", defaults.pst_rate),
            gst_rate=pick("GST_RATE", defaults.gst_rate),
            daily_levy=pick("DAILY_LEVY", defaults.daily_levy),
            daily_access_fee=pick("DAILY_ACCESS_FEE", defaults.daily_access_fee),
            weekend_surcharge_rate=pick("WEEKEND_SURCHARGE_RATE", defaults.weekend_surcharge_rate),
            weekly_discount_days=pick("WEEKLY_DISCOUNT_DAYS", defaults.weekly_discount_days),
            weekly_discount_rate=pick("WEEKLY_DISCOUNT_RATE", defaults.weekly_discount_rate),
            monthly_discount_days=pick("MONTHLY_DISCOUNT_DAYS", defaults.monthly_discount_days),
            monthly_discount_rate=pick("MONTHLY_DISCOUNT_RATE", defaults.monthly_discount_rate),
            young_driver_daily_fee=pick("YOUNG_DRIVER_DAILY_FEE", defaults.young_driver_daily_fee),
            min_rental_days=pick("MIN_RENTAL_DAYS", defaults.min_rental_days),
            max_rental_days=pick("MAX_RENTAL_DAYS", defaults.max_rental_days),
            minimum_deposit=pick("MINIMUM_DEPOSIT_AMOUNT", defaults.minimum_deposit),
            currency=str(rules.get("CURRENCY", defaults.currency)),
        )

    @property
    def combined_tax_rate(self) -> Decimal:
        return self.pst_rate + self.gst_rate

    def discount_for(self, rental_days: int) -> tuple[str | None, Decimal]:
        """Highest applicable duration tier. Tiers never stack."""
        if rental_days >= self.monthly_discount_days:
            return "monthly", self.monthly_discount_rate
        if rental_days >= self.weekly_discount_days:
            return "weekly", self.weekly_discount_rate
        return None, ZERO


@dataclass(frozen=True)
class PricingInput(ValueObject):
    daily_rate: Decimal
    rental_days: int
    pickup_date: date
    driver_age_band: str | None = None
    protection_daily_rate: Decimal = ZERO
    addons_total: Decimal = ZERO
    delivery_fee: Decimal = ZERO
    upgrade_daily_fee: Decimal = ZERO

    def __post_init__(self):
        for name in ("daily_rate", "protection_daily_rate", "addons_total",
                     "delivery_fee", "upgrade_daily_fee"):
            value = _dec(getattr(self, name))
            if value < 0:
                raise ValidationError(f"{name} cannot be negative", code="invalid_amount")
            object.__setattr__(self, name, value)
        if isinstance(self.rental_days, bool) or not isinstance(self.rental_days, int):
            raise ValidationError("rental_days must be a whole number of days", code="invalid_duration")
        if self.driver_age_band is not None and self.driver_age_band not in DRIVER_AGE_BANDS:
            raise ValidationError(
                f"Unknown driver age band '{self.driver_age_band}'", code="invalid_age_band"
            )


@dataclass(frozen=True)
class PriceBreakdown(ValueObject):
    currency: str
    rental_days: int
    daily_rate: Decimal
    weekend_days: int
    vehicle_base_total: Decimal
    weekend_surcharge: Decimal
    discount_tier: str | None
    duration_discount: Decimal
    protection_total: Decimal
    addons_total: Decimal
    delivery_fee: Decimal
    young_driver_fee: Decimal
    daily_fees_total: Decimal
    subtotal: Decimal
    pst_amount: Decimal
    gst_amount: Decimal
    tax_amount: Decimal
    upgrade_total: Decimal
    total: Decimal
    deposit_amount: Decimal
    line_items: tuple = field(default=())

    def to_dict(self) -> dict:
        return {
            "currency": self.currency,
            "rentalDays": self.rental_days,
            "dailyRate": str(self.daily_rate),
            "weekendDays": self.weekend_days,
            "vehicleBaseTotal": str(self.vehicle_base_total),
            "weekendSurcharge": str(self.weekend_surcharge),
            "discountTier": self.discount_tier,
            "durationDiscount": str(self.duration_discount),
            "protectionTotal": str(self.protection_total),
            "addonsTotal": str(self.addons_total),
            "deliveryFee": str(self.delivery_fee),
            "youngDriverFee": str(self.young_driver_fee),
            "dailyFeesTotal": str(self.daily_fees_total),
            "subtotal": str(self.subtotal),
            "pstAmount": str(self.pst_amount),
            "gstAmount": str(self.gst_amount),
            "taxAmount": str(self.tax_amount),
            "upgradeTotal": str(self.upgrade_total),
            "total": str(self.total),
            "depositAmount": str(self.deposit_amount),
            "lineItems": [list(item) for item in self.line_items],
        }

    def to_json(self) -> str:
        """Canonical serialisation; equal breakdowns give identical strings."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


def count_weekend_days(pickup_date: date, rental_days: int) -> int:
    """Saturdays and Sundays among the ``rental_days`` days starting at pickup."""
    if not pickup_date or rental_days <= 0:
        return 0
    return sum(
        1 for offset in range(rental_days)
        if (pickup_date + timedelta(days=offset)).weekday() in (SATURDAY, SUNDAY)
    )


def compute_price(data: PricingInput, policy: PricingPolicy | None = None) -> PriceBreakdown:
    """
    Compute the full breakdown for one rental.

    subtotal = base + weekend surcharge - duration discount
               + protection + add-ons + delivery + young driver fee
               + daily fixed fees
    total    = subtotal + PST + GST + upgrade fee x days

    The upgrade fee is an operator adjustment applied on top of the taxed
    total so that removing it restores the previous total exactly.

    Raises:
        ValidationError: day count outside [min, max]
    """

    policy = policy or PricingPolicy()
    days = data.rental_days
    if days < policy.min_rental_days:
        raise ValidationError(
            f"Rental must be at least {policy.min_rental_days} day(s), got {days}.",
            code="duration_too_short",
        )
    if days > policy.max_rental_days:
        raise ValidationError(
            f"Rental of {days} days exceeds the maximum of {policy.max_rental_days} days.",
            code="duration_too_long",
        )

    weekend_days = count_weekend_days(data.pickup_date, days)

    base = data.daily_rate * days
    surcharge = data.daily_rate * policy.weekend_surcharge_rate * weekend_days
    tier, discount_rate = policy.discount_for(days)
    discount = (base + surcharge) * discount_rate

    protection = data.protection_daily_rate * days
    young_driver = (
        policy.young_driver_daily_fee * days
        if data.driver_age_band == YOUNG_DRIVER_BAND else ZERO
    )
    daily_fees = (policy.daily_levy + policy.daily_access_fee) * days

    subtotal = (base + surcharge - discount + protection + data.addons_total
                + data.delivery_fee + young_driver + daily_fees)
    pst = subtotal * policy.pst_rate
    gst = subtotal * policy.gst_rate
    upgrade = data.upgrade_daily_fee * days

    line_items = (
        ("vehicle", str(round_cents(base))),
        ("weekend_surcharge", str(round_cents(surcharge))),
        ("duration_discount", str(round_cents(discount))),
        ("protection", str(round_cents(protection))),
        ("addons", str(round_cents(data.addons_total))),
        ("delivery", str(round_cents(data.delivery_fee))),
        ("young_driver", str(round_cents(young_driver))),
        ("daily_levy", str(round_cents(policy.daily_levy * days))),
        ("daily_access_fee", str(round_cents(policy.daily_access_fee * days))),
    )

    return PriceBreakdown(
        currency=policy.currency,
        rental_days=days,
        daily_rate=round_cents(data.daily_rate),
        weekend_days=weekend_days,
        vehicle_base_total=round_cents(base),
        weekend_surcharge=round_cents(surcharge),
        discount_tier=tier,
        duration_discount=round_cents(discount),
        protection_total=round_cents(protection),
        addons_total=round_cents(data.addons_total),
        delivery_fee=round_cents(data.delivery_fee),
        young_driver_fee=round_cents(young_driver),
        daily_fees_total=round_cents(daily_fees),
        subtotal=round_cents(subtotal),
        pst_amount=round_cents(pst),
        gst_amount=round_cents(gst),
        tax_amount=round_cents(pst + gst),
        upgrade_total=round_cents(upgrade),
        total=round_cents(subtotal + pst + gst + upgrade),
        deposit_amount=round_cents(policy.minimum_deposit),
        line_items=line_items,
    )
