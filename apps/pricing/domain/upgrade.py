"""Upgrade fee arithmetic.

A category change never reprices a booking by itself. Any price delta is
an explicit per-day fee added on top of the current total and recorded
alongside the total it was applied to, so removal is exact.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from shared.domain.base import ValueObject
from shared.domain.exceptions import ValidationError
from shared.domain.value_objects import round_cents

ZERO = Decimal("0")


def default_upgrade_fee(old_daily_rate: Decimal, new_daily_rate: Decimal) -> Decimal:
    """Rate delta, clamped so a downgrade never produces a negative fee."""
    return max(ZERO, round_cents(Decimal(new_daily_rate) - Decimal(old_daily_rate)))


@dataclass(frozen=True)
class UpgradeFee(ValueObject):
    daily_fee: Decimal
    rental_days: int
    base_total: Decimal

    def __post_init__(self):
        object.__setattr__(self, "daily_fee", round_cents(Decimal(self.daily_fee)))
        object.__setattr__(self, "base_total", Decimal(self.base_total))
        if self.daily_fee < 0:
            raise ValidationError("Upgrade fee cannot be negative", code="invalid_upgrade_fee")
        if self.rental_days < 1:
            raise ValidationError("Upgrade needs at least one rental day", code="invalid_duration")

    @property
    def fee_total(self) -> Decimal:
        return self.daily_fee * self.rental_days

    @property
    def new_total(self) -> Decimal:
        return self.base_total + self.fee_total


def apply_upgrade(
    current_total: Decimal,
    rental_days: int,
    *,
    daily_fee: Decimal | None = None,
    old_daily_rate: Decimal | None = None,
    new_daily_rate: Decimal | None = None,
    pre_upgrade_total: Decimal | None = None,
) -> UpgradeFee:
    """
    Price an upgrade.

    ``daily_fee`` is the operator override (zero is a valid override).
    Without it the fee defaults to the clamped rate delta. If an upgrade is
    already applied, ``pre_upgrade_total`` is the base the new fee replaces.
    """

    if daily_fee is None:
        if old_daily_rate is None or new_daily_rate is None:
            raise ValidationError(
                "Either an explicit fee or both daily rates are required",
                code="invalid_upgrade_fee",
            )
        daily_fee = default_upgrade_fee(old_daily_rate, new_daily_rate)
    base = pre_upgrade_total if pre_upgrade_total is not None else current_total
    return UpgradeFee(daily_fee=daily_fee, rental_days=rental_days, base_total=base)
