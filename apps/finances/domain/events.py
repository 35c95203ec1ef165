"""Deposit hold events, published after commit."""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from shared.domain.base import DomainEvent


@dataclass
class DepositAuthorized(DomainEvent):
    booking_id: UUID
    amount: Decimal


@dataclass
class DepositCaptured(DomainEvent):
    booking_id: UUID
    captured_amount: Decimal
    released_amount: Decimal
    reason: str


@dataclass
class DepositReleased(DomainEvent):
    booking_id: UUID
    amount: Decimal
    reason: str
