"""
Deposit Hold State Machine

Local states mirror the processor's authorization lifecycle:

    none -> requires_payment -> authorizing -> authorized -> capturing -> captured
                                             authorized -> releasing -> released
    failed | expired | canceled reachable from several intermediate states

The local row is a cache of the processor's state. Transitions coming
from a processor read are always accepted (the processor is
authoritative); transitions we initiate are checked against the table.
"""

from enum import Enum

from shared.domain.exceptions import InvalidTransitionError


class DepositStatus(str, Enum):
    NONE = "none"
    REQUIRES_PAYMENT = "requires_payment"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    CAPTURING = "capturing"
    CAPTURED = "captured"
    RELEASING = "releasing"
    RELEASED = "released"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELED = "canceled"


TRANSIENT = frozenset({DepositStatus.AUTHORIZING, DepositStatus.CAPTURING, DepositStatus.RELEASING})
TERMINAL = frozenset({
    DepositStatus.CAPTURED, DepositStatus.RELEASED,
    DepositStatus.FAILED, DepositStatus.EXPIRED, DepositStatus.CANCELED,
})
# A new authorization may be started from these.
RESTARTABLE = frozenset({
    DepositStatus.NONE, DepositStatus.FAILED, DepositStatus.EXPIRED, DepositStatus.CANCELED,
})
NOTHING_HELD = frozenset({DepositStatus.RELEASED, DepositStatus.CANCELED, DepositStatus.EXPIRED})

_S = DepositStatus
ALLOWED = {
    _S.NONE: {_S.AUTHORIZING, _S.REQUIRES_PAYMENT, _S.FAILED},
    _S.REQUIRES_PAYMENT: {_S.AUTHORIZING, _S.AUTHORIZED, _S.FAILED, _S.CANCELED, _S.EXPIRED, _S.RELEASING},
    _S.AUTHORIZING: {_S.REQUIRES_PAYMENT, _S.AUTHORIZED, _S.FAILED, _S.CANCELED},
    _S.AUTHORIZED: {_S.CAPTURING, _S.RELEASING, _S.CAPTURED, _S.RELEASED, _S.EXPIRED, _S.CANCELED},
    _S.CAPTURING: {_S.CAPTURED, _S.AUTHORIZED, _S.FAILED},
    _S.RELEASING: {_S.RELEASED, _S.AUTHORIZED, _S.REQUIRES_PAYMENT, _S.CANCELED},
    _S.CAPTURED: set(),
    _S.RELEASED: set(),
    _S.FAILED: {_S.AUTHORIZING},
    _S.EXPIRED: {_S.AUTHORIZING},
    _S.CANCELED: {_S.AUTHORIZING},
}


def ensure_transition(current, target) -> None:
    current, target = DepositStatus(current), DepositStatus(target)
    if target not in ALLOWED[current]:
        raise InvalidTransitionError(
            f"Deposit hold cannot move from {current.value} to {target.value}.",
            code="invalid_deposit_transition",
            current_state=current.value,
        )


def map_processor_status(status: str, cancellation_reason: str | None = None) -> DepositStatus:
    """
    Translate the processor's authorization status into a local state.

    An automatic cancellation means the authorization window lapsed.
    """
    if status in ("requires_payment_method", "requires_confirmation"):
        return DepositStatus.REQUIRES_PAYMENT
    if status in ("requires_action", "processing"):
        return DepositStatus.AUTHORIZING
    if status == "requires_capture":
        return DepositStatus.AUTHORIZED
    if status == "succeeded":
        return DepositStatus.CAPTURED
    if status == "canceled":
        return DepositStatus.EXPIRED if cancellation_reason == "automatic" else DepositStatus.CANCELED
    return DepositStatus.FAILED


def next_poll_delay(attempt: int, status, intervals) -> int | None:
    """
    Seconds until the next status poll, or None to stop.

    Transient states walk the interval list and then stay at its last
    entry; stable states are not polled.
    """
    if DepositStatus(status) not in TRANSIENT | {DepositStatus.REQUIRES_PAYMENT}:
        return None
    intervals = list(intervals) or [5]
    return int(intervals[min(attempt, len(intervals) - 1)])
