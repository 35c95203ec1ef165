from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from apps.finances.domain.deposit import DepositStatus, ensure_transition, map_processor_status, next_poll_delay
from apps.finances.gateway import PaymentGatewayClient, from_minor_units, to_minor_units
from shared.domain.exceptions import ExternalServiceError, InvalidTransitionError


@pytest.mark.parametrize(
    "status, reason, expected",
    [
        ("requires_payment_method", None, DepositStatus.REQUIRES_PAYMENT),
        ("processing", None, DepositStatus.AUTHORIZING),
        ("requires_capture", None, DepositStatus.AUTHORIZED),
        ("succeeded", None, DepositStatus.CAPTURED),
        ("canceled", "requested_by_customer", DepositStatus.CANCELED),
        ("canceled", "automatic", DepositStatus.EXPIRED),
        ("something_new", None, DepositStatus.FAILED),
    ],
)
def test_processor_status_mapping(status, reason, expected) -> None:
    assert map_processor_status(status, reason) == expected


def test_poll_delay_walks_intervals_then_stops_on_stable_state() -> None:
    intervals = [2, 5, 10]
    assert [next_poll_delay(n, "authorizing", intervals) for n in range(5)] == [2, 5, 10, 10, 10]
    assert next_poll_delay(0, "requires_payment", intervals) == 2
    assert next_poll_delay(0, "authorized", intervals) is None


def test_captured_hold_cannot_be_released() -> None:
    with pytest.raises(InvalidTransitionError):
        ensure_transition("captured", "releasing")
    ensure_transition("authorized", "releasing")


def test_minor_units() -> None:
    assert to_minor_units(Decimal("350.005")) == 35001
    assert from_minor_units(12345) == Decimal("123.45")
    assert from_minor_units(None) == Decimal("0.00")


def _response(status_code: int, payload: dict) -> Mock:
    response = Mock(status_code=status_code)
    response.json.return_value = payload
    return response


@pytest.fixture
def client() -> PaymentGatewayClient:
    return PaymentGatewayClient(base_url="https://gateway.test/v1", api_key="sk_test", timeout=5)


def test_create_sends_minor_units_and_idempotency_key(client) -> None:
    client.session.request = Mock(return_value=_response(200, {
        "id": "pi_1",
        "status": "requires_capture",
        "amount": 35000,
        "payment_method": {"card": {"brand": "visa", "last4": "4242"}},
    }))

    intent = client.create_authorization(
        booking_id="b-1", amount=Decimal("350.00"), currency="CAD", idempotency_key="deposit-x-1-create"
    )

    method, url = client.session.request.call_args.args
    kwargs = client.session.request.call_args.kwargs
    assert (method, url) == ("POST", "https://gateway.test/v1/payment_intents")
    assert kwargs["json"]["amount"] == 35000
    assert kwargs["json"]["capture_method"] == "manual"
    assert kwargs["headers"]["Idempotency-Key"] == "deposit-x-1-create"
    assert intent.amount == Decimal("350.00")
    assert intent.card_last4 == "4242"


def test_transport_failure_is_retryable(client) -> None:
    client.session.request = Mock(side_effect=requests.ConnectionError("reset by peer"))
    with pytest.raises(ExternalServiceError) as exc_info:
        client.retrieve("pi_1")
    assert exc_info.value.retryable
    assert exc_info.value.code == "gateway_unavailable"


def test_server_error_is_retryable(client) -> None:
    client.session.request = Mock(return_value=_response(503, {}))
    with pytest.raises(ExternalServiceError) as exc_info:
        client.retrieve("pi_1")
    assert exc_info.value.retryable


def test_rejection_carries_provider_code(client) -> None:
    client.session.request = Mock(return_value=_response(400, {
        "error": {"code": "payment_intent_unexpected_state", "message": "Already canceled."},
    }))
    with pytest.raises(ExternalServiceError) as exc_info:
        client.cancel("pi_1", reason="rental cancelled", idempotency_key="k")
    assert not exc_info.value.retryable
    assert exc_info.value.provider_code == "payment_intent_unexpected_state"
    assert exc_info.value.message == "Already canceled."
