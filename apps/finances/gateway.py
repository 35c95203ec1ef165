"""
Payment gateway client

Card authorizations (deposit holds) through the processor's REST API.
Amounts cross the wire in minor units. Every mutating call carries an
idempotency key so a retried request never authorizes or captures twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import requests
from django.conf import settings
from django.utils.module_loading import import_string

from shared.domain.exceptions import ExternalServiceError
from shared.domain.value_objects import round_cents

logger = logging.getLogger(__name__)

# Processor error code for an operation on an intent already in another state.
UNEXPECTED_STATE = "payment_intent_unexpected_state"


def to_minor_units(amount: Decimal) -> int:
    return int(round_cents(Decimal(amount)) * 100)


def from_minor_units(value: Any) -> Decimal:
    return round_cents(Decimal(int(value or 0)) / 100)


@dataclass(frozen=True)
class GatewayIntent:
    """Processor's view of one authorization"""
    id: str
    status: str
    amount: Decimal
    amount_captured: Decimal = Decimal("0.00")
    client_secret: str | None = None
    cancellation_reason: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "GatewayIntent":
        card = (payload.get("payment_method") or {}).get("card") or {}
        return cls(
            id=payload["id"],
            status=payload["status"],
            amount=from_minor_units(payload.get("amount")),
            amount_captured=from_minor_units(payload.get("amount_received") or payload.get("amount_captured")),
            client_secret=payload.get("client_secret"),
            cancellation_reason=payload.get("cancellation_reason"),
            card_brand=card.get("brand"),
            card_last4=card.get("last4"),
        )


class PaymentGatewayClient:
    """HTTP client for the payment processor."""

    def __init__(self, base_url: str | None = None, api_key: str | None = None, timeout: int | None = None):
        self.base_url = (base_url or settings.PAYMENT_GATEWAY_BASE_URL).rstrip("/") + "/"
        self.api_key = api_key if api_key is not None else settings.PAYMENT_GATEWAY_API_KEY
        self.timeout = timeout or getattr(settings, "PAYMENT_GATEWAY_TIMEOUT", 30)
        self.session = requests.Session()

    def _headers(self, idempotency_key: str | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(self, method: str, path: str, *, json: dict | None = None,
                 idempotency_key: str | None = None) -> GatewayIntent:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                json=json,
                headers=self._headers(idempotency_key),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error(f"Payment gateway unreachable ({method} {path}): {exc}", exc_info=True)
            raise ExternalServiceError(
                "The payment provider could not be reached; try again shortly.",
                code="gateway_unavailable",
                retryable=True,
            ) from exc

        if response.status_code >= 500:
            logger.error(f"Payment gateway error {response.status_code} on {method} {path}")
            raise ExternalServiceError(
                f"The payment provider failed ({response.status_code}); try again shortly.",
                code="gateway_error",
                retryable=True,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error(f"Payment gateway returned non-JSON body on {method} {path}", exc_info=True)
            raise ExternalServiceError(
                "The payment provider sent an unreadable response.",
                code="gateway_bad_response",
                retryable=True,
            ) from exc

        if response.status_code >= 400:
            error = payload.get("error") or {}
            provider_code = error.get("code")
            logger.warning(f"Payment gateway rejected {method} {path}: {provider_code} {error.get('message')}")
            raise ExternalServiceError(
                error.get("message") or f"The payment provider rejected the request ({response.status_code}).",
                code="gateway_rejected",
                retryable=False,
                provider_code=provider_code,
            )

        return GatewayIntent.from_payload(payload)

    def create_authorization(self, *, booking_id, amount: Decimal, currency: str,
                             idempotency_key: str, description: str = "") -> GatewayIntent:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "capture_method": "manual",
            "description": description or f"Security deposit for booking {booking_id}",
            "metadata": {"booking_id": str(booking_id), "type": "deposit_hold"},
        }
        logger.info(f"Creating deposit authorization for booking {booking_id}: {amount} {currency}")
        return self._request("POST", "payment_intents", json=payload, idempotency_key=idempotency_key)

    def capture(self, ref: str, *, amount: Decimal, idempotency_key: str) -> GatewayIntent:
        payload = {"amount_to_capture": to_minor_units(amount)}
        return self._request("POST", f"payment_intents/{ref}/capture", json=payload,
                             idempotency_key=idempotency_key)

    def cancel(self, ref: str, *, reason: str, idempotency_key: str) -> GatewayIntent:
        payload = {"cancellation_reason": "requested_by_customer", "metadata": {"reason": reason[:500]}}
        return self._request("POST", f"payment_intents/{ref}/cancel", json=payload,
                             idempotency_key=idempotency_key)

    def retrieve(self, ref: str) -> GatewayIntent:
        return self._request("GET", f"payment_intents/{ref}")


def get_gateway():
    """Instantiate the configured gateway class (PAYMENT_GATEWAY_CLASS)."""
    return import_string(settings.PAYMENT_GATEWAY_CLASS)()
