"""Payment gateway port and the Stripe adapter."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import stripe

from .config import Settings, settings
from .errors import GatewayError, SignatureVerificationError
from .fees import FeeBreakdown

logger = logging.getLogger("uvicorn.error")

# Stripe accepts checkout expiries between 30 minutes and 24 hours out.
MIN_CHECKOUT_EXPIRY_MINUTES = 30
MAX_CHECKOUT_EXPIRY_MINUTES = 24 * 60


@dataclass(frozen=True)
class CheckoutRequest:
    booking_id: str
    event_id: str
    user_id: str
    email: str
    title: str
    currency: str
    quantity: int
    unit_price: int
    fees: FeeBreakdown
    destination_account: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def correlation_metadata(self) -> dict[str, str]:
        return {
            "booking_id": self.booking_id,
            "event_id": self.event_id,
            "user_id": self.user_id,
            **self.metadata,
        }


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None
    amount_total: int


@dataclass(frozen=True)
class RefundReceipt:
    id: str
    amount: int
    status: str


class PaymentGateway(Protocol):
    """What the engine needs from a payment provider."""

    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession: ...

    def expire_checkout(self, checkout_id: str) -> None: ...

    def refund(
        self,
        charge_id: str,
        *,
        amount: int | None,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundReceipt: ...

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]: ...


class StripeGateway:
    """Stripe Checkout + Refunds + signed webhooks."""

    def __init__(self, config: Settings | None = None) -> None:
        self.config = config or settings

    def _api_key(self) -> str:
        if not self.config.stripe_secret_key:
            raise GatewayError("Stripe secret key is not configured")
        return self.config.stripe_secret_key

    def _checkout_expires_at(self) -> int:
        minutes = min(
            max(self.config.checkout_expiry_minutes, MIN_CHECKOUT_EXPIRY_MINUTES),
            MAX_CHECKOUT_EXPIRY_MINUTES,
        )
        return int(time.time()) + minutes * 60

    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        currency = request.currency.lower()
        line_items: list[dict[str, Any]] = [
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": request.unit_price,
                    "product_data": {"name": request.title},
                },
                "quantity": request.quantity,
            }
        ]
        if request.fees.service_fee:
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": request.fees.service_fee,
                        "product_data": {"name": "Service fee"},
                    },
                    "quantity": 1,
                }
            )
        metadata = request.correlation_metadata()
        payment_intent_data: dict[str, Any] = {"metadata": metadata}
        if request.destination_account:
            payment_intent_data["application_fee_amount"] = request.fees.platform_fee
            payment_intent_data["transfer_data"] = {
                "destination": request.destination_account
            }
        try:
            session = stripe.checkout.Session.create(
                api_key=self._api_key(),
                mode="payment",
                line_items=line_items,
                customer_email=request.email,
                client_reference_id=request.booking_id,
                metadata=metadata,
                payment_intent_data=payment_intent_data,
                expires_at=self._checkout_expires_at(),
                success_url=self.config.checkout_success_url,
                cancel_url=self.config.checkout_cancel_url,
            )
        except stripe.StripeError as exc:
            logger.error(
                "Stripe checkout creation failed for booking %s: %s",
                request.booking_id,
                exc,
            )
            raise GatewayError(f"Checkout could not be created: {exc}") from exc
        return CheckoutSession(
            id=session.id,
            url=session.url,
            amount_total=session.amount_total or request.fees.attendee_pays,
        )

    def expire_checkout(self, checkout_id: str) -> None:
        """Close an open checkout so it can no longer be paid."""
        try:
            stripe.checkout.Session.expire(checkout_id, api_key=self._api_key())
        except stripe.StripeError as exc:
            logger.error("Stripe could not expire checkout %s: %s", checkout_id, exc)
            raise GatewayError(f"Checkout {checkout_id} could not be closed: {exc}") from exc

    def refund(
        self,
        charge_id: str,
        *,
        amount: int | None,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundReceipt:
        params: dict[str, Any] = {
            "api_key": self._api_key(),
            "payment_intent": charge_id,
            "idempotency_key": idempotency_key,
            "metadata": metadata or {},
        }
        if amount is not None:
            params["amount"] = amount
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as exc:
            logger.error("Stripe refund failed for %s: %s", charge_id, exc)
            raise GatewayError(f"Refund failed: {exc}") from exc
        if refund.status in {"failed", "canceled"}:
            raise GatewayError(f"Refund {refund.id} ended with status {refund.status}")
        return RefundReceipt(id=refund.id, amount=refund.amount, status=refund.status)

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        secret = self.config.stripe_webhook_secret
        if not secret:
            raise GatewayError("Stripe webhook secret is not configured")
        if not signature:
            raise SignatureVerificationError("Missing gateway signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected gateway callback with invalid signature")
            raise SignatureVerificationError("Invalid gateway signature") from exc
        except ValueError as exc:
            raise SignatureVerificationError("Malformed gateway payload") from exc
        return json.loads(payload)
