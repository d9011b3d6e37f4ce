"""Gateway callback reconciliation.

Callbacks may arrive late, twice, or out of order. Every processed callback
id is stored so redeliveries short-circuit, and each handler only moves a
booking when its current state still allows the transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import bookings
from .errors import (
    AlreadyProcessedError,
    CapacityExceededError,
    DomainError,
    NotFoundError,
    ValidationError,
)
from .gateway import PaymentGateway
from .models import Booking, BookingStatus, GatewayEvent, GatewayPayment
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
ALREADY_PROCESSED = "already_processed"
SKIPPED = "skipped"


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    action: str
    booking_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "received": True,
            "id": self.event_id,
            "type": self.event_type,
            "action": self.action,
            "booking_id": self.booking_id,
        }


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def _booking_from_checkout(session: Session, obj: dict[str, Any]) -> Booking:
    booking_id = _metadata(obj).get("booking_id") or obj.get("client_reference_id")
    booking = session.get(Booking, booking_id) if booking_id else None
    if booking is None:
        raise NotFoundError(f"No booking for checkout session {obj.get('id')}")
    return booking


def _booking_from_payment_intent(
    session: Session, payment_intent: str | None, obj: dict[str, Any]
) -> Booking:
    booking_id = _metadata(obj).get("booking_id")
    booking = session.get(Booking, booking_id) if booking_id else None
    if booking is None and payment_intent:
        booking = session.scalars(
            select(Booking).where(Booking.gateway_charge_id == payment_intent)
        ).first()
    if booking is None:
        raise NotFoundError(f"No booking for payment {payment_intent}")
    return booking


def _checkout_completed(session: Session, obj: dict[str, Any], now: datetime) -> Booking:
    booking = _booking_from_checkout(session, obj)
    if obj.get("payment_status") == "unpaid":
        # Delayed payment methods complete later via async_payment_succeeded.
        logger.info("Checkout %s completed without payment yet", obj.get("id"))
        return booking
    return bookings.mark_paid(
        session,
        booking,
        payment_reference=obj["id"],
        charge_id=obj.get("payment_intent"),
        amount=obj.get("amount_total"),
        now=now,
    )


def _checkout_failed(session: Session, obj: dict[str, Any], now: datetime) -> Booking:
    booking = _booking_from_checkout(session, obj)
    if (
        booking.status != BookingStatus.PENDING_PAYMENT
        or booking.payment_reference != obj.get("id")
    ):
        logger.warning(
            "Ignoring stale checkout %s for booking %s in %s",
            obj.get("id"),
            booking.id,
            booking.status,
        )
        return booking
    return bookings.mark_failed(
        session,
        booking,
        payment_reference=obj["id"],
        reason="Checkout session expired",
        now=now,
    )


def _payment_failed(session: Session, obj: dict[str, Any], now: datetime) -> Booking:
    booking = _booking_from_payment_intent(session, obj.get("id"), obj)
    if (
        booking.status != BookingStatus.PENDING_PAYMENT
        or not isinstance(booking.payment, GatewayPayment)
    ):
        logger.warning(
            "Ignoring payment failure %s for booking %s in %s",
            obj.get("id"),
            booking.id,
            booking.status,
        )
        return booking
    error = (obj.get("last_payment_error") or {}).get("message")
    return bookings.mark_failed(
        session,
        booking,
        payment_reference=booking.payment_reference,
        reason=error or "Payment failed",
        now=now,
    )


def _charge_refunded(session: Session, obj: dict[str, Any], now: datetime) -> Booking:
    booking = _booking_from_payment_intent(session, obj.get("payment_intent"), obj)
    refunds = (obj.get("refunds") or {}).get("data") or []
    refund_reference = refunds[0]["id"] if refunds else f"charge-{obj.get('id')}"
    return bookings.record_refund(
        session,
        booking,
        refund_reference=refund_reference,
        amount=int(obj.get("amount_refunded") or 0),
        reason="Refunded at the payment gateway",
        now=now,
    )


HANDLERS: dict[str, Callable[[Session, dict[str, Any], datetime], Booking]] = {
    "checkout.session.completed": _checkout_completed,
    "checkout.session.async_payment_succeeded": _checkout_completed,
    "checkout.session.expired": _checkout_failed,
    "checkout.session.async_payment_failed": _checkout_failed,
    "payment_intent.payment_failed": _payment_failed,
    "charge.refunded": _charge_refunded,
}


def _claim_event(session: Session, event_id: str, event_type: str, now: datetime) -> bool:
    """Record the callback id; ``False`` when another delivery already did."""
    if session.get(GatewayEvent, event_id) is not None:
        return False
    try:
        with session.begin_nested():
            session.add(GatewayEvent(id=event_id, event_type=event_type, processed_at=now))
            session.flush()
    except IntegrityError:
        return False
    return True


def handle_gateway_webhook(
    session: Session,
    gateway: PaymentGateway,
    payload: bytes,
    signature: str | None,
    *,
    now: datetime | None = None,
) -> WebhookOutcome:
    """Verify, dedupe and apply one gateway callback.

    Domain errors from a handler are logged and acknowledged so the gateway
    stops redelivering; anything else propagates and rolls the request back,
    including the dedupe record, so the gateway retries.
    """
    now = now or utcnow()
    event = gateway.construct_event(payload, signature)
    event_id = event.get("id")
    event_type = event.get("type") or ""
    if not event_id:
        raise ValidationError("Gateway event has no id")

    if not _claim_event(session, event_id, event_type, now):
        logger.info("Duplicate gateway event %s (%s) skipped", event_id, event_type)
        return WebhookOutcome(event_id, event_type, DUPLICATE)

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled gateway event type %s acknowledged", event_type)
        return WebhookOutcome(event_id, event_type, IGNORED)

    obj = (event.get("data") or {}).get("object") or {}
    try:
        booking = handler(session, obj, now)
    except AlreadyProcessedError as exc:
        logger.info("Gateway event %s already applied: %s", event_id, exc.message)
        return WebhookOutcome(event_id, event_type, ALREADY_PROCESSED)
    except CapacityExceededError as exc:
        logger.error(
            "Gateway event %s paid for a booking with no seat left, refund it manually: %s",
            event_id,
            exc.message,
        )
        return WebhookOutcome(event_id, event_type, SKIPPED)
    except DomainError as exc:
        logger.warning("Gateway event %s (%s) not applied: %s", event_id, event_type, exc)
        return WebhookOutcome(event_id, event_type, SKIPPED)
    return WebhookOutcome(event_id, event_type, PROCESSED, booking_id=booking.id)
