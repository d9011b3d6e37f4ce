"""Booking state machine.

States move ``INTERESTED -> PENDING_PAYMENT -> PAID | FAILED``, ``PAID ->
REFUNDED``, ``INTERESTED -> JOINED`` for free events, and any non-terminal
state to ``CANCELLED``. A ``FAILED`` booking may start a fresh payment attempt.

Seats are counted on the event row: a pending payment holds seats
(``seats_held``) and a confirmed booking takes them (``seats_taken``). Both are
changed only through conditional UPDATEs so concurrent requests can never push
confirmed bookings past capacity.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import notifications, waitlist
from .config import settings
from .crud import Actor, find_booking, require_booking_owner, require_event_host
from .errors import (
    AlreadyProcessedError,
    CapacityExceededError,
    ErrorCode,
    InvalidTransitionError,
    ValidationError,
)
from .fees import quote_event_fees
from .gateway import CheckoutRequest, CheckoutSession, PaymentGateway, RefundReceipt
from .models import (
    TERMINAL_STATUSES,
    Booking,
    BookingStatus,
    Event,
    GatewayPayment,
    ManualPayment,
    PaymentMethod,
    Transaction,
    TransactionStatus,
)
from .refunds import evaluate_refund, parse_refund_policy
from .utils import normalize_email, utcnow

logger = logging.getLogger("uvicorn.error")

MIN_MANUAL_REFERENCE_LENGTH = 4


# --- seat counters -----------------------------------------------------------


def _claim_seats(session: Session, event: Event, column: str, quantity: int) -> bool:
    """Add ``quantity`` to ``column`` only if the event has room for it."""
    counter = getattr(Event, column)
    result = session.execute(
        update(Event)
        .where(
            Event.id == event.id,
            or_(
                Event.capacity.is_(None),
                Event.seats_taken + Event.seats_held + quantity <= Event.capacity,
            ),
        )
        .values({column: counter + quantity})
        .execution_options(synchronize_session=False)
    )
    session.expire(event, ["seats_taken", "seats_held"])
    return result.rowcount == 1


def _release_seats(session: Session, event: Event, column: str, quantity: int) -> None:
    counter = getattr(Event, column)
    session.execute(
        update(Event)
        .where(Event.id == event.id, counter >= quantity)
        .values({column: counter - quantity})
        .execution_options(synchronize_session=False)
    )
    session.expire(event, ["seats_taken", "seats_held"])


def _confirm_held_seats(session: Session, event: Event, quantity: int) -> bool:
    """Move a pending hold over to the confirmed counter."""
    result = session.execute(
        update(Event)
        .where(Event.id == event.id, Event.seats_held >= quantity)
        .values(
            seats_held=Event.seats_held - quantity,
            seats_taken=Event.seats_taken + quantity,
        )
        .execution_options(synchronize_session=False)
    )
    session.expire(event, ["seats_taken", "seats_held"])
    return result.rowcount == 1


def _release_confirmed(
    session: Session, booking: Booking, *, now: datetime
) -> None:
    """Give back a confirmed booking's seats and offer them to the waitlist."""
    event = booking.event
    was_full = event.is_full
    _release_seats(session, event, "seats_taken", booking.quantity)
    if was_full:
        waitlist.promote(session, event, booking.quantity, now=now)


# --- helpers -------------------------------------------------------------------


def gateway_charge(booking: Booking) -> str | None:
    """Charge id of a gateway-paid booking; ``None`` for manual or unpaid ones."""
    payment = booking.payment
    if isinstance(payment, GatewayPayment):
        return payment.charge_id
    return None


def refund_idempotency_key(booking: Booking) -> str:
    return f"refund-{booking.id}-{gateway_charge(booking)}"


def _refund_at_gateway(
    booking: Booking, gateway: PaymentGateway | None, amount: int
) -> RefundReceipt:
    if gateway is None:
        raise ValidationError("A payment gateway is required to refund")
    charge_id = gateway_charge(booking)
    if not charge_id:
        raise ValidationError("Booking has no gateway charge to refund")
    return gateway.refund(
        charge_id,
        amount=amount,
        idempotency_key=refund_idempotency_key(booking),
        metadata={"booking_id": booking.id, "event_id": booking.event_id},
    )


def list_event_bookings(
    session: Session, event: Event, statuses: Sequence[str] | None = None
) -> Sequence[Booking]:
    stmt = select(Booking).where(Booking.event_id == event.id)
    if statuses:
        stmt = stmt.where(Booking.status.in_(list(statuses)))
    return session.scalars(stmt.order_by(Booking.created_at)).all()


def succeeded_transaction(session: Session, booking: Booking) -> Transaction | None:
    """The transaction recorded for the booking's current payment reference."""
    if not booking.payment_reference:
        return None
    stmt = select(Transaction).where(
        Transaction.booking_id == booking.id,
        Transaction.payment_reference == booking.payment_reference,
    )
    return session.scalars(stmt).first()


def _reference_in_use(session: Session, booking: Booking, reference: str) -> bool:
    other_booking = session.scalars(
        select(Booking.id).where(
            Booking.payment_reference == reference, Booking.id != booking.id
        )
    ).first()
    if other_booking is not None:
        return True
    recorded = session.scalars(
        select(Transaction.id).where(Transaction.payment_reference == reference)
    ).first()
    return recorded is not None


def _clear_payment(booking: Booking) -> None:
    booking.payment_method = None
    booking.payment_reference = None
    booking.gateway_charge_id = None


def _schedule_reminder(session: Session, booking: Booking, *, now: datetime) -> None:
    event = booking.event
    if event.start_time <= now:
        return
    notifications.enqueue_notification(
        session,
        kind=notifications.EVENT_REMINDER,
        recipient=booking.email,
        subject=f"Reminder: {event.title} is coming up",
        payload={"event_id": event.id, "start_time": event.start_time.isoformat()},
        reference=booking.id,
        deliver_after=max(event.start_time - settings.reminder_lead, now),
    )


def _cancel_reminder(session: Session, booking: Booking, *, now: datetime) -> None:
    notifications.discard_pending(
        session, reference=booking.id, kind=notifications.EVENT_REMINDER, now=now
    )


def _schedule_review_prompt(session: Session, booking: Booking, *, now: datetime) -> None:
    event = booking.event
    notifications.enqueue_notification(
        session,
        kind=notifications.REVIEW_PROMPT,
        recipient=booking.email,
        subject=f"How was {event.title}?",
        payload={"event_id": event.id, "booking_id": booking.id},
        reference=booking.id,
        deliver_after=max(event.start_time + settings.review_prompt_delay, now),
    )


def _touch(booking: Booking, status: BookingStatus, now: datetime) -> None:
    booking.status = status
    stamp = {
        BookingStatus.INTERESTED: "interested_at",
        BookingStatus.PENDING_PAYMENT: "pending_at",
        BookingStatus.PAID: "paid_at",
        BookingStatus.FAILED: "failed_at",
        BookingStatus.REFUNDED: "refunded_at",
        BookingStatus.JOINED: "joined_at",
        BookingStatus.CANCELLED: "cancelled_at",
    }[status]
    setattr(booking, stamp, now)
    booking.last_modified = now


# --- transitions -------------------------------------------------------------


def register_interest(
    session: Session,
    event: Event,
    actor: Actor,
    *,
    name: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Return the actor's booking for ``event``, creating it as INTERESTED.

    A cancelled or refunded booking is reopened as INTERESTED so the
    (user, event) row can carry a new attempt; its past transactions stay.
    """
    now = now or utcnow()
    booking = find_booking(session, event=event, user_id=actor.user_id)
    if booking is None:
        email = normalize_email(actor.email)
        if not email:
            raise ValidationError("An email address is required to book")
        booking = Booking(
            event_id=event.id,
            user_id=actor.user_id,
            email=email,
            name=(name or actor.name or "").strip() or None,
            created_at=now,
        )
        _touch(booking, BookingStatus.INTERESTED, now)
        session.add(booking)
        session.flush()
        return booking

    if booking.status in TERMINAL_STATUSES:
        _clear_payment(booking)
        booking.amount_charged = 0
        booking.amount_refunded = 0
        booking.rejection_reason = None
        booking.verified_by = None
        booking.verified_at = None
        booking.attended = None
        _touch(booking, BookingStatus.INTERESTED, now)
        session.add(booking)
        session.flush()
    return booking


def start_checkout(
    session: Session,
    event: Event,
    actor: Actor,
    gateway: PaymentGateway,
    quantity: int = 1,
    *,
    name: str | None = None,
    now: datetime | None = None,
) -> tuple[Booking, CheckoutSession | None]:
    """Hold seats and open a gateway checkout for a paid event.

    Free events are joined directly and no checkout is returned.
    """
    now = now or utcnow()
    if not event.is_paid_event:
        return join_free_event(session, event, actor, name=name, now=now), None

    fees = quote_event_fees(event, quantity)
    booking = register_interest(session, event, actor, name=name, now=now)
    if booking.is_confirmed:
        raise ValidationError(
            "Already registered for this event", code=ErrorCode.ALREADY_REGISTERED
        )
    if booking.status == BookingStatus.PENDING_PAYMENT:
        if isinstance(booking.payment, ManualPayment):
            raise InvalidTransitionError("A manual payment is awaiting verification")
        if booking.quantity != quantity:
            raise InvalidTransitionError("A checkout is already open for this booking")
        claimed = False
        # At most one open checkout per booking.
        gateway.expire_checkout(booking.payment_reference)
    else:
        if not _claim_seats(session, event, "seats_held", quantity):
            raise CapacityExceededError("Event is full")
        claimed = True

    request = CheckoutRequest(
        booking_id=booking.id,
        event_id=event.id,
        user_id=actor.user_id,
        email=booking.email,
        title=event.title,
        currency=event.currency,
        quantity=quantity,
        unit_price=event.price,
        fees=fees,
        destination_account=event.host_payout_account,
    )
    try:
        checkout = gateway.create_checkout(request)
    except Exception:
        if claimed:
            _release_seats(session, event, "seats_held", quantity)
        raise

    booking.payment_method = PaymentMethod.GATEWAY
    booking.payment_reference = checkout.id
    booking.gateway_charge_id = None
    booking.quantity = quantity
    _touch(booking, BookingStatus.PENDING_PAYMENT, now)
    session.add(booking)
    session.flush()
    logger.info(
        "Checkout started: booking=%s event=%s session=%s amount=%d",
        booking.id,
        event.id,
        checkout.id,
        fees.attendee_pays,
    )
    return booking, checkout


def join_free_event(
    session: Session,
    event: Event,
    actor: Actor,
    *,
    name: str | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()
    if event.is_paid_event:
        raise ValidationError("Paid events require checkout")
    booking = register_interest(session, event, actor, name=name, now=now)
    if booking.status == BookingStatus.JOINED:
        return booking
    if booking.status != BookingStatus.INTERESTED:
        raise InvalidTransitionError(f"Cannot join from {booking.status}")
    if not _claim_seats(session, event, "seats_taken", booking.quantity):
        raise CapacityExceededError("Event is full")

    _touch(booking, BookingStatus.JOINED, now)
    session.add(booking)
    session.flush()
    waitlist.convert(session, event, booking.email, now=now)
    _schedule_reminder(session, booking, now=now)
    logger.info("Booking joined: booking=%s event=%s", booking.id, event.id)
    return booking


def submit_manual_payment(
    session: Session,
    event: Event,
    actor: Actor,
    reference: str,
    *,
    quantity: int = 1,
    name: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Record a bank-transfer style payment awaiting host verification."""
    now = now or utcnow()
    if not event.is_paid_event:
        raise ValidationError("Free events do not take payments")
    if not event.manual_payments_enabled:
        raise ValidationError("Manual payments are not enabled for this event")
    normalized = (reference or "").strip().upper()
    if len(normalized) < MIN_MANUAL_REFERENCE_LENGTH:
        raise ValidationError("Payment reference must be at least 4 characters")
    quote_event_fees(event, quantity)

    booking = register_interest(session, event, actor, name=name, now=now)
    if booking.is_confirmed:
        raise ValidationError(
            "Already registered for this event", code=ErrorCode.ALREADY_REGISTERED
        )
    if booking.status == BookingStatus.PENDING_PAYMENT:
        raise InvalidTransitionError("A payment is already pending for this booking")
    if _reference_in_use(session, booking, normalized):
        raise ValidationError("This payment reference has already been used")
    if not _claim_seats(session, event, "seats_held", quantity):
        raise CapacityExceededError("Event is full")

    booking.payment_method = PaymentMethod.MANUAL
    booking.payment_reference = normalized
    booking.gateway_charge_id = None
    booking.quantity = quantity
    booking.rejection_reason = None
    _touch(booking, BookingStatus.PENDING_PAYMENT, now)
    session.add(booking)
    session.flush()
    notifications.enqueue_notification(
        session,
        kind=notifications.PAYMENT_PENDING_VERIFICATION,
        recipient=event.host_email,
        subject=f"Payment to verify for {event.title}",
        payload={
            "booking_id": booking.id,
            "email": booking.email,
            "reference": normalized,
        },
        reference=booking.id,
    )
    logger.info(
        "Manual payment submitted: booking=%s event=%s reference=%s",
        booking.id,
        event.id,
        normalized,
    )
    return booking


def verify_manual_payment(
    session: Session,
    booking: Booking,
    actor: Actor,
    *,
    approve: bool,
    reason: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Host confirms or rejects a pending manual payment."""
    now = now or utcnow()
    event = booking.event
    require_event_host(event, actor)
    if (
        booking.status != BookingStatus.PENDING_PAYMENT
        or not isinstance(booking.payment, ManualPayment)
    ):
        raise InvalidTransitionError("No manual payment is awaiting verification")

    booking.verified_by = actor.user_id
    booking.verified_at = now
    if approve:
        amount = quote_event_fees(event, booking.quantity).attendee_pays
        return mark_paid(
            session,
            booking,
            payment_reference=booking.payment_reference,
            amount=amount,
            now=now,
        )

    booking.rejection_reason = (reason or "").strip() or None
    _release_seats(session, event, "seats_held", booking.quantity)
    _touch(booking, BookingStatus.FAILED, now)
    session.add(booking)
    session.flush()
    notifications.enqueue_notification(
        session,
        kind=notifications.PAYMENT_REJECTED,
        recipient=booking.email,
        subject=f"Your payment for {event.title} could not be verified",
        payload={"booking_id": booking.id, "reason": booking.rejection_reason},
        reference=booking.id,
    )
    logger.info("Manual payment rejected: booking=%s by=%s", booking.id, actor.user_id)
    return booking


def mark_paid(
    session: Session,
    booking: Booking,
    *,
    payment_reference: str,
    charge_id: str | None = None,
    amount: int | None = None,
    now: datetime | None = None,
) -> Booking:
    """Confirm payment for ``payment_reference``; replays raise AlreadyProcessedError."""
    now = now or utcnow()
    event = booking.event
    existing = session.scalars(
        select(Transaction).where(Transaction.payment_reference == payment_reference)
    ).first()
    if existing is not None:
        raise AlreadyProcessedError(f"Payment {payment_reference} already recorded")
    if booking.payment_reference != payment_reference:
        logger.error(
            "Payment %s does not match booking %s (open reference %s), refund it manually",
            payment_reference,
            booking.id,
            booking.payment_reference,
        )
        raise InvalidTransitionError("Payment reference does not match this booking")
    if booking.status not in {BookingStatus.PENDING_PAYMENT, BookingStatus.FAILED}:
        raise InvalidTransitionError(f"Cannot mark a {booking.status} booking as paid")

    fees = quote_event_fees(event, booking.quantity)
    gross = fees.attendee_pays if amount is None else amount
    if gross != fees.attendee_pays:
        logger.warning(
            "Payment amount mismatch: booking=%s expected=%d received=%d",
            booking.id,
            fees.attendee_pays,
            gross,
        )
    transaction = Transaction(
        booking_id=booking.id,
        event_id=event.id,
        payment_reference=payment_reference,
        gross_amount=gross,
        platform_fee=fees.platform_fee,
        host_net=gross - fees.platform_fee,
        currency=event.currency,
        status=TransactionStatus.SUCCEEDED,
        created_at=now,
    )
    try:
        with session.begin_nested():
            if booking.status == BookingStatus.PENDING_PAYMENT:
                confirmed = _confirm_held_seats(session, event, booking.quantity)
            else:
                # Late completion after the hold was released: needs a fresh seat.
                confirmed = _claim_seats(session, event, "seats_taken", booking.quantity)
            if not confirmed:
                raise CapacityExceededError("No seat left to confirm this payment")
            session.add(transaction)
            session.flush()
    except IntegrityError as exc:
        raise AlreadyProcessedError(
            f"Payment {payment_reference} already recorded"
        ) from exc

    if isinstance(booking.payment, GatewayPayment):
        booking.gateway_charge_id = charge_id
    booking.amount_charged = gross
    booking.rejection_reason = None
    _touch(booking, BookingStatus.PAID, now)
    session.add(booking)
    session.flush()

    waitlist.convert(session, event, booking.email, now=now)
    notifications.enqueue_notification(
        session,
        kind=notifications.PAYMENT_CONFIRMED,
        recipient=booking.email,
        subject=f"You're booked for {event.title}",
        payload={
            "booking_id": booking.id,
            "amount": gross,
            "currency": event.currency,
        },
        reference=booking.id,
    )
    _schedule_reminder(session, booking, now=now)
    logger.info(
        "Booking paid: booking=%s event=%s reference=%s amount=%d",
        booking.id,
        event.id,
        payment_reference,
        gross,
    )
    return booking


def mark_failed(
    session: Session,
    booking: Booking,
    *,
    payment_reference: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Fail a pending payment attempt and release its seat hold."""
    now = now or utcnow()
    if booking.payment_reference != payment_reference:
        raise InvalidTransitionError("Payment reference does not match this booking")
    if booking.status == BookingStatus.FAILED:
        raise AlreadyProcessedError("Payment attempt already failed")
    if booking.status != BookingStatus.PENDING_PAYMENT:
        raise InvalidTransitionError(f"Cannot fail a {booking.status} booking")

    _release_seats(session, booking.event, "seats_held", booking.quantity)
    if reason:
        booking.rejection_reason = reason
    _touch(booking, BookingStatus.FAILED, now)
    session.add(booking)
    session.flush()
    logger.info("Booking payment failed: booking=%s reference=%s", booking.id, payment_reference)
    return booking


def cancel_booking(
    session: Session,
    booking: Booking,
    actor: Actor,
    gateway: PaymentGateway | None = None,
    *,
    now: datetime | None = None,
) -> Booking:
    """Attendee cancellation, refunding a paid booking as far as the policy allows."""
    now = now or utcnow()
    require_booking_owner(booking, actor)
    event = booking.event
    status = booking.status
    if status == BookingStatus.CANCELLED:
        raise AlreadyProcessedError("Booking is already cancelled")
    if status == BookingStatus.REFUNDED:
        raise InvalidTransitionError("Booking has already been refunded")

    if status == BookingStatus.PAID:
        policy = parse_refund_policy(event.refund_policy)
        decision = evaluate_refund(
            policy,
            event_start=event.start_time,
            now=now,
            charged=booking.amount_charged,
        )
        if decision.eligible and isinstance(booking.payment, GatewayPayment):
            receipt = _refund_at_gateway(booking, gateway, decision.amount)
            return record_refund(
                session,
                booking,
                refund_reference=receipt.id,
                amount=receipt.amount,
                reason=decision.reason,
                now=now,
            )
        if decision.eligible:
            notifications.enqueue_notification(
                session,
                kind=notifications.MANUAL_REFUND_OWED,
                recipient=event.host_email,
                subject=f"Refund owed for {event.title}",
                payload={
                    "booking_id": booking.id,
                    "email": booking.email,
                    "amount": decision.amount,
                    "currency": event.currency,
                    "reference": booking.payment_reference,
                },
                reference=booking.id,
            )
        _release_confirmed(session, booking, now=now)
    elif status == BookingStatus.JOINED:
        _release_confirmed(session, booking, now=now)
    elif status == BookingStatus.PENDING_PAYMENT:
        _release_seats(session, event, "seats_held", booking.quantity)

    _touch(booking, BookingStatus.CANCELLED, now)
    session.add(booking)
    session.flush()
    _cancel_reminder(session, booking, now=now)
    notifications.enqueue_notification(
        session,
        kind=notifications.BOOKING_CANCELLED,
        recipient=booking.email,
        subject=f"Your booking for {event.title} was cancelled",
        payload={"booking_id": booking.id, "previous_status": status},
        reference=booking.id,
    )
    logger.info("Booking cancelled: booking=%s from=%s", booking.id, status)
    return booking


def refund_booking(
    session: Session,
    booking: Booking,
    actor: Actor,
    gateway: PaymentGateway | None = None,
    *,
    reason: str | None = None,
    manual_confirmed: bool = False,
    now: datetime | None = None,
) -> Booking:
    """Host-initiated full refund of a paid booking."""
    now = now or utcnow()
    event = booking.event
    require_event_host(event, actor)
    if booking.status == BookingStatus.REFUNDED:
        raise AlreadyProcessedError("Booking is already refunded")
    if booking.status != BookingStatus.PAID:
        raise InvalidTransitionError(f"Cannot refund a {booking.status} booking")

    decision = evaluate_refund(
        parse_refund_policy(event.refund_policy),
        event_start=event.start_time,
        now=now,
        charged=booking.amount_charged,
        is_host_initiated=True,
    )
    reason = reason or decision.reason
    if isinstance(booking.payment, ManualPayment):
        if not manual_confirmed:
            raise ValidationError("Confirm the manual refund has been sent first")
        return record_refund(
            session,
            booking,
            refund_reference=f"manual-{booking.id}",
            amount=decision.amount,
            reason=reason,
            now=now,
        )

    receipt = _refund_at_gateway(booking, gateway, decision.amount)
    return record_refund(
        session,
        booking,
        refund_reference=receipt.id,
        amount=receipt.amount,
        reason=reason,
        now=now,
    )


def record_refund(
    session: Session,
    booking: Booking,
    *,
    refund_reference: str,
    amount: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Persist a completed refund; replays of the same reference are no-ops."""
    now = now or utcnow()
    transaction = succeeded_transaction(session, booking)
    if transaction is None:
        raise InvalidTransitionError("No recorded payment to refund")
    if booking.status == BookingStatus.REFUNDED or (
        transaction.refund_reference == refund_reference
    ):
        raise AlreadyProcessedError(f"Refund {refund_reference} already recorded")
    if booking.status != BookingStatus.PAID:
        raise InvalidTransitionError(f"Cannot refund a {booking.status} booking")

    amount = max(min(amount, transaction.gross_amount), 0)
    transaction.refund_amount = amount
    transaction.refund_reference = refund_reference
    transaction.refund_reason = reason
    transaction.refunded_at = now
    transaction.status = (
        TransactionStatus.REFUNDED
        if amount >= transaction.gross_amount
        else TransactionStatus.PARTIALLY_REFUNDED
    )
    session.add(transaction)

    booking.amount_refunded = amount
    _touch(booking, BookingStatus.REFUNDED, now)
    session.add(booking)
    session.flush()
    _release_confirmed(session, booking, now=now)
    _cancel_reminder(session, booking, now=now)

    event = booking.event
    notifications.enqueue_notification(
        session,
        kind=notifications.REFUND_ISSUED,
        recipient=booking.email,
        subject=f"Refund for {event.title}",
        payload={
            "booking_id": booking.id,
            "amount": amount,
            "currency": transaction.currency,
            "reason": reason,
        },
        reference=booking.id,
    )
    logger.info(
        "Booking refunded: booking=%s reference=%s amount=%d",
        booking.id,
        refund_reference,
        amount,
    )
    return booking


def mark_attendance(
    session: Session,
    booking: Booking,
    actor: Actor,
    attended: bool,
    *,
    now: datetime | None = None,
) -> Booking:
    """Host check-in: record whether a confirmed attendee showed up."""
    require_event_host(booking.event, actor)
    if not booking.is_confirmed:
        raise InvalidTransitionError("Only confirmed bookings can be checked in")
    now = now or utcnow()
    previously = booking.attended
    booking.attended = attended
    booking.last_modified = now
    session.add(booking)
    session.flush()
    if attended and not previously:
        _schedule_review_prompt(session, booking, now=now)
    elif not attended and previously:
        notifications.discard_pending(
            session, reference=booking.id, kind=notifications.REVIEW_PROMPT, now=now
        )
    return booking
