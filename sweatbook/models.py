"""SQLAlchemy models for SweatBook."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class FeePolicy(StrEnum):
    ABSORB = "ABSORB"
    PASS_THROUGH = "PASS_THROUGH"


class BookingStatus(StrEnum):
    INTERESTED = "INTERESTED"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    JOINED = "JOINED"
    CANCELLED = "CANCELLED"


CONFIRMED_STATUSES = frozenset({BookingStatus.PAID, BookingStatus.JOINED})
TERMINAL_STATUSES = frozenset({BookingStatus.REFUNDED, BookingStatus.CANCELLED})


class PaymentMethod(StrEnum):
    GATEWAY = "gateway"
    MANUAL = "manual"


class TransactionStatus(StrEnum):
    SUCCEEDED = "SUCCEEDED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class WaitlistStatus(StrEnum):
    WAITING = "WAITING"
    NOTIFIED = "NOTIFIED"
    CONVERTED = "CONVERTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


ACTIVE_WAITLIST_STATUSES = frozenset({WaitlistStatus.WAITING, WaitlistStatus.NOTIFIED})


@dataclass(frozen=True)
class GatewayPayment:
    checkout_session_id: str
    charge_id: str | None


@dataclass(frozen=True)
class ManualPayment:
    reference: str


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class UserSession(Base):
    """Server-side session issued for an identity-provider user."""

    __tablename__ = "user_sessions"

    token = Column(String(128), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("seats_taken >= 0", name="ck_events_seats_taken"),
        CheckConstraint("seats_held >= 0", name="ck_events_seats_held"),
        CheckConstraint("price >= 0", name="ck_events_price"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    host_id = Column(String(64), nullable=False, index=True)
    host_email = Column(String(255), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=False)
    capacity = Column(Integer, nullable=True)
    is_free = Column(Boolean, default=True, nullable=False)
    price = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), nullable=False, default="SGD")
    fee_policy = Column(String(16), nullable=False, default=FeePolicy.PASS_THROUGH)
    refund_policy = Column(JSON, nullable=True)
    manual_payments_enabled = Column(Boolean, default=False, nullable=False)
    host_payout_account = Column(String(64), nullable=True)
    seats_taken = Column(Integer, default=0, nullable=False)
    seats_held = Column(Integer, default=0, nullable=False)
    waitlist_seq = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    bookings = relationship("Booking", back_populates="event")
    waitlist_entries = relationship(
        "WaitlistEntry",
        back_populates="event",
        order_by="WaitlistEntry.position",
    )

    @property
    def is_paid_event(self) -> bool:
        return not self.is_free and (self.price or 0) > 0

    @property
    def spots_remaining(self) -> int | None:
        if self.capacity is None:
            return None
        return max(self.capacity - self.seats_taken - self.seats_held, 0)

    @property
    def is_full(self) -> bool:
        return self.capacity is not None and self.spots_remaining == 0


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("user_id", "event_id", name="uq_bookings_user_event"),
        CheckConstraint(
            "(payment_method IS NULL AND payment_reference IS NULL)"
            " OR (payment_method IS NOT NULL AND payment_reference IS NOT NULL)",
            name="ck_bookings_payment_tag",
        ),
        CheckConstraint(
            "gateway_charge_id IS NULL OR payment_method = 'gateway'",
            name="ck_bookings_gateway_charge",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    name = Column(String(120), nullable=True)
    status = Column(String(24), nullable=False, default=BookingStatus.INTERESTED)
    quantity = Column(Integer, default=1, nullable=False)
    payment_method = Column(String(16), nullable=True)
    payment_reference = Column(String(255), nullable=True, index=True)
    gateway_charge_id = Column(String(255), nullable=True, index=True)
    amount_charged = Column(Integer, default=0, nullable=False)
    amount_refunded = Column(Integer, default=0, nullable=False)
    verified_by = Column(String(64), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    attended = Column(Boolean, nullable=True)
    interested_at = Column(DateTime, nullable=True)
    pending_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    joined_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="bookings")
    transactions = relationship(
        "Transaction", back_populates="booking", order_by="Transaction.created_at"
    )

    @property
    def payment(self) -> GatewayPayment | ManualPayment | None:
        """Return the tagged payment variant for this booking, if any."""
        if self.payment_method == PaymentMethod.GATEWAY:
            return GatewayPayment(self.payment_reference, self.gateway_charge_id)
        if self.payment_method == PaymentMethod.MANUAL:
            return ManualPayment(self.payment_reference)
        return None

    @property
    def is_confirmed(self) -> bool:
        return self.status in CONFIRMED_STATUSES


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    payment_reference = Column(String(255), nullable=False, unique=True)
    gross_amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    host_net = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(24), nullable=False, default=TransactionStatus.SUCCEEDED)
    refund_amount = Column(Integer, default=0, nullable=False)
    refund_reference = Column(String(255), nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refund_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    booking = relationship("Booking", back_populates="transactions")


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"
    __table_args__ = (
        UniqueConstraint("event_id", "email", name="uq_waitlist_event_email"),
        UniqueConstraint("event_id", "position", name="uq_waitlist_event_position"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    name = Column(String(120), nullable=True)
    user_id = Column(String(64), nullable=True)
    position = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default=WaitlistStatus.WAITING)
    notified_at = Column(DateTime, nullable=True)
    notification_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="waitlist_entries")


class GatewayEvent(Base):
    """Gateway callback ids already reconciled, for redelivery dedupe."""

    __tablename__ = "gateway_events"

    id = Column(String(255), primary_key=True)
    event_type = Column(String(128), nullable=False)
    processed_at = Column(DateTime, default=_now, nullable=False)


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    kind = Column(String(64), nullable=False)
    reference = Column(String(36), nullable=True, index=True)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    deliver_after = Column(DateTime, default=_now, nullable=False, index=True)
    dispatched_at = Column(DateTime, nullable=True, index=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
