"""Event directory helpers and the authenticated actor."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .errors import AuthorizationError, NotFoundError, ValidationError
from .fees import normalize_fee_policy
from .models import Booking, Event
from .refunds import parse_refund_policy
from .utils import normalize_email, to_naive_utc, utcnow

ROOT_ACTOR_ID = "root"


@dataclass(frozen=True)
class Actor:
    """Authenticated identity passed explicitly into every mutating call."""

    user_id: str
    email: str
    name: str | None = None
    is_root: bool = False

    @classmethod
    def root(cls) -> Actor:
        return cls(user_id=ROOT_ACTOR_ID, email="", is_root=True)


def _now() -> datetime:
    return utcnow()


def require_event_host(event: Event, actor: Actor) -> None:
    if actor.is_root or actor.user_id == event.host_id:
        return
    raise AuthorizationError("Only the event host can do that")


def require_booking_owner(booking: Booking, actor: Actor) -> None:
    if actor.is_root or actor.user_id == booking.user_id:
        return
    raise AuthorizationError("This booking belongs to someone else")


def get_event(session: Session, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found")
    return event


def get_booking(session: Session, booking_id: str) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def find_booking(session: Session, *, event: Event, user_id: str) -> Booking | None:
    stmt = select(Booking).where(Booking.event_id == event.id, Booking.user_id == user_id)
    return session.scalars(stmt).first()


def list_host_events(session: Session, host_id: str) -> Sequence[Event]:
    stmt = select(Event).where(Event.host_id == host_id).order_by(Event.start_time.desc())
    return session.scalars(stmt).all()


def _normalize_capacity(raw: int | None) -> int | None:
    if raw is None:
        return None
    if raw < 1:
        raise ValidationError("Capacity must be at least 1 or left empty")
    return raw


def _normalize_currency(raw: str | None) -> str:
    currency = (raw or settings.default_currency).strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("Currency must be a three letter code")
    return currency


def create_event(
    session: Session,
    *,
    host: Actor,
    title: str,
    start_time: datetime,
    description: str | None = None,
    capacity: int | None = None,
    price: int = 0,
    currency: str | None = None,
    fee_policy: str | None = None,
    refund_policy: str | dict[str, Any] | None = None,
    manual_payments_enabled: bool = False,
    host_payout_account: str | None = None,
) -> Event:
    """Create and persist a new event owned by ``host``."""
    cleaned_title = (title or "").strip()
    if not cleaned_title:
        raise ValidationError("Title is required")
    if price < 0:
        raise ValidationError("Price cannot be negative")
    policy = parse_refund_policy(refund_policy)
    event = Event(
        host_id=host.user_id,
        host_email=normalize_email(host.email) or None,
        title=cleaned_title,
        description=description,
        start_time=to_naive_utc(start_time),
        capacity=_normalize_capacity(capacity),
        is_free=price == 0,
        price=price,
        currency=_normalize_currency(currency),
        fee_policy=normalize_fee_policy(fee_policy),
        refund_policy=policy.as_descriptor(),
        manual_payments_enabled=manual_payments_enabled,
        host_payout_account=host_payout_account,
    )
    session.add(event)
    session.flush()
    return event


def update_event(
    session: Session,
    event: Event,
    *,
    title: str | None = None,
    description: str | None = None,
    start_time: datetime | None = None,
    capacity: int | None = None,
    clear_capacity: bool = False,
    refund_policy: str | dict[str, Any] | None = None,
    manual_payments_enabled: bool | None = None,
) -> Event:
    """Update mutable event fields; pricing is frozen once the event exists."""
    if title is not None:
        if not title.strip():
            raise ValidationError("Title is required")
        event.title = title.strip()
    if description is not None:
        event.description = description
    if start_time is not None:
        event.start_time = to_naive_utc(start_time)
    if clear_capacity:
        event.capacity = None
    elif capacity is not None:
        new_capacity = _normalize_capacity(capacity)
        if new_capacity < event.seats_taken + event.seats_held:
            raise ValidationError("Capacity cannot drop below seats already taken")
        event.capacity = new_capacity
    if refund_policy is not None:
        event.refund_policy = parse_refund_policy(refund_policy).as_descriptor()
    if manual_payments_enabled is not None:
        event.manual_payments_enabled = manual_payments_enabled
    event.last_modified = _now()
    session.add(event)
    session.flush()
    return event
