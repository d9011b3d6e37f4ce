from __future__ import annotations

import dataclasses
from datetime import timedelta

import pytest
from sqlalchemy import select

from sweatbook import bookings, notifications, waitlist
from sweatbook.config import settings
from sweatbook.crud import Actor, find_booking, update_event
from sweatbook.errors import (
    AuthorizationError,
    CapacityExceededError,
    ErrorCode,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from sweatbook.models import BookingStatus, OutboxMessage, WaitlistStatus
from sweatbook.utils import utcnow


def _actor(n: int) -> Actor:
    return Actor(user_id=f"user-{n}", email=f"member{n}@example.com", name=f"Member {n}")


def _booking_of(session, event, n: int):
    return find_booking(session, event=event, user_id=_actor(n).user_id)


def _full_event(session, make_event, capacity: int = 2):
    event = make_event(price=0, capacity=capacity)
    for n in range(capacity):
        bookings.join_free_event(session, event, _actor(n))
    session.commit()
    assert event.is_full
    return event


def _queue(session, event, *numbers):
    entries = [
        waitlist.join(session, event, email=_actor(n).email, name=_actor(n).name)
        for n in numbers
    ]
    session.commit()
    return entries


def test_full_event_rejects_the_next_booking_and_offers_the_waitlist(session, make_event):
    event = _full_event(session, make_event, capacity=10)

    with pytest.raises(CapacityExceededError):
        bookings.join_free_event(session, event, _actor(10))
    session.rollback()

    entry = waitlist.join(session, event, email=_actor(10).email)
    session.commit()
    assert entry.position == 1
    assert entry.status == WaitlistStatus.WAITING

    bookings.cancel_booking(session, _booking_of(session, event, 3), _actor(3))
    session.commit()
    assert entry.status == WaitlistStatus.NOTIFIED

    joined = bookings.join_free_event(session, event, _actor(10))
    session.commit()
    assert joined.status == BookingStatus.JOINED
    assert entry.status == WaitlistStatus.CONVERTED
    assert event.seats_taken == 10


def test_positions_are_assigned_in_join_order(session, make_event):
    event = _full_event(session, make_event)
    first, second, third = _queue(session, event, 5, 6, 7)

    assert [first.position, second.position, third.position] == [1, 2, 3]
    ranks = [waitlist.get_status(session, event, e.email).rank for e in (first, second, third)]
    assert ranks == [1, 2, 3]


def test_joining_twice_returns_the_same_entry(session, make_event):
    event = _full_event(session, make_event)
    [entry] = _queue(session, event, 5)
    again = waitlist.join(session, event, email="  MEMBER5@example.com ")
    assert again.id == entry.id
    assert again.position == 1


def test_leaving_keeps_everyone_elses_position(session, make_event):
    event = _full_event(session, make_event)
    first, second, third = _queue(session, event, 5, 6, 7)

    waitlist.leave(session, event, second.email)
    session.commit()

    assert second.status == WaitlistStatus.CANCELLED
    assert third.position == 3
    assert waitlist.get_status(session, event, third.email).rank == 2

    with pytest.raises(InvalidTransitionError):
        waitlist.leave(session, event, second.email)

    rejoined = waitlist.join(session, event, email=second.email)
    assert rejoined.id == second.id
    assert rejoined.position == 4
    assert waitlist.get_status(session, event, second.email).rank == 3


def test_join_rules(session, make_event):
    open_event = make_event(price=0, capacity=5)
    with pytest.raises(ValidationError) as excinfo:
        waitlist.join(session, open_event, email="late@example.com")
    assert excinfo.value.code == ErrorCode.EVENT_NOT_FULL

    event = _full_event(session, make_event)
    with pytest.raises(ValidationError):
        waitlist.join(session, event, email="not-an-email")
    with pytest.raises(ValidationError) as excinfo:
        waitlist.join(session, event, email=_actor(0).email)
    assert excinfo.value.code == ErrorCode.ALREADY_REGISTERED


def test_waitlist_limit(session, make_event, monkeypatch):
    monkeypatch.setattr(
        waitlist, "settings", dataclasses.replace(settings, waitlist_limit=1)
    )
    event = _full_event(session, make_event)
    _queue(session, event, 5)

    with pytest.raises(ValidationError) as excinfo:
        waitlist.join(session, event, email=_actor(6).email)
    assert excinfo.value.code == ErrorCode.WAITLIST_FULL


def test_freed_seat_is_offered_to_the_front_of_the_queue(session, make_event):
    event = _full_event(session, make_event)
    first, second = _queue(session, event, 5, 6)

    bookings.cancel_booking(session, _booking_of(session, event, 0), _actor(0))
    session.commit()

    assert first.status == WaitlistStatus.NOTIFIED
    assert first.notification_expires_at == first.notified_at + timedelta(
        hours=settings.waitlist_notification_hours
    )
    assert second.status == WaitlistStatus.WAITING
    offers = session.scalars(
        select(OutboxMessage).where(OutboxMessage.kind == notifications.WAITLIST_SPOT_OPEN)
    ).all()
    assert [offer.recipient for offer in offers] == [first.email]


def test_notified_person_leaving_passes_the_offer_on(session, make_event):
    event = _full_event(session, make_event)
    first, second = _queue(session, event, 5, 6)
    bookings.cancel_booking(session, _booking_of(session, event, 0), _actor(0))

    waitlist.leave(session, event, first.email)
    session.commit()

    assert second.status == WaitlistStatus.NOTIFIED


def test_sweep_expires_lapsed_offers_and_promotes_the_next(session, make_event):
    event = _full_event(session, make_event)
    first, second = _queue(session, event, 5, 6)
    bookings.cancel_booking(session, _booking_of(session, event, 0), _actor(0))
    session.commit()

    assert waitlist.sweep_expired(session) == {"expired": 0, "promoted": 0}

    later = utcnow() + timedelta(hours=settings.waitlist_notification_hours, minutes=1)
    stats = waitlist.sweep_expired(session, now=later)
    session.commit()

    assert stats == {"expired": 1, "promoted": 1}
    assert first.status == WaitlistStatus.EXPIRED
    assert second.status == WaitlistStatus.NOTIFIED
    assert waitlist.get_status(session, event, first.email).rank is None


def test_raising_capacity_promotes_waiting_people(session, make_event):
    event = _full_event(session, make_event)
    first, second, third = _queue(session, event, 5, 6, 7)

    update_event(session, event, capacity=4)
    promoted = waitlist.fill_open_slots(session, event)
    session.commit()

    assert [entry.id for entry in promoted] == [first.id, second.id]
    assert third.status == WaitlistStatus.WAITING


def test_status_and_listing(session, make_event, host):
    event = _full_event(session, make_event)
    _queue(session, event, 5, 6)

    with pytest.raises(NotFoundError):
        waitlist.get_status(session, event, "stranger@example.com")
    with pytest.raises(AuthorizationError):
        waitlist.list_entries(session, event, _actor(5))

    entries = waitlist.list_entries(session, event, host)
    assert [entry.email for entry in entries] == [_actor(5).email, _actor(6).email]
    assert waitlist.get_status(session, event, _actor(6).email).as_dict()["rank"] == 2
