"""Development helpers for populating fake events and bookings."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from . import bookings
from .crud import Actor, create_event
from .database import get_session
from .errors import CapacityExceededError
from .models import Event
from .refunds import PRESETS
from .storage import init_db
from .utils import utcnow

_event_types = [
    "HIIT Session",
    "Run Club",
    "Sunrise Yoga",
    "Bootcamp",
    "Spin Class",
    "Pilates Flow",
    "Boxing Basics",
    "Trail Hike",
]
_prices = [0, 0, 1500, 2000, 2500, 3500]


def seed_fake_data(
    *,
    host_count: int = 2,
    events_per_host: int = 4,
    max_bookings_per_event: int = 8,
    past_percentage: int = 40,
) -> dict[str, int]:
    """Populate the database with synthetic hosts, events and bookings.

    Past events get check-in records so no-show scoring has history to use.
    """
    if host_count < 1:
        raise ValueError("host_count must be >= 1")
    if events_per_host < 1:
        raise ValueError("events_per_host must be >= 1")
    if max_bookings_per_event < 0:
        raise ValueError("max_bookings_per_event must be >= 0")
    if not 0 <= past_percentage <= 100:
        raise ValueError("past_percentage must be between 0 and 100")

    init_db()
    fake = Faker()
    stats = {"hosts": 0, "events": 0, "bookings": 0}
    attendees = [
        Actor(user_id=f"user-{fake.uuid4()}", email=fake.unique.email(), name=fake.name())
        for _ in range(max(max_bookings_per_event * 2, 1))
    ]

    with get_session() as session:
        for _ in range(host_count):
            host = Actor(
                user_id=f"host-{fake.uuid4()}", email=fake.unique.email(), name=fake.name()
            )
            stats["hosts"] += 1
            for _ in range(events_per_host):
                is_past = random.randint(1, 100) <= past_percentage
                event = _create_event(session, fake, host=host, is_past=is_past)
                stats["events"] += 1
                stats["bookings"] += _create_bookings(
                    session,
                    event,
                    host=host,
                    attendees=random.sample(
                        attendees, random.randint(0, min(max_bookings_per_event, len(attendees)))
                    ),
                    is_past=is_past,
                )

    return stats


def _random_start_time(is_past: bool) -> datetime:
    now = utcnow()
    if is_past:
        return now - timedelta(days=random.randint(1, 60), hours=random.randint(0, 12))
    return now + timedelta(days=random.randint(1, 30), hours=random.randint(0, 12))


def _create_event(session: Session, fake: Faker, *, host: Actor, is_past: bool) -> Event:
    price = random.choice(_prices)
    return create_event(
        session,
        host=host,
        title=f"{fake.city()} {random.choice(_event_types)}",
        description=fake.paragraph(),
        start_time=_random_start_time(is_past),
        capacity=random.choice([None, 6, 10, 20]),
        price=price,
        fee_policy=random.choice(["ABSORB", "PASS_THROUGH"]),
        refund_policy=random.choice(list(PRESETS)),
        manual_payments_enabled=price > 0,
    )


def _create_bookings(
    session: Session,
    event: Event,
    *,
    host: Actor,
    attendees: list[Actor],
    is_past: bool,
) -> int:
    registered_at = event.start_time - timedelta(days=random.randint(0, 14))
    created = 0
    for attendee in attendees:
        try:
            if event.is_paid_event:
                booking = bookings.submit_manual_payment(
                    session,
                    event,
                    attendee,
                    f"TRF{random.randint(100000, 999999)}",
                    now=registered_at,
                )
                bookings.verify_manual_payment(
                    session, booking, host, approve=True, now=registered_at
                )
            else:
                booking = bookings.join_free_event(
                    session, event, attendee, now=registered_at
                )
        except CapacityExceededError:
            break
        if is_past:
            bookings.mark_attendance(session, booking, host, random.random() < 0.8)
        created += 1
    return created
