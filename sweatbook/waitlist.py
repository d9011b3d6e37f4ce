"""Capacity-bounded waitlist with expiring spot offers."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from . import notifications
from .config import settings
from .crud import Actor, require_event_host
from .errors import ErrorCode, InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    ACTIVE_WAITLIST_STATUSES,
    CONFIRMED_STATUSES,
    Booking,
    Event,
    WaitlistEntry,
    WaitlistStatus,
)
from .utils import is_valid_email, normalize_email, utcnow

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class WaitlistPosition:
    entry: WaitlistEntry
    rank: int | None

    def as_dict(self) -> dict:
        return {
            "id": self.entry.id,
            "email": self.entry.email,
            "position": self.entry.position,
            "status": self.entry.status,
            "rank": self.rank,
            "notification_expires_at": (
                self.entry.notification_expires_at.isoformat()
                if self.entry.notification_expires_at
                else None
            ),
        }


def _find_entry(session: Session, event: Event, email: str) -> WaitlistEntry | None:
    stmt = select(WaitlistEntry).where(
        WaitlistEntry.event_id == event.id, WaitlistEntry.email == email
    )
    return session.scalars(stmt).first()


def _has_confirmed_booking(session: Session, event: Event, email: str) -> bool:
    stmt = select(Booking.id).where(
        Booking.event_id == event.id,
        Booking.email == email,
        Booking.status.in_(list(CONFIRMED_STATUSES)),
    )
    return session.scalars(stmt).first() is not None


def _active_count(session: Session, event: Event) -> int:
    stmt = select(func.count(WaitlistEntry.id)).where(
        WaitlistEntry.event_id == event.id,
        WaitlistEntry.status.in_(list(ACTIVE_WAITLIST_STATUSES)),
    )
    return session.scalar(stmt) or 0


def _next_position(session: Session, event: Event) -> int:
    """Atomically bump and return the event's waitlist sequence."""
    session.execute(
        update(Event)
        .where(Event.id == event.id)
        .values(waitlist_seq=Event.waitlist_seq + 1)
        .execution_options(synchronize_session=False)
    )
    position = session.scalar(select(Event.waitlist_seq).where(Event.id == event.id))
    session.expire(event, ["waitlist_seq"])
    return position


def join(
    session: Session,
    event: Event,
    *,
    email: str,
    name: str | None = None,
    user_id: str | None = None,
    now: datetime | None = None,
) -> WaitlistEntry:
    """Queue ``email`` for a full event; joining twice returns the same entry."""
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationError("A valid email is required")
    if not event.is_full:
        raise ValidationError(
            "Event still has spots available", code=ErrorCode.EVENT_NOT_FULL
        )

    existing = _find_entry(session, event, email)
    if existing and existing.status in ACTIVE_WAITLIST_STATUSES:
        return existing
    if existing and existing.status == WaitlistStatus.CONVERTED:
        raise ValidationError(
            "Already registered for this event", code=ErrorCode.ALREADY_REGISTERED
        )
    if _has_confirmed_booking(session, event, email):
        raise ValidationError(
            "Already registered for this event", code=ErrorCode.ALREADY_REGISTERED
        )
    limit = settings.waitlist_limit
    if limit and _active_count(session, event) >= limit:
        raise ValidationError("The waitlist is full", code=ErrorCode.WAITLIST_FULL)

    now = now or utcnow()
    position = _next_position(session, event)
    if existing:
        # Rejoining after leaving or expiring goes to the back of the queue.
        entry = existing
        entry.position = position
        entry.status = WaitlistStatus.WAITING
        entry.notified_at = None
        entry.notification_expires_at = None
        entry.last_modified = now
    else:
        entry = WaitlistEntry(
            event_id=event.id,
            email=email,
            name=(name or "").strip() or None,
            user_id=user_id,
            position=position,
            status=WaitlistStatus.WAITING,
            created_at=now,
            last_modified=now,
        )
    session.add(entry)
    session.flush()
    logger.info("Waitlist join: event=%s email=%s position=%d", event.id, email, position)
    return entry


def leave(
    session: Session, event: Event, email: str, *, now: datetime | None = None
) -> WaitlistEntry:
    entry = _find_entry(session, event, normalize_email(email))
    if not entry:
        raise NotFoundError("Not on the waitlist")
    if entry.status not in ACTIVE_WAITLIST_STATUSES:
        raise InvalidTransitionError(f"Waitlist entry is already {entry.status}")
    now = now or utcnow()
    was_notified = entry.status == WaitlistStatus.NOTIFIED
    entry.status = WaitlistStatus.CANCELLED
    entry.last_modified = now
    session.add(entry)
    session.flush()
    if was_notified:
        fill_open_slots(session, event, now=now)
    return entry


def promote(
    session: Session, event: Event, slots: int = 1, *, now: datetime | None = None
) -> list[WaitlistEntry]:
    """Offer ``slots`` spots to the longest-waiting entries."""
    if slots < 1:
        return []
    now = now or utcnow()
    expires_at = now + settings.waitlist_notification_window
    stmt = (
        select(WaitlistEntry)
        .where(
            WaitlistEntry.event_id == event.id,
            WaitlistEntry.status == WaitlistStatus.WAITING,
        )
        .order_by(WaitlistEntry.position)
        .limit(slots)
    )
    promoted = list(session.scalars(stmt).all())
    for entry in promoted:
        entry.status = WaitlistStatus.NOTIFIED
        entry.notified_at = now
        entry.notification_expires_at = expires_at
        entry.last_modified = now
        session.add(entry)
    session.flush()
    for entry in promoted:
        notifications.enqueue_notification(
            session,
            kind=notifications.WAITLIST_SPOT_OPEN,
            recipient=entry.email,
            subject=f"A spot opened up for {event.title}",
            payload={
                "event_id": event.id,
                "title": event.title,
                "expires_at": expires_at.isoformat(),
            },
            reference=entry.id,
        )
        logger.info(
            "Waitlist promote: event=%s email=%s position=%d",
            event.id,
            entry.email,
            entry.position,
        )
    return promoted


def open_slots(session: Session, event: Event) -> int:
    """Spots free for waitlisted people, net of offers still outstanding."""
    if event.capacity is None:
        stmt = select(func.count(WaitlistEntry.id)).where(
            WaitlistEntry.event_id == event.id,
            WaitlistEntry.status == WaitlistStatus.WAITING,
        )
        return session.scalar(stmt) or 0
    notified = session.scalar(
        select(func.count(WaitlistEntry.id)).where(
            WaitlistEntry.event_id == event.id,
            WaitlistEntry.status == WaitlistStatus.NOTIFIED,
        )
    )
    return max(event.spots_remaining - (notified or 0), 0)


def fill_open_slots(
    session: Session, event: Event, *, now: datetime | None = None
) -> list[WaitlistEntry]:
    return promote(session, event, open_slots(session, event), now=now)


def sweep_expired(session: Session, *, now: datetime | None = None) -> dict[str, int]:
    """Expire lapsed offers and pass the spots down the queue."""
    now = now or utcnow()
    stmt = select(WaitlistEntry).where(
        WaitlistEntry.status == WaitlistStatus.NOTIFIED,
        WaitlistEntry.notification_expires_at <= now,
    )
    expired = list(session.scalars(stmt).all())
    touched: dict[str, Event] = {}
    for entry in expired:
        entry.status = WaitlistStatus.EXPIRED
        entry.last_modified = now
        session.add(entry)
        touched[entry.event_id] = entry.event
    session.flush()

    promoted = 0
    for event in touched.values():
        promoted += len(fill_open_slots(session, event, now=now))
    if expired:
        logger.info(
            "Waitlist sweep: expired=%d promoted=%d events=%d",
            len(expired),
            promoted,
            len(touched),
        )
    return {"expired": len(expired), "promoted": promoted}


def convert(
    session: Session, event: Event, email: str, *, now: datetime | None = None
) -> WaitlistEntry | None:
    """Mark the entry for ``email`` as booked; no-op when not queued."""
    entry = _find_entry(session, event, normalize_email(email))
    if not entry or entry.status not in ACTIVE_WAITLIST_STATUSES:
        return None
    entry.status = WaitlistStatus.CONVERTED
    entry.last_modified = now or utcnow()
    session.add(entry)
    session.flush()
    return entry


def get_status(session: Session, event: Event, email: str) -> WaitlistPosition:
    entry = _find_entry(session, event, normalize_email(email))
    if not entry:
        raise NotFoundError("Not on the waitlist")
    rank = None
    if entry.status == WaitlistStatus.WAITING:
        ahead = session.scalar(
            select(func.count(WaitlistEntry.id)).where(
                WaitlistEntry.event_id == event.id,
                WaitlistEntry.status == WaitlistStatus.WAITING,
                WaitlistEntry.position < entry.position,
            )
        )
        rank = (ahead or 0) + 1
    return WaitlistPosition(entry=entry, rank=rank)


def list_entries(
    session: Session, event: Event, actor: Actor
) -> Sequence[WaitlistEntry]:
    require_event_host(event, actor)
    stmt = (
        select(WaitlistEntry)
        .where(WaitlistEntry.event_id == event.id)
        .order_by(WaitlistEntry.position)
    )
    return session.scalars(stmt).all()
