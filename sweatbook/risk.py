"""Advisory no-show risk scoring for event attendees.

Scores are heuristics for hosts planning headcount; nothing in the booking
flow reads them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .crud import Actor, require_event_host
from .models import CONFIRMED_STATUSES, Booking, BookingStatus, Event
from .utils import days_between

BASE_SCORE = 20
LOW_MAX = 30
MEDIUM_MAX = 60


@dataclass(frozen=True)
class AttendanceHistory:
    total: int = 0
    attended: int = 0
    no_shows: int = 0

    @property
    def no_show_rate(self) -> float:
        return self.no_shows / self.total if self.total else 0.0


@dataclass(frozen=True)
class RiskScore:
    score: int
    level: str
    factors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AttendeeRisk:
    booking_id: str
    name: str | None
    email: str
    risk: RiskScore

    def as_dict(self) -> dict:
        return {
            "id": self.booking_id,
            "name": self.name,
            "email": self.email,
            "risk_score": self.risk.score,
            "risk_level": self.risk.level,
            "factors": list(self.risk.factors),
        }


@dataclass(frozen=True)
class EventRiskReport:
    attendees: list[AttendeeRisk]
    expected_attendance: int
    expected_no_shows: int
    average_score: int

    def as_dict(self) -> dict:
        return {
            "attendees": [attendee.as_dict() for attendee in self.attendees],
            "aggregate_prediction": {
                "expected_attendance": self.expected_attendance,
                "expected_no_shows": self.expected_no_shows,
                "avg_risk_score": self.average_score,
            },
        }


def _round(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def risk_level(score: int) -> str:
    if score <= LOW_MAX:
        return "low"
    if score <= MEDIUM_MAX:
        return "medium"
    return "high"


def payment_status_for(booking: Booking) -> str | None:
    if booking.status == BookingStatus.PAID:
        return "paid"
    if booking.status == BookingStatus.JOINED:
        return "free"
    return None


def score_attendee(
    history: AttendanceHistory,
    payment_status: str | None,
    registered_at: datetime | None,
    event_start: datetime | None,
) -> RiskScore:
    score = BASE_SCORE
    factors: list[str] = []

    if history.total > 0:
        rate = history.no_show_rate
        if rate > 0.5:
            score += 35
            factors.append(f"{_round(rate * 100)}% past no-show rate")
        elif rate > 0.2:
            score += 20
            factors.append(f"{_round(rate * 100)}% past no-show rate")
        elif rate == 0 and history.attended > 0:
            score -= 15
            factors.append("Reliable attendee - no past no-shows")
    else:
        score += 10
        factors.append("First-time attendee - no history")

    if payment_status in (None, "free"):
        score += 15
        factors.append("Free event (higher no-show tendency)")
    elif payment_status == "paid":
        score -= 10
        factors.append("Paid attendee (lower no-show risk)")

    if registered_at is not None and event_start is not None:
        lead_days = days_between(registered_at, event_start)
        if lead_days < 1:
            score += 10
            factors.append("Same-day registration")
        elif lead_days > 7:
            score += 5
            factors.append("Registered far in advance")

    score = max(0, min(100, score))
    return RiskScore(score=score, level=risk_level(score), factors=factors)


def attendance_history(
    session: Session, event: Event, emails: list[str]
) -> dict[str, AttendanceHistory]:
    """Per-email attendance across the host's other events."""
    if not emails:
        return {}
    stmt = (
        select(
            Booking.email,
            func.count(Booking.id),
            func.sum(case((Booking.attended.is_(True), 1), else_=0)),
            func.sum(case((Booking.attended.is_(False), 1), else_=0)),
        )
        .join(Event, Event.id == Booking.event_id)
        .where(
            Event.host_id == event.host_id,
            Event.id != event.id,
            Booking.email.in_(emails),
            Booking.attended.is_not(None),
        )
        .group_by(Booking.email)
    )
    return {
        email: AttendanceHistory(
            total=total or 0, attended=attended or 0, no_shows=no_shows or 0
        )
        for email, total, attended, no_shows in session.execute(stmt).all()
    }


def assess_event(session: Session, event: Event, actor: Actor) -> EventRiskReport:
    require_event_host(event, actor)
    stmt = (
        select(Booking)
        .where(
            Booking.event_id == event.id,
            Booking.status.in_(list(CONFIRMED_STATUSES)),
        )
        .order_by(Booking.created_at)
    )
    attendees = list(session.scalars(stmt).all())
    if not attendees:
        return EventRiskReport([], 0, 0, 0)

    history = attendance_history(session, event, [booking.email for booking in attendees])
    results = [
        AttendeeRisk(
            booking_id=booking.id,
            name=booking.name,
            email=booking.email,
            risk=score_attendee(
                history.get(booking.email, AttendanceHistory()),
                payment_status_for(booking),
                booking.interested_at or booking.created_at,
                event.start_time,
            ),
        )
        for booking in attendees
    ]
    average = sum(result.risk.score for result in results) / len(results)
    expected_no_shows = _round(len(results) * average / 100)
    return EventRiskReport(
        attendees=results,
        expected_attendance=len(results) - expected_no_shows,
        expected_no_shows=expected_no_shows,
        average_score=_round(average),
    )
