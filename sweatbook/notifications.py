"""Outbound notification queue.

State transitions enqueue messages in the same database transaction; a
periodic invoker dispatches them. Delivery is best-effort and at-most-once:
a message is marked dispatched before the sender is called and is never
retried, and a failure to enqueue never fails the transition that caused it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import OutboxMessage
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

PAYMENT_CONFIRMED = "payment_confirmed"
PAYMENT_REJECTED = "payment_rejected"
PAYMENT_PENDING_VERIFICATION = "payment_pending_verification"
REFUND_ISSUED = "refund_issued"
MANUAL_REFUND_OWED = "manual_refund_owed"
BOOKING_CANCELLED = "booking_cancelled"
EVENT_REMINDER = "event_reminder"
REVIEW_PROMPT = "review_prompt"
WAITLIST_SPOT_OPEN = "waitlist_spot_open"


class EmailSender(Protocol):
    def send(self, *, to: str, subject: str, body: dict[str, Any]) -> None: ...


class LoggingEmailSender:
    """Default sender: writes each message to the log instead of mailing it."""

    def send(self, *, to: str, subject: str, body: dict[str, Any]) -> None:
        logger.info("Email to %s: %s %s", to, subject, body)


def enqueue_notification(
    session: Session,
    *,
    kind: str,
    recipient: str | None,
    subject: str,
    payload: dict[str, Any] | None = None,
    reference: str | None = None,
    deliver_after: datetime | None = None,
) -> OutboxMessage | None:
    """Queue a message; returns ``None`` (and logs) if it could not be queued."""
    if not recipient:
        logger.warning("Dropping %s notification without a recipient", kind)
        return None
    message = OutboxMessage(
        kind=kind,
        reference=reference,
        recipient=recipient,
        subject=subject,
        payload=payload or {},
        deliver_after=deliver_after or utcnow(),
    )
    try:
        with session.begin_nested():
            session.add(message)
            session.flush()
    except SQLAlchemyError:
        logger.exception("Failed to queue %s notification for %s", kind, recipient)
        return None
    return message


def discard_pending(
    session: Session, *, reference: str, kind: str, now: datetime | None = None
) -> int:
    """Drop queued, undelivered messages of ``kind`` about ``reference``."""
    result = session.execute(
        update(OutboxMessage)
        .where(
            OutboxMessage.reference == reference,
            OutboxMessage.kind == kind,
            OutboxMessage.dispatched_at.is_(None),
        )
        .values(dispatched_at=now or utcnow(), error="discarded")
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def dispatch_due(
    session: Session,
    sender: EmailSender,
    *,
    now: datetime | None = None,
    limit: int = 100,
) -> dict[str, int]:
    """Send queued messages whose ``deliver_after`` has passed."""
    now = now or utcnow()
    stats = {"sent": 0, "failed": 0}
    stmt = (
        select(OutboxMessage)
        .where(
            OutboxMessage.dispatched_at.is_(None),
            OutboxMessage.deliver_after <= now,
        )
        .order_by(OutboxMessage.deliver_after, OutboxMessage.created_at)
        .limit(limit)
    )
    for message in session.scalars(stmt).all():
        message.dispatched_at = now
        session.add(message)
        session.flush()
        try:
            sender.send(to=message.recipient, subject=message.subject, body=message.payload)
        except Exception as exc:
            message.error = str(exc)[:500]
            stats["failed"] += 1
            logger.exception(
                "Notification %s (%s) to %s failed", message.id, message.kind, message.recipient
            )
            continue
        stats["sent"] += 1
    if stats["sent"] or stats["failed"]:
        logger.info(
            "Notification dispatch finished: sent=%d failed=%d",
            stats["sent"],
            stats["failed"],
        )
    return stats
