"""Periodic maintenance jobs.

Each job opens its own session so it can be run from the scheduler, the CLI
or a maintenance endpoint.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete

from . import waitlist
from .database import get_session
from .models import UserSession
from .notifications import EmailSender, LoggingEmailSender, dispatch_due
from .utils import utcnow

# Use uvicorn's error logger so job messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")


def run_waitlist_sweep(now: datetime | None = None) -> dict[str, int]:
    """Expire lapsed waitlist offers and promote the next people in line."""
    with get_session() as session:
        return waitlist.sweep_expired(session, now=now)


def run_notification_dispatch(
    sender: EmailSender | None = None, *, now: datetime | None = None, limit: int = 100
) -> dict[str, int]:
    with get_session() as session:
        return dispatch_due(session, sender or LoggingEmailSender(), now=now, limit=limit)


def purge_expired_sessions(now: datetime | None = None) -> int:
    now = now or utcnow()
    with get_session() as session:
        result = session.execute(delete(UserSession).where(UserSession.expires_at <= now))
        removed = result.rowcount or 0
    if removed:
        logger.info("Purged %d expired user sessions", removed)
    return removed
