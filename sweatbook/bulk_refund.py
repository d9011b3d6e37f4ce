"""Refund every paid booking of an event in bounded concurrent batches."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import bookings
from .config import settings
from .crud import Actor, require_event_host
from .errors import AlreadyProcessedError, DomainError
from .gateway import PaymentGateway, RefundReceipt
from .models import Booking, BookingStatus, Event
from .refunds import RefundDecision, evaluate_refund, parse_refund_policy
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


@dataclass
class BulkRefundResult:
    refunded: int = 0
    failed: int = 0
    skipped: int = 0
    total_amount: int = 0
    failures: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "refunded": self.refunded,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_amount": self.total_amount,
            "failures": list(self.failures),
        }


def _plan(
    event: Event,
    paid: list[Booking],
    result: BulkRefundResult,
    *,
    host_initiated: bool,
    now: datetime,
) -> list[tuple[Booking, RefundDecision]]:
    policy = parse_refund_policy(event.refund_policy)
    planned: list[tuple[Booking, RefundDecision]] = []
    for booking in paid:
        if not bookings.gateway_charge(booking):
            logger.warning("Bulk refund skipping booking %s: no gateway charge", booking.id)
            result.skipped += 1
            continue
        decision = evaluate_refund(
            policy,
            event_start=event.start_time,
            now=now,
            charged=booking.amount_charged,
            is_host_initiated=host_initiated,
        )
        if not decision.eligible or decision.amount < settings.minimum_refund_amount:
            logger.info(
                "Bulk refund skipping booking %s: %s", booking.id, decision.reason
            )
            result.skipped += 1
            continue
        planned.append((booking, decision))
    return planned


def _persist(
    session: Session,
    booking: Booking,
    receipt: RefundReceipt,
    decision: RefundDecision,
    reason: str | None,
    now: datetime,
) -> None:
    with session.begin_nested():
        bookings.record_refund(
            session,
            booking,
            refund_reference=receipt.id,
            amount=receipt.amount,
            reason=reason or decision.reason,
            now=now,
        )


def refund_event(
    session: Session,
    event: Event,
    actor: Actor,
    gateway: PaymentGateway,
    *,
    host_initiated: bool = True,
    reason: str | None = None,
    batch_size: int | None = None,
    now: datetime | None = None,
) -> BulkRefundResult:
    """Refund all paid gateway bookings of ``event``.

    Gateway calls in a batch run concurrently and the batch waits for all of
    them. Each success is persisted on its own savepoint; a failed item is
    counted and left PAID for a later run, which reuses the same idempotency
    key so a refund the gateway already made is not repeated.
    """
    require_event_host(event, actor)
    now = now or utcnow()
    batch_size = max(batch_size or settings.refund_batch_size, 1)
    result = BulkRefundResult()

    paid = list(bookings.list_event_bookings(session, event, [BookingStatus.PAID]))
    planned = _plan(event, paid, result, host_initiated=host_initiated, now=now)
    logger.info(
        "Bulk refund started: event=%s paid=%d planned=%d by=%s",
        event.id,
        len(paid),
        len(planned),
        actor.user_id,
    )

    for start in range(0, len(planned), batch_size):
        batch = planned[start : start + batch_size]
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            submitted: list[tuple[Future, Booking, RefundDecision]] = [
                (
                    pool.submit(
                        gateway.refund,
                        bookings.gateway_charge(booking),
                        amount=decision.amount,
                        idempotency_key=bookings.refund_idempotency_key(booking),
                        metadata={"booking_id": booking.id, "event_id": event.id},
                    ),
                    booking,
                    decision,
                )
                for booking, decision in batch
            ]
            wait([future for future, _, _ in submitted])

        for future, booking, decision in submitted:
            error = future.exception()
            if error is not None:
                logger.error("Bulk refund failed for booking %s: %s", booking.id, error)
                result.failed += 1
                result.failures.append(booking.id)
                continue
            receipt = future.result()
            try:
                _persist(session, booking, receipt, decision, reason, now)
            except AlreadyProcessedError:
                logger.info("Bulk refund: booking %s was already refunded", booking.id)
            except (DomainError, SQLAlchemyError):
                logger.exception(
                    "Bulk refund could not record refund %s for booking %s",
                    receipt.id,
                    booking.id,
                )
                result.failed += 1
                result.failures.append(booking.id)
                continue
            result.refunded += 1
            result.total_amount += receipt.amount

    logger.info(
        "Bulk refund finished: event=%s refunded=%d failed=%d skipped=%d total=%d",
        event.id,
        result.refunded,
        result.failed,
        result.skipped,
        result.total_amount,
    )
    return result
