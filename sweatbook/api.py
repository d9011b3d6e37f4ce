"""FastAPI application for SweatBook."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any
import tomllib

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import bookings, bulk_refund, notifications, risk, waitlist
from .config import settings
from .crud import (
    Actor,
    create_event,
    find_booking,
    get_booking,
    get_event,
    list_host_events,
    require_booking_owner,
    require_event_host,
    update_event,
)
from .database import SessionLocal
from .errors import (
    AuthenticationError,
    AuthorizationError,
    DomainError,
    GatewayError,
    NotFoundError,
)
from .fees import quote_event_fees
from .gateway import CheckoutSession, PaymentGateway, StripeGateway
from .models import Booking, BookingStatus, Event, WaitlistEntry
from .refunds import evaluate_refund, parse_refund_policy
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db, issue_user_session, resolve_actor, revoke_user_session
from .utils import utcnow
from .webhooks import handle_gateway_webhook

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("sweatbook")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="SweatBook", version=APP_VERSION, lifespan=lifespan)


# -------- dependencies --------


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_gateway() -> PaymentGateway:
    return StripeGateway()


def get_email_sender() -> notifications.EmailSender:
    return notifications.LoggingEmailSender()


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_actor(request: Request, db: Session = Depends(get_db)) -> Actor:
    token = _get_bearer_token(request)
    if not token:
        raise AuthenticationError("Missing bearer token")
    actor = resolve_actor(db, token)
    if actor is None:
        raise AuthenticationError("Invalid or expired session")
    return actor


def get_root_actor(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_root:
        raise AuthorizationError("Root access required")
    return actor


async def _raw_body(request: Request) -> bytes:
    return await request.body()


# -------- error handlers --------


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if isinstance(exc, GatewayError):
        logger.error(
            "Gateway error on %s %s: %s", request.method, request.url.path, exc.message
        )
    return JSONResponse(exc.as_dict(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        return JSONResponse(
            {"detail": "The database is busy at the moment. Please try again."},
            status_code=503,
        )
    logger.error(
        "Operational database error on %s %s: %s",
        request.method,
        request.url.path,
        raw,
    )
    return JSONResponse({"detail": "We hit a database issue. Please try again."}, status_code=500)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- payloads --------


class SessionCreatePayload(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: str


class EventCreatePayload(BaseModel):
    title: str
    description: str | None = None
    start_time: datetime
    capacity: int | None = Field(None, ge=1, description="Empty means unlimited")
    price: int = Field(0, ge=0, description="Ticket price in minor units")
    currency: str | None = None
    fee_policy: str | None = None
    refund_policy: str | dict[str, Any] | None = None
    manual_payments_enabled: bool = False
    host_payout_account: str | None = None


class EventUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    start_time: datetime | None = None
    capacity: int | None = Field(None, ge=1)
    clear_capacity: bool = False
    refund_policy: str | dict[str, Any] | None = None
    manual_payments_enabled: bool | None = None


class CheckoutPayload(BaseModel):
    quantity: int = Field(1, ge=1)
    name: str | None = None


class ManualPaymentPayload(BaseModel):
    reference: str
    quantity: int = Field(1, ge=1)
    name: str | None = None


class VerifyPaymentPayload(BaseModel):
    approve: bool
    reason: str | None = None


class RefundPayload(BaseModel):
    reason: str | None = None
    manual_confirmed: bool = False


class BulkRefundPayload(BaseModel):
    reason: str | None = None
    host_initiated: bool = True


class CheckInPayload(BaseModel):
    attended: bool = True


class WaitlistJoinPayload(BaseModel):
    name: str | None = None


# -------- serializers --------


def _serialize_event(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "host_id": event.host_id,
        "title": event.title,
        "description": event.description,
        "start_time": event.start_time.isoformat(),
        "capacity": event.capacity,
        "spots_remaining": event.spots_remaining,
        "is_full": event.is_full,
        "is_free": not event.is_paid_event,
        "price": event.price,
        "currency": event.currency,
        "fee_policy": event.fee_policy,
        "refund_policy": parse_refund_policy(event.refund_policy).as_descriptor(),
        "manual_payments_enabled": event.manual_payments_enabled,
        "seats_taken": event.seats_taken,
        "seats_held": event.seats_held,
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_booking(booking: Booking) -> dict[str, Any]:
    return {
        "id": booking.id,
        "event_id": booking.event_id,
        "user_id": booking.user_id,
        "email": booking.email,
        "name": booking.name,
        "status": booking.status,
        "quantity": booking.quantity,
        "payment_method": booking.payment_method,
        "payment_reference": booking.payment_reference,
        "amount_charged": booking.amount_charged,
        "amount_refunded": booking.amount_refunded,
        "verified_by": booking.verified_by,
        "verified_at": _iso(booking.verified_at),
        "rejection_reason": booking.rejection_reason,
        "attended": booking.attended,
        "paid_at": _iso(booking.paid_at),
        "refunded_at": _iso(booking.refunded_at),
        "cancelled_at": _iso(booking.cancelled_at),
        "created_at": _iso(booking.created_at),
    }


def _serialize_checkout(checkout: CheckoutSession | None) -> dict[str, Any] | None:
    if checkout is None:
        return None
    return {"id": checkout.id, "url": checkout.url, "amount_total": checkout.amount_total}


def _serialize_waitlist_entry(entry: WaitlistEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "email": entry.email,
        "name": entry.name,
        "position": entry.position,
        "status": entry.status,
        "notified_at": _iso(entry.notified_at),
        "notification_expires_at": _iso(entry.notification_expires_at),
        "created_at": _iso(entry.created_at),
    }


def _ensure_event_booking(db: Session, event_id: str, booking_id: str) -> Booking:
    booking = get_booking(db, booking_id)
    if booking.event_id != event_id:
        raise NotFoundError("Booking not found")
    return booking


# -------- JSON API (v1) --------


@app.get("/api/v1/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/v1/sessions", status_code=201)
def api_issue_session(
    payload: SessionCreatePayload,
    _: Actor = Depends(get_root_actor),
    db: Session = Depends(get_db),
):
    """Issue a session for a user authenticated by the identity provider."""
    user_session = issue_user_session(db, user_id=payload.user_id, email=payload.email)
    return {
        "token": user_session.token,
        "user_id": user_session.user_id,
        "expires_at": user_session.expires_at.isoformat(),
    }


@app.delete("/api/v1/sessions/me")
def api_revoke_session(
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Log out: the bearer token stops resolving immediately."""
    if actor.is_root:
        raise AuthorizationError("The root token is rotated from the CLI")
    revoked = revoke_user_session(db, _get_bearer_token(request))
    logger.info("Session revoked: user=%s", actor.user_id)
    return {"revoked": revoked}


@app.get("/api/v1/hosts/me/events")
def api_list_host_events(
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    events = list_host_events(db, actor.user_id)
    return {"events": [_serialize_event(event) for event in events]}


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = create_event(
        db,
        host=actor,
        title=payload.title,
        description=payload.description,
        start_time=payload.start_time,
        capacity=payload.capacity,
        price=payload.price,
        currency=payload.currency,
        fee_policy=payload.fee_policy,
        refund_policy=payload.refund_policy,
        manual_payments_enabled=payload.manual_payments_enabled,
        host_payout_account=payload.host_payout_account,
    )
    logger.info("Event created: event=%s host=%s", event.id, actor.user_id)
    return {"event": _serialize_event(event)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, db: Session = Depends(get_db)):
    return {"event": _serialize_event(get_event(db, event_id))}


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    require_event_host(event, actor)
    data = payload.model_dump(exclude_unset=True)
    event = update_event(
        db,
        event,
        title=data.get("title"),
        description=data.get("description"),
        start_time=data.get("start_time"),
        capacity=data.get("capacity"),
        clear_capacity=data.get("clear_capacity", False),
        refund_policy=data.get("refund_policy"),
        manual_payments_enabled=data.get("manual_payments_enabled"),
    )
    promoted = waitlist.fill_open_slots(db, event)
    return {"event": _serialize_event(event), "waitlist_promoted": len(promoted)}


@app.get("/api/v1/events/{event_id}/fees")
def api_fee_quote(
    event_id: str,
    quantity: int = Query(1, ge=1),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    breakdown = quote_event_fees(event, quantity)
    return {
        "event_id": event.id,
        "quantity": quantity,
        "currency": event.currency,
        "fee_policy": event.fee_policy,
        "fees": breakdown.as_dict(),
    }


@app.get("/api/v1/events/{event_id}/refund-quote")
def api_refund_quote(
    event_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """What the caller would get back if they cancelled now."""
    event = get_event(db, event_id)
    booking = find_booking(db, event=event, user_id=actor.user_id)
    charged = (
        booking.amount_charged
        if booking and booking.status == BookingStatus.PAID
        else 0
    )
    decision = evaluate_refund(
        parse_refund_policy(event.refund_policy),
        event_start=event.start_time,
        now=utcnow(),
        charged=charged,
    )
    return {"event_id": event.id, "refund": decision.as_dict()}


@app.post("/api/v1/events/{event_id}/interest", status_code=201)
def api_register_interest(
    event_id: str,
    payload: WaitlistJoinPayload | None = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    booking = bookings.register_interest(
        db, event, actor, name=payload.name if payload else None
    )
    return {"booking": _serialize_booking(booking)}


@app.post("/api/v1/events/{event_id}/checkout", status_code=201)
def api_create_checkout(
    event_id: str,
    payload: CheckoutPayload,
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    booking, checkout = bookings.start_checkout(
        db, event, actor, gateway, payload.quantity, name=payload.name
    )
    return {
        "booking": _serialize_booking(booking),
        "checkout": _serialize_checkout(checkout),
        "fees": quote_event_fees(event, payload.quantity).as_dict(),
    }


@app.post("/api/v1/events/{event_id}/manual-payment", status_code=201)
def api_submit_manual_payment(
    event_id: str,
    payload: ManualPaymentPayload,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    booking = bookings.submit_manual_payment(
        db,
        event,
        actor,
        payload.reference,
        quantity=payload.quantity,
        name=payload.name,
    )
    return {"booking": _serialize_booking(booking)}


@app.get("/api/v1/events/{event_id}/bookings")
def api_list_bookings(
    event_id: str,
    status: list[str] | None = Query(None),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    require_event_host(event, actor)
    rows = bookings.list_event_bookings(db, event, status)
    return {"bookings": [_serialize_booking(booking) for booking in rows]}


@app.get("/api/v1/events/{event_id}/bookings/{booking_id}")
def api_get_booking(
    event_id: str,
    booking_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    booking = _ensure_event_booking(db, event_id, booking_id)
    if actor.user_id != booking.event.host_id:
        require_booking_owner(booking, actor)
    return {"booking": _serialize_booking(booking)}


@app.post("/api/v1/events/{event_id}/bookings/{booking_id}/verify")
def api_verify_payment(
    event_id: str,
    booking_id: str,
    payload: VerifyPaymentPayload,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    booking = _ensure_event_booking(db, event_id, booking_id)
    booking = bookings.verify_manual_payment(
        db, booking, actor, approve=payload.approve, reason=payload.reason
    )
    return {"booking": _serialize_booking(booking)}


@app.post("/api/v1/events/{event_id}/bookings/{booking_id}/cancel")
def api_cancel_booking(
    event_id: str,
    booking_id: str,
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    booking = _ensure_event_booking(db, event_id, booking_id)
    booking = bookings.cancel_booking(db, booking, actor, gateway)
    return {"booking": _serialize_booking(booking)}


@app.post("/api/v1/events/{event_id}/bookings/{booking_id}/refund")
def api_refund_booking(
    event_id: str,
    booking_id: str,
    payload: RefundPayload,
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    booking = _ensure_event_booking(db, event_id, booking_id)
    booking = bookings.refund_booking(
        db,
        booking,
        actor,
        gateway,
        reason=payload.reason,
        manual_confirmed=payload.manual_confirmed,
    )
    return {"booking": _serialize_booking(booking)}


@app.post("/api/v1/events/{event_id}/bookings/{booking_id}/check-in")
def api_check_in(
    event_id: str,
    booking_id: str,
    payload: CheckInPayload,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    booking = _ensure_event_booking(db, event_id, booking_id)
    booking = bookings.mark_attendance(db, booking, actor, payload.attended)
    return {"booking": _serialize_booking(booking)}


@app.post("/api/v1/events/{event_id}/refund-all")
def api_refund_all(
    event_id: str,
    payload: BulkRefundPayload,
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    result = bulk_refund.refund_event(
        db,
        event,
        actor,
        gateway,
        host_initiated=payload.host_initiated,
        reason=payload.reason,
    )
    return {"result": result.as_dict()}


@app.post("/api/v1/webhooks/gateway")
def api_gateway_webhook(
    payload: bytes = Depends(_raw_body),
    stripe_signature: str | None = Header(None),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    outcome = handle_gateway_webhook(db, gateway, payload, stripe_signature)
    return outcome.as_dict()


@app.post("/api/v1/events/{event_id}/waitlist")
def api_join_waitlist(
    event_id: str,
    payload: WaitlistJoinPayload | None = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    entry = waitlist.join(
        db,
        event,
        email=actor.email,
        name=(payload.name if payload else None) or actor.name,
        user_id=actor.user_id,
    )
    return {"entry": waitlist.get_status(db, event, entry.email).as_dict()}


@app.get("/api/v1/events/{event_id}/waitlist/me")
def api_waitlist_status(
    event_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    return {"entry": waitlist.get_status(db, event, actor.email).as_dict()}


@app.delete("/api/v1/events/{event_id}/waitlist/me")
def api_leave_waitlist(
    event_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    entry = waitlist.leave(db, event, actor.email)
    return {"entry": _serialize_waitlist_entry(entry)}


@app.get("/api/v1/events/{event_id}/waitlist")
def api_list_waitlist(
    event_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    entries = waitlist.list_entries(db, event, actor)
    return {"entries": [_serialize_waitlist_entry(entry) for entry in entries]}


@app.get("/api/v1/events/{event_id}/no-show-risk")
def api_no_show_risk(
    event_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    event = get_event(db, event_id)
    return risk.assess_event(db, event, actor).as_dict()


@app.post("/api/v1/maintenance/waitlist-sweep")
def api_waitlist_sweep(
    _: Actor = Depends(get_root_actor),
    db: Session = Depends(get_db),
):
    return waitlist.sweep_expired(db)


@app.post("/api/v1/maintenance/dispatch-notifications")
def api_dispatch_notifications(
    limit: int = Query(100, ge=1, le=1000),
    _: Actor = Depends(get_root_actor),
    sender: notifications.EmailSender = Depends(get_email_sender),
    db: Session = Depends(get_db),
):
    return notifications.dispatch_due(db, sender, limit=limit)
