"""Shared pytest fixtures for SweatBook."""

from __future__ import annotations

import itertools
import json
import sys
import threading
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sweatbook import api, database, storage
from sweatbook.crud import Actor, create_event
from sweatbook.errors import GatewayError
from sweatbook.gateway import CheckoutSession, RefundReceipt
from sweatbook.models import Base
from sweatbook.utils import utcnow


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()
        database.SessionLocal.remove()


class FakeGateway:
    """In-memory payment gateway recording every call."""

    def __init__(self) -> None:
        self.checkouts = []
        self.refunds = []
        self.fail_checkout = False
        self.failing_charges: set[str] = set()
        self.expired: list[str] = []
        self.fail_expire = False
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def create_checkout(self, request):
        if self.fail_checkout:
            raise GatewayError("Checkout could not be created: card network down")
        session_id = f"cs_test_{self._next_id()}"
        self.checkouts.append(request)
        return CheckoutSession(
            id=session_id,
            url=f"https://checkout.example.com/{session_id}",
            amount_total=request.fees.attendee_pays,
        )

    def expire_checkout(self, checkout_id):
        if self.fail_expire:
            raise GatewayError(f"Checkout {checkout_id} could not be closed: already paid")
        self.expired.append(checkout_id)

    def refund(self, charge_id, *, amount, idempotency_key, metadata=None):
        call = {
            "charge_id": charge_id,
            "amount": amount,
            "idempotency_key": idempotency_key,
            "metadata": metadata,
        }
        with self._lock:
            self.refunds.append(call)
        if charge_id in self.failing_charges:
            raise GatewayError(f"Refund failed: charge {charge_id} is disputed")
        return RefundReceipt(id=f"re_{idempotency_key}", amount=amount, status="succeeded")

    def construct_event(self, payload, signature):
        return json.loads(payload)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def host() -> Actor:
    return Actor(user_id="host-1", email="coach@example.com", name="Coach Kim")


@pytest.fixture()
def attendee() -> Actor:
    return Actor(user_id="user-1", email="ava@example.com", name="Ava")


@pytest.fixture()
def make_event(session, host):
    """Create and commit an event; defaults to a paid, tiered-refund class."""

    def _make(**overrides):
        values = {
            "host": host,
            "title": "Sunrise HIIT",
            "start_time": utcnow().replace(microsecond=0) + timedelta(days=10),
            "capacity": 10,
            "price": 2000,
            "currency": "SGD",
            "fee_policy": "PASS_THROUGH",
            "refund_policy": "TIERED",
            "manual_payments_enabled": True,
        }
        values.update(overrides)
        event = create_event(session, **values)
        session.commit()
        return event

    return _make
