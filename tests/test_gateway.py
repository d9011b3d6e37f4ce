from __future__ import annotations

import dataclasses
import time
from types import SimpleNamespace

import pytest
import stripe

from sweatbook.config import settings
from sweatbook.errors import GatewayError
from sweatbook.fees import calculate_fees
from sweatbook.gateway import CheckoutRequest, StripeGateway


def _gateway(**overrides) -> StripeGateway:
    values = {"stripe_secret_key": "sk_test_123", "checkout_expiry_minutes": 30}
    values.update(overrides)
    return StripeGateway(dataclasses.replace(settings, **values))


def _request() -> CheckoutRequest:
    return CheckoutRequest(
        booking_id="booking-1",
        event_id="event-1",
        user_id="user-1",
        email="ava@example.com",
        title="Sunrise HIIT",
        currency="SGD",
        quantity=2,
        unit_price=2000,
        fees=calculate_fees(2000, 2, "PASS_THROUGH"),
    )


@pytest.fixture()
def captured(monkeypatch):
    calls = {}

    def fake_create(**kwargs):
        calls["create"] = kwargs
        return SimpleNamespace(id="cs_live_1", url="https://stripe.test/cs_live_1", amount_total=4200)

    def fake_expire(checkout_id, **kwargs):
        calls["expire"] = (checkout_id, kwargs)
        return SimpleNamespace(id=checkout_id, status="expired")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    monkeypatch.setattr(stripe.checkout.Session, "expire", fake_expire)
    return calls


def test_checkout_expires_after_the_configured_window(captured):
    before = int(time.time())
    checkout = _gateway(checkout_expiry_minutes=45).create_checkout(_request())
    after = int(time.time())

    kwargs = captured["create"]
    assert before + 45 * 60 <= kwargs["expires_at"] <= after + 45 * 60
    assert kwargs["client_reference_id"] == "booking-1"
    assert kwargs["metadata"]["booking_id"] == "booking-1"
    assert checkout.id == "cs_live_1"
    assert checkout.amount_total == 4200


@pytest.mark.parametrize(("minutes", "expected"), [(5, 30), (3000, 24 * 60)])
def test_checkout_expiry_stays_within_stripe_limits(captured, minutes, expected):
    before = int(time.time())
    _gateway(checkout_expiry_minutes=minutes).create_checkout(_request())
    after = int(time.time())

    expires_at = captured["create"]["expires_at"]
    assert before + expected * 60 <= expires_at <= after + expected * 60


def test_default_checkout_expiry_is_half_an_hour():
    assert settings.checkout_expiry_minutes == 30


def test_expire_checkout_closes_the_session(captured):
    _gateway().expire_checkout("cs_old")
    checkout_id, kwargs = captured["expire"]
    assert checkout_id == "cs_old"
    assert kwargs["api_key"] == "sk_test_123"


def test_expire_checkout_failure_is_a_gateway_error(monkeypatch):
    def fail(checkout_id, **kwargs):
        raise stripe.InvalidRequestError("Only open sessions can be expired", None)

    monkeypatch.setattr(stripe.checkout.Session, "expire", fail)
    with pytest.raises(GatewayError):
        _gateway().expire_checkout("cs_paid")
