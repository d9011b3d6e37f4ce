from __future__ import annotations

import dataclasses
import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from sweatbook import api
from sweatbook.config import settings
from sweatbook.gateway import StripeGateway
from sweatbook.storage import fetch_root_token
from sweatbook.utils import utcnow


@pytest.fixture()
def client(monkeypatch, gateway):
    """FastAPI test client with the scheduler disabled and a fake gateway."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    api.app.dependency_overrides[api.get_gateway] = lambda: gateway
    try:
        with TestClient(api.app) as test_client:
            yield test_client
    finally:
        api.app.dependency_overrides.clear()


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _root_headers() -> dict[str, str]:
    return _bearer(fetch_root_token())


def _login(client: TestClient, user_id: str, email: str) -> dict[str, str]:
    response = client.post(
        "/api/v1/sessions",
        json={"user_id": user_id, "email": email},
        headers=_root_headers(),
    )
    assert response.status_code == 201
    return _bearer(response.json()["token"])


def _create_event(client: TestClient, headers, **overrides) -> dict:
    payload = {
        "title": "Saturday Bootcamp",
        "start_time": (utcnow() + timedelta(days=10)).replace(microsecond=0).isoformat(),
        "capacity": 10,
        "price": 2000,
        "currency": "SGD",
        "fee_policy": "PASS_THROUGH",
        "refund_policy": "TIERED",
    }
    payload.update(overrides)
    response = client.post("/api/v1/events", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["event"]


def _completed_webhook(checkout: dict, booking: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": checkout["id"],
                    "payment_status": "paid",
                    "payment_intent": "pi_100",
                    "amount_total": checkout["amount_total"],
                    "client_reference_id": booking["id"],
                    "metadata": {"booking_id": booking["id"]},
                }
            },
        }
    ).encode()


def test_health_is_public(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_requests_need_a_valid_session(client):
    response = client.post("/api/v1/events", json={"title": "x", "start_time": "2030-01-01T00:00:00"})
    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHENTICATED"

    response = client.get(
        "/api/v1/events/abc/waitlist/me", headers=_bearer("not-a-token")
    )
    assert response.status_code == 401


def test_only_root_can_issue_sessions(client):
    user = _login(client, "user-1", "ava@example.com")
    response = client.post(
        "/api/v1/sessions",
        json={"user_id": "user-2", "email": "ben@example.com"},
        headers=user,
    )
    assert response.status_code == 403
    assert response.json()["error"] == "FORBIDDEN"


def test_logout_revokes_the_session(client):
    user = _login(client, "user-1", "ava@example.com")
    assert client.get("/api/v1/hosts/me/events", headers=user).status_code == 200

    response = client.delete("/api/v1/sessions/me", headers=user)
    assert response.status_code == 200
    assert response.json() == {"revoked": True}

    response = client.get("/api/v1/hosts/me/events", headers=user)
    assert response.status_code == 401

    response = client.delete("/api/v1/sessions/me", headers=_root_headers())
    assert response.status_code == 403
    _login(client, "user-2", "ben@example.com")


def test_hosts_list_their_own_events(client):
    coach = _login(client, "coach-1", "coach@example.com")
    other = _login(client, "coach-2", "other@example.com")
    later = _create_event(
        client,
        coach,
        title="Evening Spin",
        start_time=(utcnow() + timedelta(days=20)).replace(microsecond=0).isoformat(),
    )
    sooner = _create_event(client, coach, title="Morning Yoga")
    _create_event(client, other, title="Lunch Pilates")

    response = client.get("/api/v1/hosts/me/events", headers=coach)
    assert response.status_code == 200
    assert [event["id"] for event in response.json()["events"]] == [later["id"], sooner["id"]]

    newcomer = _login(client, "user-9", "zoe@example.com")
    response = client.get("/api/v1/hosts/me/events", headers=newcomer)
    assert response.json() == {"events": []}


def test_create_event_and_quote_fees(client):
    host = _login(client, "host-1", "coach@example.com")
    created = _create_event(client, host, currency="sgd")

    assert created["currency"] == "SGD"
    assert created["is_free"] is False
    assert created["spots_remaining"] == 10
    assert created["refund_policy"]["name"] == "TIERED"

    fetched = client.get(f"/api/v1/events/{created['id']}").json()["event"]
    assert fetched == created

    quote = client.get(f"/api/v1/events/{created['id']}/fees", params={"quantity": 2})
    assert quote.status_code == 200
    fees = quote.json()["fees"]
    assert fees["subtotal"] == 4000
    assert fees["attendee_pays"] == fees["subtotal"] + fees["service_fee"]
    assert fees["host_receives"] == 4000


def test_invalid_event_input_is_rejected(client):
    host = _login(client, "host-1", "coach@example.com")
    response = client.post(
        "/api/v1/events",
        json={
            "title": "Spin",
            "start_time": "2030-01-01T07:00:00",
            "refund_policy": "WHENEVER",
        },
        headers=host,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_FAILED"


def test_checkout_then_webhook_marks_booking_paid(client, gateway):
    host = _login(client, "host-1", "coach@example.com")
    attendee = _login(client, "user-1", "ava@example.com")
    event = _create_event(client, host)

    response = client.post(
        f"/api/v1/events/{event['id']}/checkout", json={"quantity": 1}, headers=attendee
    )
    assert response.status_code == 201
    body = response.json()
    booking = body["booking"]
    checkout = body["checkout"]
    assert booking["status"] == "PENDING_PAYMENT"
    assert checkout["id"] == "cs_test_1"
    assert checkout["amount_total"] == body["fees"]["attendee_pays"]

    payload = _completed_webhook(checkout, booking)
    headers = {"Stripe-Signature": "t=0,v1=fake", "Content-Type": "application/json"}
    first = client.post("/api/v1/webhooks/gateway", content=payload, headers=headers)
    replay = client.post("/api/v1/webhooks/gateway", content=payload, headers=headers)

    assert first.status_code == 200
    assert first.json()["action"] == "processed"
    assert replay.status_code == 200
    assert replay.json()["action"] == "duplicate"

    fetched = client.get(
        f"/api/v1/events/{event['id']}/bookings/{booking['id']}", headers=attendee
    ).json()["booking"]
    assert fetched["status"] == "PAID"
    assert fetched["amount_charged"] == checkout["amount_total"]

    event_state = client.get(f"/api/v1/events/{event['id']}").json()["event"]
    assert event_state["seats_taken"] == 1
    assert event_state["seats_held"] == 0

    refund_quote = client.get(
        f"/api/v1/events/{event['id']}/refund-quote", headers=attendee
    ).json()["refund"]
    assert refund_quote["eligible"] is True
    assert refund_quote["percent"] == 100

    listed = client.get(f"/api/v1/events/{event['id']}/bookings", headers=host)
    assert [row["id"] for row in listed.json()["bookings"]] == [booking["id"]]
    forbidden = client.get(f"/api/v1/events/{event['id']}/bookings", headers=attendee)
    assert forbidden.status_code == 403

    other = _login(client, "user-2", "ben@example.com")
    peek = client.get(
        f"/api/v1/events/{event['id']}/bookings/{booking['id']}", headers=other
    )
    assert peek.status_code == 403


def test_webhook_with_bad_signature_is_rejected(client):
    signed_gateway = StripeGateway(
        dataclasses.replace(settings, stripe_webhook_secret="whsec_test_secret")
    )
    api.app.dependency_overrides[api.get_gateway] = lambda: signed_gateway

    response = client.post(
        "/api/v1/webhooks/gateway",
        content=b'{"id": "evt_1", "type": "checkout.session.completed"}',
        headers={"Stripe-Signature": "t=1,v1=deadbeef"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_SIGNATURE"


def test_full_free_event_and_waitlist_flow(client):
    host = _login(client, "host-1", "coach@example.com")
    ava = _login(client, "user-1", "ava@example.com")
    ben = _login(client, "user-2", "ben@example.com")
    event = _create_event(client, host, price=0, capacity=1)
    event_id = event["id"]

    joined = client.post(f"/api/v1/events/{event_id}/checkout", json={}, headers=ava)
    assert joined.status_code == 201
    assert joined.json()["booking"]["status"] == "JOINED"
    assert joined.json()["checkout"] is None

    blocked = client.post(f"/api/v1/events/{event_id}/checkout", json={}, headers=ben)
    assert blocked.status_code == 409
    assert blocked.json()["error"] == "CAPACITY_EXCEEDED"

    entry = client.post(
        f"/api/v1/events/{event_id}/waitlist", json={"name": "Ben"}, headers=ben
    )
    assert entry.status_code == 200
    assert entry.json()["entry"]["rank"] == 1
    assert entry.json()["entry"]["status"] == "WAITING"

    listing = client.get(f"/api/v1/events/{event_id}/waitlist", headers=host)
    assert [row["email"] for row in listing.json()["entries"]] == ["ben@example.com"]
    assert client.get(f"/api/v1/events/{event_id}/waitlist", headers=ben).status_code == 403

    booking_id = joined.json()["booking"]["id"]
    cancelled = client.post(
        f"/api/v1/events/{event_id}/bookings/{booking_id}/cancel", headers=ava
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["booking"]["status"] == "CANCELLED"

    status = client.get(f"/api/v1/events/{event_id}/waitlist/me", headers=ben).json()
    assert status["entry"]["status"] == "NOTIFIED"
    assert status["entry"]["notification_expires_at"] is not None

    left = client.delete(f"/api/v1/events/{event_id}/waitlist/me", headers=ben)
    assert left.status_code == 200
    assert left.json()["entry"]["status"] == "CANCELLED"


def test_raising_capacity_promotes_the_waitlist(client):
    host = _login(client, "host-1", "coach@example.com")
    ava = _login(client, "user-1", "ava@example.com")
    ben = _login(client, "user-2", "ben@example.com")
    event = _create_event(client, host, price=0, capacity=1)
    event_id = event["id"]
    client.post(f"/api/v1/events/{event_id}/checkout", json={}, headers=ava)
    client.post(f"/api/v1/events/{event_id}/waitlist", json={}, headers=ben)

    response = client.patch(
        f"/api/v1/events/{event_id}", json={"capacity": 2}, headers=host
    )

    assert response.status_code == 200
    assert response.json()["waitlist_promoted"] == 1
    assert response.json()["event"]["capacity"] == 2

    not_host = client.patch(f"/api/v1/events/{event_id}", json={"capacity": 5}, headers=ava)
    assert not_host.status_code == 403


def test_refund_all_refunds_paid_bookings(client, gateway):
    host = _login(client, "host-1", "coach@example.com")
    attendee = _login(client, "user-1", "ava@example.com")
    event = _create_event(client, host)
    body = client.post(
        f"/api/v1/events/{event['id']}/checkout", json={}, headers=attendee
    ).json()
    client.post(
        "/api/v1/webhooks/gateway",
        content=_completed_webhook(body["checkout"], body["booking"]),
        headers={"Stripe-Signature": "t=0,v1=fake"},
    )

    denied = client.post(
        f"/api/v1/events/{event['id']}/refund-all", json={}, headers=attendee
    )
    assert denied.status_code == 403

    response = client.post(
        f"/api/v1/events/{event['id']}/refund-all",
        json={"reason": "Venue flooded"},
        headers=host,
    )
    assert response.status_code == 200
    result = response.json()["result"]
    assert result["refunded"] == 1
    assert result["failed"] == 0
    assert [call["idempotency_key"] for call in gateway.refunds] == [
        f"refund-{body['booking']['id']}-pi_100"
    ]


def test_no_show_risk_is_host_only(client):
    host = _login(client, "host-1", "coach@example.com")
    attendee = _login(client, "user-1", "ava@example.com")
    event = _create_event(client, host, price=0)
    client.post(f"/api/v1/events/{event['id']}/checkout", json={}, headers=attendee)

    report = client.get(f"/api/v1/events/{event['id']}/no-show-risk", headers=host)
    assert report.status_code == 200
    data = report.json()
    assert len(data["attendees"]) == 1
    assert data["attendees"][0]["email"] == "ava@example.com"
    assert "avg_risk_score" in data["aggregate_prediction"]

    denied = client.get(f"/api/v1/events/{event['id']}/no-show-risk", headers=attendee)
    assert denied.status_code == 403


def test_maintenance_endpoints_need_root(client):
    attendee = _login(client, "user-1", "ava@example.com")

    assert (
        client.post("/api/v1/maintenance/waitlist-sweep", headers=attendee).status_code
        == 403
    )

    sweep = client.post("/api/v1/maintenance/waitlist-sweep", headers=_root_headers())
    assert sweep.status_code == 200
    assert sweep.json() == {"expired": 0, "promoted": 0}

    dispatch = client.post(
        "/api/v1/maintenance/dispatch-notifications", headers=_root_headers()
    )
    assert dispatch.status_code == 200
    assert dispatch.json() == {"sent": 0, "failed": 0}


def test_unknown_event_is_not_found(client):
    response = client.get("/api/v1/events/does-not-exist")
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"
