from __future__ import annotations

from datetime import timedelta

from sweatbook import maintenance
from sweatbook.models import UserSession
from sweatbook.storage import (
    ensure_root_token,
    fetch_root_token,
    issue_user_session,
    resolve_actor,
    revoke_user_session,
    rotate_root_token,
)
from sweatbook.utils import utcnow


def test_root_token_lifecycle():
    first = ensure_root_token()
    assert isinstance(first, str) and first
    assert fetch_root_token() == first
    rotated = rotate_root_token()
    assert rotated != first
    assert fetch_root_token() == rotated


def test_root_token_resolves_to_the_root_actor(session):
    token = ensure_root_token()
    actor = resolve_actor(session, token)
    assert actor.is_root is True
    assert resolve_actor(session, token + "x") is None
    assert resolve_actor(session, None) is None


def test_user_session_resolves_until_it_expires(session):
    now = utcnow()
    user_session = issue_user_session(
        session, user_id="user-7", email=" Ava@Example.com ", now=now
    )
    session.commit()

    actor = resolve_actor(session, user_session.token, now=now + timedelta(minutes=5))
    assert actor.user_id == "user-7"
    assert actor.email == "ava@example.com"
    assert actor.is_root is False

    expired_at = user_session.expires_at + timedelta(seconds=1)
    assert resolve_actor(session, user_session.token, now=expired_at) is None


def test_revoked_session_no_longer_resolves(session):
    user_session = issue_user_session(session, user_id="user-8", email="ben@example.com")
    session.commit()

    assert revoke_user_session(session, user_session.token) is True
    session.commit()
    session.expire_all()
    assert resolve_actor(session, user_session.token) is None


def test_expired_sessions_are_purged(session):
    now = utcnow()
    issue_user_session(
        session, user_id="user-1", email="a@example.com", now=now - timedelta(days=60)
    )
    issue_user_session(session, user_id="user-2", email="b@example.com", now=now)
    session.commit()

    removed = maintenance.purge_expired_sessions(now=now)

    assert removed == 1
    assert [row.user_id for row in session.query(UserSession).all()] == ["user-2"]
