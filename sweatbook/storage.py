"""Database initialization, root token and server-side sessions."""

from __future__ import annotations

import secrets
import shutil
from datetime import datetime
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import delete, inspect
from sqlalchemy.orm import Session

from .config import settings
from .crud import Actor
from .database import alembic_url, engine, get_session
from .models import Meta, UserSession
from .utils import normalize_email, utcnow


def init_db() -> None:
    upgrade_database(make_backup=False)
    ensure_root_token()


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", alembic_url(engine))
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions; empty if already up-to-date.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("events")
    config = _alembic_config()

    if not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables created outside Alembic (e.g. metadata.create_all): baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    return actions


def ensure_root_token() -> str:
    with get_session() as session:
        existing = session.get(Meta, settings.root_token_key)
        if existing:
            return existing.value
        token = secrets.token_urlsafe(32)
        meta = Meta(key=settings.root_token_key, value=token, updated_at=utcnow())
        session.merge(meta)
        return token


def rotate_root_token() -> str:
    token = secrets.token_urlsafe(32)
    with get_session() as session:
        meta = Meta(key=settings.root_token_key, value=token, updated_at=utcnow())
        session.merge(meta)
    return token


def fetch_root_token() -> str:
    with get_session() as session:
        meta = session.get(Meta, settings.root_token_key)
        if not meta:
            return ensure_root_token()
        return meta.value


def issue_user_session(
    session: Session,
    *,
    user_id: str,
    email: str,
    now: datetime | None = None,
) -> UserSession:
    """Record a session for a user the identity provider has authenticated."""
    now = now or utcnow()
    user_session = UserSession(
        token=secrets.token_urlsafe(32),
        user_id=user_id,
        email=normalize_email(email),
        created_at=now,
        expires_at=now + settings.session_ttl,
    )
    session.add(user_session)
    session.flush()
    return user_session


def revoke_user_session(session: Session, token: str) -> bool:
    result = session.execute(delete(UserSession).where(UserSession.token == token))
    return bool(result.rowcount)


def resolve_actor(
    session: Session, token: str | None, *, now: datetime | None = None
) -> Actor | None:
    """Map a bearer token to an actor; ``None`` when unknown or expired."""
    if not token:
        return None
    root = session.get(Meta, settings.root_token_key)
    if root and secrets.compare_digest(root.value, token):
        return Actor.root()
    user_session = session.get(UserSession, token)
    if not user_session or user_session.expires_at <= (now or utcnow()):
        return None
    return Actor(user_id=user_session.user_id, email=user_session.email)
