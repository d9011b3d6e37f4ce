"""Database helpers for SweatBook."""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings

DATABASE_URL = f"sqlite:///{settings.database_path}"

# Capacity claims and waitlist sequence bumps are single conditional UPDATEs;
# writers queue on the SQLite lock instead of failing fast.
SQLITE_BUSY_TIMEOUT_MS = 5000


def configure_sqlite(engine: Engine) -> Engine:
    """Enable foreign keys, a busy timeout and working SAVEPOINTs on SQLite.

    pysqlite defers BEGIN until the first DML statement, which breaks
    ``Session.begin_nested``; the driver's own transaction handling is turned
    off and SQLAlchemy emits BEGIN itself.
    """
    if engine.dialect.name != "sqlite":
        return engine

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(connection) -> None:
        connection.exec_driver_sql("BEGIN")

    return engine


def alembic_url(engine: Engine) -> str:
    """Engine URL escaped for Alembic's configparser-backed options."""
    return engine.url.render_as_string(hide_password=False).replace("%", "%%")


engine = configure_sqlite(
    create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        future=True,
    )
)
SessionLocal = scoped_session(
    sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
)


@contextmanager
def get_session():
    """Context manager returning a SQLAlchemy session."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
