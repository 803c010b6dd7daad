"""Database helpers for Kebilo.

The engine is created from :func:`get_database_settings` at import time.
SQLite is the default for local development; PostgreSQL is used whenever
``KEBILO_DATABASE_URL`` or ``DATABASE_URL`` points at one.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_database_settings
from .models import Base

LOGGER = logging.getLogger(__name__)


def _create_engine(settings: DatabaseSettings) -> Engine:
    engine = create_engine(settings.url, **settings.engine_options())

    if settings.is_sqlite:

        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):  # type: ignore[override]
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA foreign_keys=ON")
            finally:
                cursor.close()

    return engine


engine = _create_engine(get_database_settings())
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def init_db(bind: Engine | None = None) -> None:
    """Create any missing tables on *bind* (defaults to the module engine)."""

    target = bind or engine
    Base.metadata.create_all(bind=target)
    LOGGER.info("database_schema_ready url=%s", target.url.render_as_string(hide_password=True))


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session committed on success."""

    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Iterator[Session]:
    """Provide a transactional scope for scripts and background helpers."""

    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "DatabaseSettings",
    "SessionLocal",
    "engine",
    "get_database_settings",
    "get_session",
    "init_db",
    "session_scope",
]
