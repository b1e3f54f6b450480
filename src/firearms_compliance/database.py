"""Database connection and session management."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from firearms_compliance.config import get_settings

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def get_engine(database_url: str | None = None) -> Engine:
    """Create database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory used by services and request handlers.

    Objects stay readable after commit: services commit between the intent
    write and the gateway call and keep using the same order instance.
    """
    return sessionmaker(
        engine,
        class_=Session,
        expire_on_commit=False,
        autoflush=False,
    )


# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def init_db() -> tuple[Engine, sessionmaker[Session]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = make_session_factory(_engine)
    assert _session_factory is not None
    return _engine, _session_factory


def create_schema(engine: Engine) -> None:
    """Create all tables (development and tests; production uses migrations)."""
    from firearms_compliance.models import Base

    Base.metadata.create_all(engine)


@contextmanager
def get_session() -> Iterator[Session]:
    """Get a database session."""
    _, factory = init_db()
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
