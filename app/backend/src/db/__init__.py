"""Database session management utilities."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session, sessionmaker

from ..models import Base
from .session import build_engine, build_sessionmaker, get_engine


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(engine=None) -> None:
    """Create the session tables if they do not exist yet."""

    Base.metadata.create_all(bind=engine or get_engine())


__all__ = [
    "Base",
    "build_engine",
    "build_sessionmaker",
    "create_tables",
    "get_engine",
    "session_scope",
]
