"""SQLAlchemy engine and session factory configuration."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import structlog
from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import Session, sessionmaker

from app.backend.src.core.config import get_settings

LOGGER = structlog.get_logger(__name__)
PROJECT_ROOT = Path(__file__).resolve().parents[4]


def _normalize_database_url(raw_url: str) -> URL:
    """Return an absolute :class:`~sqlalchemy.engine.URL` for SQLite databases."""

    url = make_url(raw_url)
    if not url.drivername.startswith("sqlite"):
        return url

    database = url.database or ""
    if database in {"", ":memory:"}:
        return url

    db_path = Path(database)
    if db_path.is_absolute():
        resolved = db_path
    else:
        resolved = PROJECT_ROOT / db_path

    resolved = resolved.resolve()
    if resolved != db_path:
        LOGGER.info(
            "database_path_normalized",
            original=str(db_path),
            resolved=str(resolved),
        )

    return url.set(database=str(resolved))


def build_engine(raw_url: str) -> Engine:
    """Create an engine for ``raw_url`` with the service defaults."""

    database_url = _normalize_database_url(raw_url)
    engine = create_engine(database_url, pool_pre_ping=True, future=True)
    LOGGER.info("database_engine_initialized", url=database_url.render_as_string())
    return engine


@lru_cache()
def get_engine() -> Engine:
    """Return the engine for the configured ``DATABASE_URL``."""

    return build_engine(get_settings().database_url)


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


__all__ = ["build_engine", "build_sessionmaker", "get_engine"]
