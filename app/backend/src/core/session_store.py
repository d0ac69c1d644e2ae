"""Session credential record and the key-value stores that hold it."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

import structlog
from pydantic import BaseModel
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session, sessionmaker

from app.backend.src.core.config import Settings
from app.backend.src.db import build_engine, build_sessionmaker, create_tables, session_scope
from app.backend.src.models import OAuthSession

LOGGER = structlog.get_logger(__name__)


class AuthStatus(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_CALLBACK = "awaiting_callback"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class SessionCredential(BaseModel):
    """OAuth material bound to one browser session."""

    session_id: str
    csrf_state: str | None = None
    realm_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    status: AuthStatus = AuthStatus.UNAUTHENTICATED
    updated_at: datetime | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token and self.realm_id)

    def bind_tokens(self, *, realm_id: str, access_token: str, refresh_token: str | None) -> None:
        """Store realm and tokens together so the pair invariant holds."""

        self.realm_id = realm_id
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.status = AuthStatus.AUTHENTICATED
        self.touch()

    def clear_tokens(self) -> None:
        self.realm_id = None
        self.access_token = None
        self.refresh_token = None
        self.touch()

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


class SessionStore(Protocol):
    """Minimal key-value protocol for serialized session records."""

    def get(self, session_id: str) -> str | None:
        """Return the stored value or ``None`` when absent or expired."""

    def set(self, session_id: str, value: str) -> None:
        """Persist ``value`` and reset its expiry."""

    def touch(self, session_id: str) -> None:
        """Extend the expiry of an existing record."""

    def delete(self, session_id: str) -> None:
        """Remove the record if present."""


class InMemorySessionStore:
    """Process-local store for development and tests."""

    def __init__(self, *, ttl_seconds: int = 60 * 60 * 24 * 7) -> None:
        self.ttl_seconds = ttl_seconds
        self._store: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> str | None:
        with self._lock:
            entry = self._store.get(session_id)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= time.monotonic():
                del self._store[session_id]
                return None
            return value

    def set(self, session_id: str, value: str) -> None:
        with self._lock:
            self._store[session_id] = (value, time.monotonic() + self.ttl_seconds)

    def touch(self, session_id: str) -> None:
        with self._lock:
            entry = self._store.get(session_id)
            if entry is not None:
                self._store[session_id] = (entry[0], time.monotonic() + self.ttl_seconds)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._store.pop(session_id, None)


class RedisSessionStore:
    """Redis-backed session records with a sliding TTL."""

    def __init__(
        self,
        url: str,
        *,
        key_prefix: str = "till_session",
        ttl_seconds: int = 60 * 60 * 24 * 7,
        socket_timeout: float | None = None,
    ) -> None:
        self.client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}:{session_id}"

    def get(self, session_id: str) -> str | None:
        key = self._key(session_id)
        try:
            return self.client.get(key)
        except RedisError as exc:
            LOGGER.warning("redis_session_read_failed", key=key, error=str(exc))
            return None

    def set(self, session_id: str, value: str) -> None:
        self.client.setex(self._key(session_id), self.ttl_seconds, value)

    def touch(self, session_id: str) -> None:
        key = self._key(session_id)
        try:
            self.client.expire(key, self.ttl_seconds)
        except RedisError as exc:
            LOGGER.warning("redis_session_touch_failed", key=key, error=str(exc))

    def delete(self, session_id: str) -> None:
        self.client.delete(self._key(session_id))


class DatabaseSessionStore:
    """Relational store backed by the ``oauth_sessions`` table."""

    def __init__(
        self,
        factory: sessionmaker[Session],
        *,
        ttl_seconds: int = 60 * 60 * 24 * 7,
    ) -> None:
        self.factory = factory
        self.ttl_seconds = ttl_seconds

    def get(self, session_id: str) -> str | None:
        with session_scope(self.factory) as session:
            record = session.get(OAuthSession, session_id)
            if record is None:
                return None
            if record.expires_at <= time.time():
                session.delete(record)
                return None
            return record.payload

    def set(self, session_id: str, value: str) -> None:
        expires_at = time.time() + self.ttl_seconds
        with session_scope(self.factory) as session:
            record = session.get(OAuthSession, session_id)
            if record is None:
                session.add(
                    OAuthSession(session_id=session_id, payload=value, expires_at=expires_at)
                )
            else:
                record.payload = value
                record.expires_at = expires_at

    def touch(self, session_id: str) -> None:
        with session_scope(self.factory) as session:
            record = session.get(OAuthSession, session_id)
            if record is not None:
                record.expires_at = time.time() + self.ttl_seconds

    def delete(self, session_id: str) -> None:
        with session_scope(self.factory) as session:
            record = session.get(OAuthSession, session_id)
            if record is not None:
                session.delete(record)


def build_session_store(settings: Settings) -> SessionStore:
    """Return the store selected by ``SESSION_BACKEND``."""

    backend = settings.session_backend.strip().lower()
    if backend == "memory":
        return InMemorySessionStore(ttl_seconds=settings.session_ttl_seconds)
    if backend == "redis":
        return RedisSessionStore(
            settings.redis_url,
            ttl_seconds=settings.session_ttl_seconds,
            socket_timeout=settings.session_write_timeout_seconds,
        )
    if backend == "database":
        engine = build_engine(settings.database_url)
        create_tables(engine)
        return DatabaseSessionStore(
            build_sessionmaker(engine), ttl_seconds=settings.session_ttl_seconds
        )
    raise ValueError(f"Unknown SESSION_BACKEND {settings.session_backend!r}")


__all__ = [
    "AuthStatus",
    "DatabaseSessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    "SessionCredential",
    "SessionStore",
    "build_session_store",
]
