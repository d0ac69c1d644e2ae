"""Token store adapter over the configured session store."""

from __future__ import annotations

import asyncio

import structlog
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.backend.src.core.errors import SessionWriteTimeout
from app.backend.src.core.session_store import SessionCredential, SessionStore

LOGGER = structlog.get_logger(__name__)

STORE_ERRORS = (RedisError, SQLAlchemyError)


class TokenStore:
    """Reads and writes :class:`SessionCredential` records by session id.

    The underlying stores are synchronous, so calls run in the threadpool.
    Writes are bounded by ``write_timeout``. A timed-out or failed write
    raises :class:`SessionWriteTimeout`; the caller's credential object keeps
    its new values and a timed-out write may still land later.
    """

    def __init__(self, store: SessionStore, *, write_timeout: float = 5.0) -> None:
        self.store = store
        self.write_timeout = write_timeout

    async def load(self, session_id: str) -> SessionCredential:
        """Return the stored credential, or an empty one for new sessions."""

        raw = await run_in_threadpool(self.store.get, session_id)
        if not raw:
            return SessionCredential(session_id=session_id)
        try:
            credential = SessionCredential.model_validate_json(raw)
        except ValidationError as exc:
            LOGGER.warning("session_record_unreadable", error=str(exc))
            return SessionCredential(session_id=session_id)
        if credential.session_id != session_id:
            LOGGER.warning("session_record_id_mismatch")
            return SessionCredential(session_id=session_id)
        return credential

    async def save(
        self, credential: SessionCredential, *, timeout: float | None = None
    ) -> None:
        """Durably write ``credential``; raise when the store does not confirm."""

        limit = self.write_timeout if timeout is None else timeout
        payload = credential.model_dump_json()
        # The write thread may outlive a timed-out wait.
        write = asyncio.get_running_loop().run_in_executor(
            None, self.store.set, credential.session_id, payload
        )
        try:
            await asyncio.wait_for(write, timeout=limit)
        except asyncio.TimeoutError as exc:
            raise SessionWriteTimeout(credential, limit) from exc
        except STORE_ERRORS as exc:
            LOGGER.warning("session_write_failed", error=type(exc).__name__, detail=str(exc))
            raise SessionWriteTimeout(credential, limit) from exc

    async def touch(self, session_id: str) -> None:
        """Extend the idle expiry of an active session; failures are logged."""

        try:
            await run_in_threadpool(self.store.touch, session_id)
        except STORE_ERRORS as exc:
            LOGGER.warning("session_touch_failed", error=type(exc).__name__)

    async def discard(self, session_id: str) -> None:
        await run_in_threadpool(self.store.delete, session_id)


__all__ = ["TokenStore"]
