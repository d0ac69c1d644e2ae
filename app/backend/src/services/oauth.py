"""OAuth2 authorization-code flow against the QuickBooks identity platform.

A login attempt moves a session through::

    unauthenticated -> awaiting_callback -> authenticated
                                  \\-> failed

``initiate_login`` writes a fresh CSRF state to the session store before the
authorization URL is handed back. ``handle_callback`` checks and consumes that
state before any network call, exchanges the code and binds the realm and
tokens to the session. A consumed state can never be replayed.
"""

from __future__ import annotations

import secrets
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from app.backend.src.core.config import ACCOUNTING_SCOPE, Settings
from app.backend.src.core.errors import (
    CsrfMismatch,
    MissingParameters,
    NotAuthenticated,
    SessionWriteTimeout,
    TokenExchangeError,
)
from app.backend.src.core.session_store import AuthStatus, SessionCredential
from app.backend.src.services.metrics import oauth_callbacks_total
from app.backend.src.services.token_store import TokenStore

LOGGER = structlog.get_logger(__name__)

STATE_BYTES = 32


def _states_match(stored: str, received: str) -> bool:
    return secrets.compare_digest(stored.encode("utf-8"), received.encode("utf-8"))


def _mark_failed(credential: SessionCredential) -> None:
    # A rejected callback never downgrades a session that already holds tokens.
    if not credential.is_authenticated:
        credential.status = AuthStatus.FAILED


class OAuthFlow:
    """Drives login, callback, refresh and logout for one configured app."""

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.token_store = token_store
        self._transport = transport

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.qbo_client_id or "",
            "response_type": "code",
            "scope": ACCOUNTING_SCOPE,
            "redirect_uri": self.settings.qbo_redirect_uri,
            "state": state,
        }
        return f"{self.settings.authorization_endpoint}?{urlencode(params)}"

    async def initiate_login(self, credential: SessionCredential) -> str:
        """Store a new CSRF state and return the authorization URL.

        Raises :class:`SessionWriteTimeout` when the state could not be
        persisted; the login must then be treated as failed because the
        callback would be unable to validate it.
        """

        state = secrets.token_urlsafe(STATE_BYTES)
        credential.csrf_state = state
        credential.status = AuthStatus.AWAITING_CALLBACK
        credential.touch()
        await self.token_store.save(credential)
        LOGGER.info("oauth_login_initiated")
        return self.authorization_url(state)

    async def handle_callback(
        self,
        credential: SessionCredential,
        *,
        code: str | None,
        state: str | None,
        realm_id: str | None,
    ) -> SessionCredential:
        """Validate the callback, exchange the code and bind the tokens."""

        missing = [
            name for name, value in (("code", code), ("realmId", realm_id)) if not value
        ]
        if missing:
            oauth_callbacks_total.labels(outcome="missing_parameters").inc()
            LOGGER.warning("oauth_callback_rejected", reason="missing_parameters", missing=missing)
            raise MissingParameters(missing)

        stored_state = credential.csrf_state
        # Consumed on every check so the same state can never pass twice.
        credential.csrf_state = None
        if not stored_state or not state or not _states_match(stored_state, state):
            _mark_failed(credential)
            await self._persist_best_effort(credential)
            oauth_callbacks_total.labels(outcome="csrf_mismatch").inc()
            LOGGER.warning(
                "oauth_callback_rejected",
                reason="csrf_mismatch",
                had_stored_state=bool(stored_state),
            )
            raise CsrfMismatch()
        await self._persist_best_effort(credential)

        try:
            tokens = await self._request_tokens(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.settings.qbo_redirect_uri,
                }
            )
        except TokenExchangeError as exc:
            _mark_failed(credential)
            await self._persist_best_effort(credential)
            oauth_callbacks_total.labels(outcome="exchange_failed").inc()
            LOGGER.error("oauth_token_exchange_failed", status=exc.status)
            raise

        credential.bind_tokens(
            realm_id=str(realm_id),
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),
        )
        oauth_callbacks_total.labels(outcome="authenticated").inc()
        await self.token_store.save(credential)
        LOGGER.info("oauth_session_authenticated", realm_id=credential.realm_id)
        return credential

    async def refresh(self, credential: SessionCredential) -> SessionCredential:
        """Swap the refresh token for a new token pair."""

        if not credential.is_authenticated or not credential.refresh_token:
            raise NotAuthenticated()
        tokens = await self._request_tokens(
            {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
        )
        credential.bind_tokens(
            realm_id=str(credential.realm_id),
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token") or credential.refresh_token,
        )
        await self.token_store.save(credential)
        LOGGER.info("oauth_tokens_refreshed", realm_id=credential.realm_id)
        return credential

    async def logout(self, credential: SessionCredential) -> None:
        credential.clear_tokens()
        credential.csrf_state = None
        credential.status = AuthStatus.UNAUTHENTICATED
        await self.token_store.discard(credential.session_id)
        LOGGER.info("oauth_session_cleared")

    async def _request_tokens(self, form: dict[str, Any]) -> dict[str, Any]:
        auth = httpx.BasicAuth(
            self.settings.qbo_client_id or "", self.settings.qbo_client_secret or ""
        )
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.token_exchange_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.settings.token_endpoint,
                    data=form,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise TokenExchangeError(None, str(exc)) from exc

        if not response.is_success:
            raise TokenExchangeError(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenExchangeError(response.status_code, response.text) from exc
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise TokenExchangeError(response.status_code, "Token response missing access_token")
        return payload

    async def _persist_best_effort(self, credential: SessionCredential) -> None:
        try:
            await self.token_store.save(credential)
        except SessionWriteTimeout as exc:
            LOGGER.warning("oauth_state_write_inconclusive", timeout=exc.timeout)


__all__ = ["OAuthFlow"]
