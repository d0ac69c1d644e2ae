"""Session cookie handling and request dependencies.

The browser only ever holds an opaque, HMAC-signed session id. Tokens stay in
the session store and are loaded per request through :class:`TokenStore`.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Depends, Request, Response

from app.backend.src.core.config import Settings
from app.backend.src.core.errors import NotAuthenticated
from app.backend.src.core.session_store import SessionCredential
from app.backend.src.services.oauth import OAuthFlow
from app.backend.src.services.qbo_client import AccountingClient
from app.backend.src.services.reference_data import ReferenceDataSet
from app.backend.src.services.token_store import TokenStore

LOGGER = structlog.get_logger(__name__)

SESSION_ID_BYTES = 32


def _signature(session_id: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), session_id.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_session_id(session_id: str, secret: str) -> str:
    return f"{session_id}.{_signature(session_id, secret)}"


def unsign_session_id(value: str | None, secret: str) -> str | None:
    """Return the session id from a cookie value, or ``None`` if tampered."""

    if not value or "." not in value:
        return None
    session_id, _, signature = value.rpartition(".")
    if not session_id:
        return None
    if not hmac.compare_digest(signature, _signature(session_id, secret)):
        return None
    return session_id


def get_settings_dependency(request: Request) -> Settings:
    return request.app.state.settings


def get_token_store(request: Request) -> TokenStore:
    return request.app.state.token_store


def get_oauth_flow(request: Request) -> OAuthFlow:
    return request.app.state.oauth_flow


def resolve_session_id(request: Request) -> str:
    """Return the caller's session id, issuing a new one when needed.

    A newly issued id is stashed on ``request.state`` and written as a cookie
    by :func:`session_cookie_middleware`.
    """

    settings: Settings = request.app.state.settings
    cached = getattr(request.state, "session_id", None)
    if cached:
        return cached
    session_id = unsign_session_id(
        request.cookies.get(settings.session_cookie_name), settings.session_secret
    )
    if session_id is None:
        session_id = secrets.token_urlsafe(SESSION_ID_BYTES)
        request.state.issue_session_cookie = True
    request.state.session_id = session_id
    return session_id


async def get_session_credential(
    request: Request,
    token_store: TokenStore = Depends(get_token_store),
) -> SessionCredential:
    """Load the credential bound to the caller's session (possibly empty).

    Authenticated sessions have their idle expiry extended on each request.
    """

    credential = await token_store.load(resolve_session_id(request))
    if credential.is_authenticated:
        await token_store.touch(credential.session_id)
    return credential


async def require_authenticated(
    credential: SessionCredential = Depends(get_session_credential),
) -> SessionCredential:
    if not credential.is_authenticated:
        raise NotAuthenticated()
    return credential


def get_accounting_client(
    request: Request,
    credential: SessionCredential = Depends(require_authenticated),
) -> AccountingClient:
    settings: Settings = request.app.state.settings
    return AccountingClient(
        realm_id=credential.realm_id,
        access_token=credential.access_token,
        base_url=settings.api_base_url,
        minor_version=settings.qbo_minor_version,
        timeout=settings.api_timeout_seconds,
        transport=request.app.state.http_transport,
    )


def get_reference_data(
    request: Request,
    credential: SessionCredential = Depends(require_authenticated),
) -> ReferenceDataSet:
    return request.app.state.reference_registry.for_session(credential.session_id)


async def session_cookie_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Attach the session cookie when a request was given a fresh id."""

    response = await call_next(request)
    if getattr(request.state, "issue_session_cookie", False):
        settings: Settings = request.app.state.settings
        response.set_cookie(
            settings.session_cookie_name,
            sign_session_id(request.state.session_id, settings.session_secret),
            max_age=settings.session_ttl_seconds,
            httponly=True,
            samesite="lax",
            secure=settings.session_cookie_secure,
        )
    return response


__all__ = [
    "get_accounting_client",
    "get_oauth_flow",
    "get_reference_data",
    "get_session_credential",
    "get_settings_dependency",
    "get_token_store",
    "require_authenticated",
    "resolve_session_id",
    "session_cookie_middleware",
    "sign_session_id",
    "unsign_session_id",
]
