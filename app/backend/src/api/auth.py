"""OAuth login, callback and session status endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from app.backend.src.core.errors import SessionWriteTimeout
from app.backend.src.core.security import (
    get_oauth_flow,
    get_session_credential,
    require_authenticated,
)
from app.backend.src.core.session_store import SessionCredential
from app.backend.src.services.oauth import OAuthFlow

LOGGER = structlog.get_logger(__name__)

router = APIRouter(tags=["auth"])


@router.get("/login")
async def login(
    credential: SessionCredential = Depends(get_session_credential),
    flow: OAuthFlow = Depends(get_oauth_flow),
) -> RedirectResponse:
    """Redirect to the QuickBooks consent screen with a fresh CSRF state."""

    try:
        authorization_url = await flow.initiate_login(credential)
    except SessionWriteTimeout as exc:
        LOGGER.error("oauth_login_state_not_persisted", timeout=exc.timeout)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Login could not be started, please try again",
        ) from exc
    return RedirectResponse(authorization_url, status_code=status.HTTP_302_FOUND)


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    realm_id: str | None = Query(default=None, alias="realmId"),
    tenant_id: str | None = Query(default=None, alias="tenantId"),
    credential: SessionCredential = Depends(get_session_credential),
    flow: OAuthFlow = Depends(get_oauth_flow),
) -> RedirectResponse:
    """Finish the authorization-code exchange and send the user home."""

    try:
        await flow.handle_callback(
            credential, code=code, state=state, realm_id=realm_id or tenant_id
        )
    except SessionWriteTimeout as exc:
        # Tokens are bound in memory but the store did not confirm the write.
        LOGGER.warning(
            "oauth_session_write_inconclusive",
            timeout=exc.timeout,
            realm_id=credential.realm_id,
        )
    request.app.state.reference_registry.drop(credential.session_id)
    return RedirectResponse(
        request.app.state.settings.app_home_url, status_code=status.HTTP_302_FOUND
    )


@router.get("/auth/status")
async def auth_status(
    credential: SessionCredential = Depends(get_session_credential),
) -> dict[str, object]:
    return {"authenticated": credential.is_authenticated, "status": credential.status.value}


@router.post("/auth/refresh")
async def refresh_tokens(
    credential: SessionCredential = Depends(require_authenticated),
    flow: OAuthFlow = Depends(get_oauth_flow),
) -> dict[str, object]:
    """Exchange the stored refresh token for a new token pair."""

    try:
        await flow.refresh(credential)
    except SessionWriteTimeout as exc:
        LOGGER.warning("oauth_refresh_write_inconclusive", timeout=exc.timeout)
    return {"authenticated": credential.is_authenticated}


@router.post("/auth/logout")
async def logout(
    request: Request,
    credential: SessionCredential = Depends(get_session_credential),
    flow: OAuthFlow = Depends(get_oauth_flow),
) -> dict[str, object]:
    await flow.logout(credential)
    request.app.state.reference_registry.drop(credential.session_id)
    return {"authenticated": False}
