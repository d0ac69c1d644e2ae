"""Entrypoint for the FastAPI application."""

import os

from dotenv import load_dotenv

# Load .env locally only (the host injects env vars in deployment)
env_path = os.path.join(os.path.dirname(__file__), "../.env")
if os.path.exists(env_path):
    load_dotenv(dotenv_path=os.path.abspath(env_path))

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import auth, health, invoices, reference
from .core.config import Settings, get_settings
from .core.errors import (
    CsrfMismatch,
    InvoiceLocked,
    InvoiceValidationError,
    MissingParameters,
    NotAuthenticated,
    SessionWriteTimeout,
    TillInvoicerError,
    TokenExchangeError,
    UpstreamError,
)
from .core.logging import configure_logging
from .core.security import session_cookie_middleware
from .core.session_store import SessionStore, build_session_store
from .services.oauth import OAuthFlow
from .services.reference_data import ReferenceDataRegistry
from .services.token_store import TokenStore

LOGGER = structlog.get_logger(__name__)


def _status_for(exc: TillInvoicerError) -> int:
    if isinstance(exc, NotAuthenticated):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, MissingParameters):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, CsrfMismatch):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, TokenExchangeError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if isinstance(exc, UpstreamError):
        return status.HTTP_401_UNAUTHORIZED if exc.is_auth_failure else status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, InvoiceLocked):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, InvoiceValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, SessionWriteTimeout):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _handle_app_error(request: Request, exc: TillInvoicerError) -> JSONResponse:
    status_code = _status_for(exc)
    body: dict[str, object] = {"detail": str(exc), "code": exc.code}
    if isinstance(exc, MissingParameters):
        body["missing"] = exc.missing
    if hasattr(exc, "line_ids"):
        body["line_ids"] = exc.line_ids
    log = LOGGER.warning if status_code < 500 else LOGGER.error
    log("request_failed", path=request.url.path, code=exc.code, status_code=status_code)
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    settings: Settings | None = None,
    *,
    session_store: SessionStore | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    configure_logging()
    settings = settings or get_settings()
    app = FastAPI(title="Till Invoicer", version="0.1.0")

    token_store = TokenStore(
        session_store or build_session_store(settings),
        write_timeout=settings.session_write_timeout_seconds,
    )
    app.state.settings = settings
    app.state.token_store = token_store
    app.state.oauth_flow = OAuthFlow(settings, token_store, transport=http_transport)
    app.state.reference_registry = ReferenceDataRegistry()
    app.state.http_transport = http_transport

    app.middleware("http")(session_cookie_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TillInvoicerError, _handle_app_error)

    app.include_router(health.router, prefix="/api")
    app.include_router(auth.router, prefix="/api")
    app.include_router(reference.router, prefix="/api")
    app.include_router(invoices.router, prefix="/api")

    LOGGER.info(
        "app_created",
        environment=settings.qbo_environment,
        session_backend=settings.session_backend,
    )
    return app


app = create_app()
