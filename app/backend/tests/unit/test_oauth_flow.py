"""Unit tests for the OAuth flow and token store adapter."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from urllib.parse import parse_qs, urlparse

sys.path.append(str(Path(__file__).resolve().parents[4]))

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.backend.src.core.config import Settings
from app.backend.src.core.errors import (
    CsrfMismatch,
    MissingParameters,
    SessionWriteTimeout,
    TokenExchangeError,
)
from app.backend.src.core.session_store import (
    AuthStatus,
    InMemorySessionStore,
    SessionCredential,
)
from app.backend.src.services.oauth import OAuthFlow
from app.backend.src.services.token_store import TokenStore


class SlowStore(InMemorySessionStore):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def set(self, session_id: str, value: str) -> None:
        time.sleep(self.delay)
        super().set(session_id, value)


def _settings() -> Settings:
    return Settings(
        QBO_CLIENT_ID="client-id",
        QBO_CLIENT_SECRET="client-secret",
        QBO_REDIRECT_URI="http://testserver/api/oauth/callback",
    )


def _token_transport(calls: list[httpx.Request], status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if status_code != 200:
            return httpx.Response(status_code, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": "AT", "refresh_token": "RT"})

    return httpx.MockTransport(handler)


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


def test_happy_path_login_and_callback() -> None:
    calls: list[httpx.Request] = []
    token_store = TokenStore(InMemorySessionStore())
    flow = OAuthFlow(_settings(), token_store, transport=_token_transport(calls))

    async def scenario() -> SessionCredential:
        credential = await token_store.load("sid-1")
        url = await flow.initiate_login(credential)
        assert url.startswith("https://appcenter.intuit.com/connect/oauth2?")
        state = _state_from(url)

        stored = await token_store.load("sid-1")
        assert stored.csrf_state == state
        assert stored.status is AuthStatus.AWAITING_CALLBACK

        await flow.handle_callback(stored, code="abc", state=state, realm_id="9")
        return await token_store.load("sid-1")

    result = asyncio.run(scenario())

    assert result.realm_id == "9"
    assert result.access_token == "AT"
    assert result.refresh_token == "RT"
    assert result.csrf_state is None
    assert result.status is AuthStatus.AUTHENTICATED
    assert len(calls) == 1
    form = parse_qs(calls[0].content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["abc"]
    assert calls[0].headers["Authorization"].startswith("Basic ")


def test_state_is_single_use() -> None:
    calls: list[httpx.Request] = []
    token_store = TokenStore(InMemorySessionStore())
    flow = OAuthFlow(_settings(), token_store, transport=_token_transport(calls))

    async def scenario() -> None:
        credential = await token_store.load("sid-2")
        state = _state_from(await flow.initiate_login(credential))
        await flow.handle_callback(
            await token_store.load("sid-2"), code="abc", state=state, realm_id="9"
        )
        with pytest.raises(CsrfMismatch):
            await flow.handle_callback(
                await token_store.load("sid-2"), code="abc", state=state, realm_id="9"
            )

    asyncio.run(scenario())
    assert len(calls) == 1


def test_mismatched_state_makes_no_network_call() -> None:
    calls: list[httpx.Request] = []
    token_store = TokenStore(InMemorySessionStore())
    flow = OAuthFlow(_settings(), token_store, transport=_token_transport(calls))

    async def scenario() -> SessionCredential:
        credential = await token_store.load("sid-3")
        await flow.initiate_login(credential)
        with pytest.raises(CsrfMismatch):
            await flow.handle_callback(
                await token_store.load("sid-3"), code="abc", state="forged", realm_id="9"
            )
        return await token_store.load("sid-3")

    stored = asyncio.run(scenario())
    assert calls == []
    assert stored.csrf_state is None
    assert stored.status is AuthStatus.FAILED


def test_mismatched_state_keeps_authenticated_session() -> None:
    calls: list[httpx.Request] = []
    token_store = TokenStore(InMemorySessionStore())
    flow = OAuthFlow(_settings(), token_store, transport=_token_transport(calls))
    credential = SessionCredential(session_id="sid-8")
    credential.bind_tokens(realm_id="9", access_token="AT0", refresh_token="RT0")

    with pytest.raises(CsrfMismatch):
        asyncio.run(flow.handle_callback(credential, code="abc", state="forged", realm_id="666"))

    assert calls == []
    stored = asyncio.run(token_store.load("sid-8"))
    assert stored.status is AuthStatus.AUTHENTICATED
    assert stored.realm_id == "9"
    assert stored.access_token == "AT0"


def test_mismatched_state_is_rejected_when_store_refuses_writes() -> None:
    store = InMemorySessionStore()
    token_store = TokenStore(store)
    flow = OAuthFlow(_settings(), token_store, transport=_token_transport([]))
    credential = SessionCredential(session_id="sid-9", csrf_state="S")

    def refuse(session_id: str, value: str) -> None:
        raise RedisConnectionError("Error 111 connecting to redis:6379")

    store.set = refuse  # type: ignore[method-assign]

    with pytest.raises(CsrfMismatch):
        asyncio.run(flow.handle_callback(credential, code="abc", state="forged", realm_id="9"))


def test_missing_parameters_are_rejected() -> None:
    flow = OAuthFlow(_settings(), TokenStore(InMemorySessionStore()))
    credential = SessionCredential(session_id="sid-4", csrf_state="S")

    with pytest.raises(MissingParameters) as excinfo:
        asyncio.run(flow.handle_callback(credential, code=None, state="S", realm_id=None))

    assert excinfo.value.missing == ["code", "realmId"]
    assert credential.csrf_state == "S"


def test_token_exchange_failure_marks_session_failed() -> None:
    calls: list[httpx.Request] = []
    token_store = TokenStore(InMemorySessionStore())
    flow = OAuthFlow(_settings(), token_store, transport=_token_transport(calls, 400))
    credential = SessionCredential(session_id="sid-5", csrf_state="S")

    with pytest.raises(TokenExchangeError) as excinfo:
        asyncio.run(flow.handle_callback(credential, code="abc", state="S", realm_id="9"))

    assert excinfo.value.status == 400
    stored = asyncio.run(token_store.load("sid-5"))
    assert stored.status is AuthStatus.FAILED
    assert not stored.is_authenticated


def test_slow_store_raises_session_write_timeout() -> None:
    token_store = TokenStore(SlowStore(0.5), write_timeout=0.05)
    flow = OAuthFlow(_settings(), token_store, transport=_token_transport([]))
    credential = SessionCredential(session_id="sid-6", csrf_state="S")

    with pytest.raises(SessionWriteTimeout):
        asyncio.run(flow.handle_callback(credential, code="abc", state="S", realm_id="9"))

    assert credential.is_authenticated
    assert credential.access_token == "AT"


def test_refresh_and_logout() -> None:
    calls: list[httpx.Request] = []
    token_store = TokenStore(InMemorySessionStore())
    flow = OAuthFlow(_settings(), token_store, transport=_token_transport(calls))
    credential = SessionCredential(session_id="sid-7")
    credential.bind_tokens(realm_id="9", access_token="old", refresh_token="R0")

    asyncio.run(flow.refresh(credential))
    assert credential.access_token == "AT"
    assert parse_qs(calls[0].content.decode())["refresh_token"] == ["R0"]

    asyncio.run(flow.logout(credential))
    assert not credential.is_authenticated
    assert asyncio.run(token_store.load("sid-7")).access_token is None


def test_token_store_ignores_foreign_or_corrupt_records() -> None:
    store = InMemorySessionStore()
    store.set("sid-8", "not json")
    store.set("sid-9", SessionCredential(session_id="other", access_token="x").model_dump_json())
    token_store = TokenStore(store)

    assert asyncio.run(token_store.load("sid-8")).access_token is None
    assert asyncio.run(token_store.load("sid-9")).access_token is None
