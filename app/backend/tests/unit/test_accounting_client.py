"""Unit tests for the accounting API client and reference data caches."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[4]))

import httpx
import pytest

from app.backend.src.core.errors import NotAuthenticated, UpstreamError
from app.backend.src.services.qbo_client import AccountingClient
from app.backend.src.services.reference_data import (
    ReferenceDataCache,
    ReferenceDataRegistry,
    RESOURCES,
)

BASE_URL = "https://sandbox-quickbooks.api.intuit.com"


def _client(handler) -> AccountingClient:  # type: ignore[no-untyped-def]
    return AccountingClient(
        realm_id="9",
        access_token="AT",
        base_url=BASE_URL,
        minor_version=75,
        transport=httpx.MockTransport(handler),
    )


def test_client_requires_realm_and_token() -> None:
    with pytest.raises(NotAuthenticated):
        AccountingClient(realm_id=None, access_token="AT", base_url=BASE_URL)
    with pytest.raises(NotAuthenticated):
        AccountingClient(realm_id="9", access_token="", base_url=BASE_URL)


def test_query_sends_bearer_token_and_statement() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"QueryResponse": {"Customer": [{"Id": "1"}]}})

    customers = asyncio.run(_client(handler).query_entities("Customer", "Active = true"))

    assert customers == [{"Id": "1"}]
    request = seen[0]
    assert request.url.path == "/v3/company/9/query"
    assert request.url.params["query"] == "select * from Customer where Active = true maxresults 1000"
    assert request.url.params["minorversion"] == "75"
    assert request.headers["Authorization"] == "Bearer AT"


def test_create_posts_to_resource_endpoint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/v3/company/9/invoice"
        return httpx.Response(200, json={"Invoice": {"Id": "130"}})

    response = asyncio.run(_client(handler).create("Invoice", {"Line": []}))

    assert response["Invoice"]["Id"] == "130"


def test_unauthorized_response_is_flagged_for_reauthentication() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="AuthenticationFailed")

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(_client(handler).query("select * from Item"))

    assert excinfo.value.status == 401
    assert excinfo.value.is_auth_failure
    assert excinfo.value.body == "AuthenticationFailed"


def test_server_error_is_not_an_auth_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="busy")

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(_client(handler).query("select * from Item"))

    assert excinfo.value.status == 503
    assert not excinfo.value.is_auth_failure


def test_reference_cache_fetch_refetch_and_patch() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["query"])
        return httpx.Response(
            200,
            json={"QueryResponse": {"Item": [{"Id": "42", "Name": f"Plank {len(calls)}"}]}},
        )

    client = _client(handler)
    cache = ReferenceDataCache(RESOURCES["items"])

    first = asyncio.run(cache.fetch(client))
    again = asyncio.run(cache.fetch(client))
    assert first == again == [{"Id": "42", "Name": "Plank 1"}]
    assert len(calls) == 1

    reloaded = asyncio.run(cache.refetch(client))
    assert reloaded[0]["Name"] == "Plank 2"
    assert len(calls) == 2

    patched = cache.update_item("42", {"UnitPrice": 10})
    assert patched == {"Id": "42", "Name": "Plank 2", "UnitPrice": 10}
    assert cache.update_item("missing", {"UnitPrice": 1}) is None
    assert cache.state()["fetched"] is True


def test_reference_cache_records_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    cache = ReferenceDataCache(RESOURCES["terms"])

    with pytest.raises(UpstreamError):
        asyncio.run(cache.fetch(_client(handler)))

    state = cache.state()
    assert state["error"] is not None
    assert state["loading"] is False
    assert state["fetched"] is False


def test_registry_keeps_one_set_per_session() -> None:
    registry = ReferenceDataRegistry(max_sessions=2)
    first = registry.for_session("a")
    assert registry.for_session("a") is first

    registry.for_session("b")
    registry.for_session("c")
    assert registry.for_session("a") is not first

    registry.drop("c")
    assert registry.for_session("b")["customers"].data == []
