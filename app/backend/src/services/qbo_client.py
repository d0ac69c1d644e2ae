"""Thin client for the QuickBooks Online accounting API."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from app.backend.src.core.errors import NotAuthenticated, UpstreamError
from app.backend.src.services.metrics import upstream_requests_total

LOGGER = structlog.get_logger(__name__)

_BODY_LOG_LIMIT = 500


class AccountingClient:
    """Authenticated ``query`` and ``create`` calls for one company (realm).

    Calls are stateless: no retry, no caching. A 401 surfaces as an
    :class:`UpstreamError` whose ``is_auth_failure`` is true; deciding to
    re-authenticate is the caller's job.
    """

    def __init__(
        self,
        *,
        realm_id: str | None,
        access_token: str | None,
        base_url: str,
        minor_version: int | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not realm_id or not access_token:
            raise NotAuthenticated()
        self.realm_id = realm_id
        self._access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.minor_version = minor_version
        self.timeout = timeout
        self._transport = transport

    @property
    def company_url(self) -> str:
        return f"{self.base_url}/v3/company/{self.realm_id}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }

    def _params(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        params = dict(extra or {})
        if self.minor_version:
            params["minorversion"] = str(self.minor_version)
        return params

    async def query(self, resource_query: str) -> dict[str, Any]:
        """Run a query-language statement and return the decoded response."""

        return await self._send(
            "query",
            "GET",
            f"{self.company_url}/query",
            params=self._params({"query": resource_query}),
        )

    async def create(self, resource_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST ``payload`` to the resource endpoint (also used for sparse updates)."""

        return await self._send(
            f"create_{resource_type.lower()}",
            "POST",
            f"{self.company_url}/{resource_type.lower()}",
            params=self._params(),
            json=payload,
        )

    async def query_entities(self, entity: str, where: str | None = None) -> list[dict[str, Any]]:
        """Return ``QueryResponse[entity]`` for a ``select *`` over ``entity``."""

        statement = f"select * from {entity}"
        if where:
            statement = f"{statement} where {where}"
        statement = f"{statement} maxresults 1000"
        response = await self.query(statement)
        return list((response.get("QueryResponse") or {}).get(entity) or [])

    async def _send(self, operation: str, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            upstream_requests_total.labels(operation=operation, outcome="transport_error").inc()
            LOGGER.error("accounting_api_unreachable", operation=operation, error=str(exc))
            raise UpstreamError(None, str(exc)) from exc

        if not response.is_success:
            upstream_requests_total.labels(operation=operation, outcome=str(response.status_code)).inc()
            LOGGER.warning(
                "accounting_api_error",
                operation=operation,
                status=response.status_code,
                body=response.text[:_BODY_LOG_LIMIT],
            )
            raise UpstreamError(response.status_code, response.text)

        upstream_requests_total.labels(operation=operation, outcome="ok").inc()
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(response.status_code, response.text) from exc


__all__ = ["AccountingClient"]
