"""Per-session caches of accounting reference data.

One :class:`ReferenceDataCache` exists per resource kind and per session.
Each cache owns its own ``data``/``loading``/``error``/``fetched`` state.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

import structlog

from app.backend.src.core.errors import UpstreamError
from app.backend.src.services.qbo_client import AccountingClient

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ResourceSpec:
    kind: str
    entity: str
    where: str | None = None


RESOURCES: dict[str, ResourceSpec] = {
    spec.kind: spec
    for spec in (
        ResourceSpec("customers", "Customer", "Active = true"),
        ResourceSpec("items", "Item", "Active = true"),
        ResourceSpec("tax-codes", "TaxCode"),
        ResourceSpec("tax-rates", "TaxRate"),
        ResourceSpec("terms", "Term"),
        ResourceSpec("invoices", "Invoice"),
    )
}


class ReferenceDataCache:
    """Lazily loaded list of one entity type."""

    def __init__(self, spec: ResourceSpec) -> None:
        self.spec = spec
        self.data: list[dict[str, Any]] = []
        self.loading = False
        self.error: str | None = None
        self.fetched = False
        self._lock = asyncio.Lock()

    async def fetch(self, client: AccountingClient) -> list[dict[str, Any]]:
        """Populate the cache unless it already holds data."""

        async with self._lock:
            if self.fetched and self.data:
                return self.data
            return await self._load(client)

    async def refetch(self, client: AccountingClient) -> list[dict[str, Any]]:
        """Drop the cached entries and reload them."""

        async with self._lock:
            self.fetched = False
            self.data = []
            return await self._load(client)

    def update_item(self, item_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        """Merge ``patch`` into the cached entry with ``Id == item_id``."""

        for index, entry in enumerate(self.data):
            if str(entry.get("Id")) == str(item_id):
                merged = {**entry, **patch}
                self.data[index] = merged
                return merged
        return None

    def add_item(self, entry: dict[str, Any]) -> None:
        self.data.append(entry)

    async def _load(self, client: AccountingClient) -> list[dict[str, Any]]:
        self.loading = True
        self.error = None
        try:
            self.data = await client.query_entities(self.spec.entity, self.spec.where)
            self.fetched = True
            LOGGER.info("reference_data_loaded", kind=self.spec.kind, count=len(self.data))
            return self.data
        except UpstreamError as exc:
            self.error = f"Failed to fetch {self.spec.kind}: {exc}"
            raise
        finally:
            self.loading = False

    def state(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "loading": self.loading,
            "error": self.error,
            "fetched": self.fetched,
        }


class ReferenceDataSet:
    """One cache per resource kind for a single session."""

    def __init__(self) -> None:
        self.caches = {kind: ReferenceDataCache(spec) for kind, spec in RESOURCES.items()}

    def __getitem__(self, kind: str) -> ReferenceDataCache:
        return self.caches[kind]

    async def tax_data(
        self, client: AccountingClient
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        tax_codes = await self.caches["tax-codes"].fetch(client)
        tax_rates = await self.caches["tax-rates"].fetch(client)
        return tax_codes, tax_rates


class ReferenceDataRegistry:
    """Keeps the most recently used sessions' reference data in memory."""

    def __init__(self, *, max_sessions: int = 512) -> None:
        self.max_sessions = max_sessions
        self._sets: OrderedDict[str, ReferenceDataSet] = OrderedDict()

    def for_session(self, session_id: str) -> ReferenceDataSet:
        data_set = self._sets.get(session_id)
        if data_set is None:
            data_set = ReferenceDataSet()
            self._sets[session_id] = data_set
            while len(self._sets) > self.max_sessions:
                self._sets.popitem(last=False)
        else:
            self._sets.move_to_end(session_id)
        return data_set

    def drop(self, session_id: str) -> None:
        self._sets.pop(session_id, None)


__all__ = [
    "RESOURCES",
    "ReferenceDataCache",
    "ReferenceDataRegistry",
    "ReferenceDataSet",
    "ResourceSpec",
]
