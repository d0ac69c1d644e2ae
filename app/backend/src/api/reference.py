"""Reference data (customers, items, tax codes, tax rates, terms) endpoints."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.backend.src.core.errors import InvalidCustomer
from app.backend.src.core.security import get_accounting_client, get_reference_data
from app.backend.src.services.qbo_client import AccountingClient
from app.backend.src.services.reference_data import RESOURCES, ReferenceDataSet
from app.backend.src.services.tax import available_tax_codes, default_tax_code_id

LOGGER = structlog.get_logger(__name__)

router = APIRouter(prefix="/reference", tags=["reference"])

REFERENCE_KINDS = tuple(kind for kind in RESOURCES if kind != "invoices")


class BillingAddress(BaseModel):
    line1: str | None = None
    line2: str | None = None
    line3: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country: str | None = None


class CustomerCreate(BaseModel):
    display_name: str | None = None
    title: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    company_name: str | None = None
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    tax_identifier: str | None = None
    billing_address: BillingAddress | None = None


def _customer_payload(body: CustomerCreate) -> dict[str, Any]:
    display_name = (body.display_name or "").strip()
    family_name = (body.family_name or "").strip()
    if not display_name and not family_name:
        raise InvalidCustomer()
    if not display_name:
        display_name = " ".join(
            part for part in ((body.given_name or "").strip(), family_name) if part
        )

    payload: dict[str, Any] = {"DisplayName": display_name}
    for key, value in (
        ("Title", body.title),
        ("GivenName", body.given_name),
        ("FamilyName", body.family_name),
        ("CompanyName", body.company_name),
        ("PrimaryTaxIdentifier", body.tax_identifier),
    ):
        if value:
            payload[key] = value
    if body.email:
        payload["PrimaryEmailAddr"] = {"Address": body.email}
    if body.phone:
        payload["PrimaryPhone"] = {"FreeFormNumber": body.phone}
    if body.mobile:
        payload["Mobile"] = {"FreeFormNumber": body.mobile}
    if body.billing_address:
        address = body.billing_address
        bill_addr = {
            key: value
            for key, value in (
                ("Line1", address.line1),
                ("Line2", address.line2),
                ("Line3", address.line3),
                ("City", address.city),
                ("PostalCode", address.postal_code),
                ("Country", address.country),
            )
            if value
        }
        if bill_addr:
            payload["BillAddr"] = bill_addr
    return payload


@router.get("/{kind}")
async def list_reference_data(
    kind: str,
    refresh: bool = False,
    client: AccountingClient = Depends(get_accounting_client),
    data: ReferenceDataSet = Depends(get_reference_data),
) -> dict[str, Any]:
    """Return cached reference data, loading it on first use."""

    if kind not in REFERENCE_KINDS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown resource")

    cache = data[kind]
    entries = await (cache.refetch(client) if refresh else cache.fetch(client))
    body: dict[str, Any] = {"kind": kind, **cache.state(), "data": entries}
    if kind == "tax-codes":
        body["available_tax_codes"] = available_tax_codes(entries)
        body["default_tax_code_id"] = default_tax_code_id(entries)
    return body


@router.post("/customers", status_code=status.HTTP_201_CREATED)
async def create_customer(
    body: CustomerCreate,
    client: AccountingClient = Depends(get_accounting_client),
    data: ReferenceDataSet = Depends(get_reference_data),
) -> dict[str, Any]:
    payload = _customer_payload(body)
    response = await client.create("Customer", payload)
    customer = response.get("Customer") or response
    data["customers"].add_item(customer)
    LOGGER.info("customer_created", customer_id=customer.get("Id"))
    return customer
