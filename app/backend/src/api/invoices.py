"""Invoice composition, submission, listing and receipt endpoints."""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from typing import Any, Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse, PlainTextResponse, Response
from pydantic import BaseModel

from app.backend.src.core.config import Settings
from app.backend.src.core.errors import InvoiceLocked
from app.backend.src.core.security import (
    get_accounting_client,
    get_reference_data,
    get_settings_dependency,
)
from app.backend.src.services.invoice_engine import (
    InvoiceDraft,
    InvoiceTotals,
    LineEdit,
    apply_line_edit,
    build_invoice_payload,
    compute_totals,
    invoice_status,
    is_paid,
    next_invoice_number,
    to_cents,
    validate_for_submission,
    with_due_date,
)
from app.backend.src.services.pdf_generation import render_receipt_pdf
from app.backend.src.services.qbo_client import AccountingClient
from app.backend.src.services.receipt import (
    Receipt,
    ReceiptContext,
    receipt_from_draft,
    receipt_from_invoice,
    render_receipt_html,
    render_receipt_text,
)
from app.backend.src.services.reference_data import ReferenceDataSet
from app.backend.src.services.tax import default_tax_code_id

LOGGER = structlog.get_logger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])

_INVOICE_ID = re.compile(r"^\d+$")

StatusFilter = Literal["all", "paid", "unpaid", "overdue"]
ReceiptFormat = Literal["html", "pdf", "text"]


class PreviewRequest(BaseModel):
    draft: InvoiceDraft
    edit: LineEdit | None = None


class ReceiptRequest(BaseModel):
    draft: InvoiceDraft


def _money(value: Decimal) -> float:
    return float(to_cents(value))


def _serialize_totals(totals: InvoiceTotals) -> dict[str, Any]:
    return {
        "lines": [
            {
                "id": entry.line.id,
                "tax_rate": float(entry.tax_rate),
                "amount": _money(entry.amount),
                "tax_amount": _money(entry.tax_amount),
                "gross": _money(entry.gross),
            }
            for entry in totals.lines
        ],
        "subtotal": _money(totals.subtotal),
        "tax_total": _money(totals.tax_total),
        "grand_total": _money(totals.grand_total),
    }


def _summarize(invoice: dict[str, Any], today: date) -> dict[str, Any]:
    customer = invoice.get("CustomerRef") or {}
    return {
        "id": invoice.get("Id"),
        "doc_number": invoice.get("DocNumber"),
        "customer_id": customer.get("value"),
        "customer_name": customer.get("name"),
        "txn_date": invoice.get("TxnDate"),
        "due_date": invoice.get("DueDate"),
        "total": float(invoice.get("TotalAmt") or 0),
        "balance": float(invoice.get("Balance") or 0),
        "status": invoice_status(invoice, today),
        "locked": is_paid(invoice),
    }


def _check_invoice_id(invoice_id: str) -> None:
    if not _INVOICE_ID.match(invoice_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")


async def _fetch_invoice(client: AccountingClient, invoice_id: str) -> dict[str, Any]:
    _check_invoice_id(invoice_id)
    matches = await client.query_entities("Invoice", f"Id = '{invoice_id}'")
    if not matches:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return matches[0]


async def _receipt_context(
    settings: Settings, data: ReferenceDataSet, client: AccountingClient
) -> ReceiptContext:
    tax_codes, tax_rates = await data.tax_data(client)
    return ReceiptContext(
        merchant=settings.merchant,
        tax_codes=tax_codes,
        tax_rates=tax_rates,
        customers=await data["customers"].fetch(client),
        terms=await data["terms"].fetch(client),
        currency_symbol=settings.currency_symbol,
    )


def _receipt_response(receipt: Receipt, ctx: ReceiptContext, fmt: ReceiptFormat) -> Response:
    if fmt == "pdf":
        pdf = render_receipt_pdf(receipt, ctx)
        return Response(
            content=pdf.content,
            media_type="application/pdf",
            headers={"Content-Disposition": f'inline; filename="{pdf.filename}"'},
        )
    if fmt == "text":
        return PlainTextResponse(render_receipt_text(receipt, ctx))
    return HTMLResponse(render_receipt_html(receipt, ctx))


async def _prepare_submission(
    draft: InvoiceDraft, data: ReferenceDataSet, client: AccountingClient
) -> tuple[InvoiceDraft, InvoiceTotals, dict[str, Any]]:
    """Validate, then price the draft and build the request body."""

    validate_for_submission(draft)
    tax_codes, tax_rates = await data.tax_data(client)
    draft = with_due_date(draft, await data["terms"].fetch(client))
    totals = compute_totals(draft.line_items, tax_codes, tax_rates)
    customers = await data["customers"].fetch(client)
    customer = next(
        (entry for entry in customers if str(entry.get("Id")) == draft.customer_id), {}
    )
    payload = build_invoice_payload(
        draft, totals, customer_name=customer.get("DisplayName") or ""
    )
    return draft, totals, payload


@router.get("")
async def list_invoices(
    status_filter: StatusFilter = Query(default="all", alias="status"),
    refresh: bool = False,
    client: AccountingClient = Depends(get_accounting_client),
    data: ReferenceDataSet = Depends(get_reference_data),
) -> dict[str, Any]:
    """List remote invoices with paid/unpaid/overdue status and totals."""

    cache = data["invoices"]
    invoices = await (cache.refetch(client) if refresh else cache.fetch(client))
    today = date.today()
    rows = [_summarize(invoice, today) for invoice in invoices]
    if status_filter != "all":
        rows = [row for row in rows if row["status"] == status_filter]
    return {
        "invoices": rows,
        "summary": {
            "count": len(rows),
            "total": round(sum(row["total"] for row in rows), 2),
            "outstanding": round(sum(row["balance"] for row in rows), 2),
        },
        "next_invoice_number": next_invoice_number(invoices),
    }


@router.post("/preview")
async def preview_invoice(
    body: PreviewRequest,
    client: AccountingClient = Depends(get_accounting_client),
    data: ReferenceDataSet = Depends(get_reference_data),
) -> dict[str, Any]:
    """Apply one edit to the draft and return it with recomputed totals."""

    tax_codes, tax_rates = await data.tax_data(client)
    draft = body.draft
    if body.edit is not None:
        catalog = await data["items"].fetch(client)
        try:
            draft, totals = apply_line_edit(
                draft, body.edit, catalog=catalog, tax_codes=tax_codes, tax_rates=tax_rates
            )
        except KeyError as exc:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="Line item not found"
            ) from exc
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
            ) from exc
    else:
        totals = compute_totals(draft.line_items, tax_codes, tax_rates)
    draft = with_due_date(draft, await data["terms"].fetch(client))
    return {
        "draft": draft.model_dump(mode="json"),
        "totals": _serialize_totals(totals),
        "default_tax_code_id": default_tax_code_id(tax_codes),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_invoice(
    draft: InvoiceDraft,
    client: AccountingClient = Depends(get_accounting_client),
    data: ReferenceDataSet = Depends(get_reference_data),
) -> dict[str, Any]:
    draft, totals, payload = await _prepare_submission(draft, data, client)
    response = await client.create("Invoice", payload)
    invoice = response.get("Invoice") or response
    data["invoices"].add_item(invoice)
    LOGGER.info(
        "invoice_created",
        invoice_id=invoice.get("Id"),
        doc_number=invoice.get("DocNumber"),
        lines=len(draft.line_items),
    )
    return {"invoice": invoice, "totals": _serialize_totals(totals)}


@router.post("/receipt")
async def draft_receipt(
    body: ReceiptRequest,
    fmt: ReceiptFormat = Query(default="html", alias="format"),
    settings: Settings = Depends(get_settings_dependency),
    client: AccountingClient = Depends(get_accounting_client),
    data: ReferenceDataSet = Depends(get_reference_data),
) -> Response:
    """Render a receipt for a draft that has not been submitted."""

    ctx = await _receipt_context(settings, data, client)
    draft = with_due_date(body.draft, ctx.terms)
    return _receipt_response(receipt_from_draft(draft, ctx), ctx, fmt)


@router.get("/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    client: AccountingClient = Depends(get_accounting_client),
) -> dict[str, Any]:
    invoice = await _fetch_invoice(client, invoice_id)
    return {"invoice": invoice, **_summarize(invoice, date.today())}


@router.put("/{invoice_id}")
async def update_invoice(
    invoice_id: str,
    draft: InvoiceDraft,
    client: AccountingClient = Depends(get_accounting_client),
    data: ReferenceDataSet = Depends(get_reference_data),
) -> dict[str, Any]:
    """Replace an unpaid invoice's contents; paid invoices are read-only."""

    validate_for_submission(draft)
    current = await _fetch_invoice(client, invoice_id)
    if is_paid(current):
        raise InvoiceLocked(invoice_id)

    draft, totals, payload = await _prepare_submission(draft, data, client)
    payload.update(
        {"Id": current["Id"], "SyncToken": current.get("SyncToken", "0"), "sparse": True}
    )
    response = await client.create("Invoice", payload)
    invoice = response.get("Invoice") or response
    data["invoices"].update_item(invoice_id, invoice)
    LOGGER.info("invoice_updated", invoice_id=invoice_id, sync_token=invoice.get("SyncToken"))
    return {"invoice": invoice, "totals": _serialize_totals(totals)}


@router.get("/{invoice_id}/receipt")
async def invoice_receipt(
    invoice_id: str,
    fmt: ReceiptFormat = Query(default="html", alias="format"),
    settings: Settings = Depends(get_settings_dependency),
    client: AccountingClient = Depends(get_accounting_client),
    data: ReferenceDataSet = Depends(get_reference_data),
) -> Response:
    """Render the 80mm receipt for a remote invoice."""

    invoice = await _fetch_invoice(client, invoice_id)
    ctx = await _receipt_context(settings, data, client)
    return _receipt_response(receipt_from_invoice(invoice, ctx), ctx, fmt)
