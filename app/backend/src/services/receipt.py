"""Thermal receipt (80mm) rendering for composed and remote invoices.

Everything the renderer needs travels in a :class:`ReceiptContext` passed to
each call. Tax rates on the receipt come from :func:`resolve_tax_rate`, the
same function the totals engine uses.
"""

from __future__ import annotations

import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from time import perf_counter
from typing import Any

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.backend.src.core.config import MerchantProfile
from app.backend.src.services.invoice_engine import InvoiceDraft, compute_totals, to_cents
from app.backend.src.services.metrics import receipt_render_seconds
from app.backend.src.services.tax import format_rate_percent, resolve_tax_rate

LOGGER = structlog.get_logger(__name__)

_TEMPLATES_DIR = Path(__file__).parent / "receipt_templates"
_ENV = Environment(
    loader=FileSystemLoader(_TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
)

TEXT_WIDTH = 48
DEFAULT_TERMS = "Net 30"
UNKNOWN_CUSTOMER = "Unknown Customer"


@dataclass(frozen=True, slots=True)
class ReceiptContext:
    """Lookup data and presentation settings for one render call."""

    merchant: MerchantProfile
    tax_codes: Sequence[Mapping[str, Any]] = ()
    tax_rates: Sequence[Mapping[str, Any]] = ()
    customers: Sequence[Mapping[str, Any]] = ()
    terms: Sequence[Mapping[str, Any]] = ()
    currency_symbol: str = "R"

    def find_customer(self, customer_id: str | None) -> Mapping[str, Any] | None:
        if not customer_id:
            return None
        for customer in self.customers:
            if str(customer.get("Id")) == str(customer_id):
                return customer
        return None

    def find_term_name(self, term_id: str | None) -> str | None:
        if not term_id:
            return None
        for term in self.terms:
            if str(term.get("Id")) == str(term_id):
                return term.get("Name")
        return None


@dataclass(frozen=True, slots=True)
class BillTo:
    name: str
    company_name: str | None = None
    address_lines: tuple[str, ...] = ()
    tax_number: str | None = None


@dataclass(frozen=True, slots=True)
class ReceiptLine:
    description: str
    quantity: Decimal
    amount: Decimal


@dataclass(frozen=True, slots=True)
class Receipt:
    invoice_no: str
    invoice_date: date | None
    due_date: date | None
    terms: str
    bill_to: BillTo
    lines: tuple[ReceiptLine, ...]
    subtotal: Decimal
    tax_total: Decimal
    total: Decimal
    balance_due: Decimal
    tax_rates: tuple[Decimal, ...] = field(default=())

    @property
    def tax_label(self) -> str:
        if not self.tax_rates:
            return "VAT"
        return "VAT @ " + " / ".join(format_rate_percent(rate) for rate in self.tax_rates)


def format_money(value: Decimal, symbol: str = "R") -> str:
    """Two decimals, thousands separators, currency prefix."""

    return f"{symbol}{to_cents(value):,.2f}"


def format_date(value: date | None) -> str:
    return value.strftime("%d/%m/%Y") if value else ""


def format_quantity(value: Decimal) -> str:
    text = format(value.normalize(), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError):
        return Decimal(0)


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _address_lines(address: Mapping[str, Any] | None) -> tuple[str, ...]:
    if not address:
        return ()
    street = ", ".join(
        str(address[key]) for key in ("Line1", "Line2", "Line3") if address.get(key)
    )
    lines = [street] if street else []
    for key in ("City", "PostalCode"):
        if address.get(key):
            lines.append(str(address[key]))
    return tuple(lines)


def _bill_to(
    customer: Mapping[str, Any] | None,
    *,
    fallback_name: str | None = None,
    address: Mapping[str, Any] | None = None,
) -> BillTo:
    customer = customer or {}
    return BillTo(
        name=customer.get("DisplayName") or fallback_name or UNKNOWN_CUSTOMER,
        company_name=customer.get("CompanyName") or None,
        address_lines=_address_lines(address or customer.get("BillAddr")),
        tax_number=customer.get("PrimaryTaxIdentifier") or None,
    )


def receipt_from_draft(draft: InvoiceDraft, ctx: ReceiptContext) -> Receipt:
    """Build a receipt from the invoice the clerk just composed."""

    totals = compute_totals(draft.line_items, ctx.tax_codes, ctx.tax_rates)
    lines = []
    for entry in totals.lines:
        line = entry.line
        description = line.product_name or line.description or ""
        if line.product_name and line.description:
            description = f"{line.product_name}\n{line.description}"
        lines.append(ReceiptLine(description=description, quantity=line.quantity, amount=entry.amount))

    return Receipt(
        invoice_no=draft.invoice_no,
        invoice_date=draft.invoice_date,
        due_date=draft.due_date,
        terms=draft.terms,
        bill_to=_bill_to(ctx.find_customer(draft.customer_id)),
        lines=tuple(lines),
        subtotal=totals.subtotal,
        tax_total=totals.tax_total,
        total=totals.grand_total,
        balance_due=totals.grand_total,
        tax_rates=totals.tax_rates,
    )


def _remote_terms(invoice: Mapping[str, Any], ctx: ReceiptContext) -> str:
    sales_term = invoice.get("SalesTermRef") or {}
    name = sales_term.get("name") or ctx.find_term_name(sales_term.get("value"))
    if name:
        return name
    for custom in invoice.get("CustomField") or []:
        if "term" in str(custom.get("Name", "")).lower() and custom.get("StringValue"):
            return custom["StringValue"]
    return DEFAULT_TERMS


def receipt_from_invoice(invoice: Mapping[str, Any], ctx: ReceiptContext) -> Receipt:
    """Build a receipt from an invoice fetched from the accounting API.

    Line amounts and totals are taken from the remote record; the displayed
    tax rate is resolved per line from its tax code.
    """

    lines = []
    rates = set()
    computed_tax = Decimal(0)
    for raw in invoice.get("Line") or []:
        detail = raw.get("SalesItemLineDetail")
        if raw.get("DetailType") != "SalesItemLineDetail" or not detail:
            continue
        amount = _decimal(raw.get("Amount"))
        tax_code_id = (detail.get("TaxCodeRef") or {}).get("value")
        rate = resolve_tax_rate(tax_code_id, ctx.tax_codes, ctx.tax_rates)
        rates.add(rate)
        computed_tax += amount * rate
        lines.append(
            ReceiptLine(
                description=raw.get("Description") or (detail.get("ItemRef") or {}).get("name") or "",
                quantity=_decimal(detail.get("Qty", 1)),
                amount=amount,
            )
        )

    tax_detail = invoice.get("TxnTaxDetail") or {}
    tax_total = _decimal(tax_detail["TotalTax"]) if "TotalTax" in tax_detail else computed_tax
    subtotal = sum((line.amount for line in lines), Decimal(0))
    total = _decimal(invoice["TotalAmt"]) if "TotalAmt" in invoice else subtotal + tax_total
    customer_ref = invoice.get("CustomerRef") or {}

    return Receipt(
        invoice_no=str(invoice.get("DocNumber") or ""),
        invoice_date=_parse_date(invoice.get("TxnDate")),
        due_date=_parse_date(invoice.get("DueDate")),
        terms=_remote_terms(invoice, ctx),
        bill_to=_bill_to(
            ctx.find_customer(customer_ref.get("value")),
            fallback_name=customer_ref.get("name"),
            address=invoice.get("BillAddr"),
        ),
        lines=tuple(lines),
        subtotal=subtotal,
        tax_total=tax_total,
        total=total,
        balance_due=_decimal(invoice["Balance"]) if "Balance" in invoice else total,
        tax_rates=tuple(sorted(rates, reverse=True)),
    )


def render_receipt_html(receipt: Receipt, ctx: ReceiptContext) -> str:
    """Render the printable HTML document (auto-prints on load)."""

    start = perf_counter()
    template = _ENV.get_template("receipt.html")

    def money(value: Decimal) -> str:
        return format_money(value, ctx.currency_symbol)

    html = template.render(
        receipt=receipt,
        merchant=ctx.merchant,
        money=money,
        format_date=format_date,
        format_quantity=format_quantity,
    )
    receipt_render_seconds.labels(format="html").observe(perf_counter() - start)
    LOGGER.info("receipt_rendered", format="html", invoice_no=receipt.invoice_no)
    return html


def _row(label: str, value: str, width: int = TEXT_WIDTH) -> str:
    gap = max(1, width - len(label) - len(value))
    return f"{label}{' ' * gap}{value}"


def render_receipt_text(receipt: Receipt, ctx: ReceiptContext, *, width: int = TEXT_WIDTH) -> str:
    """Render a fixed-width plain-text receipt for raw thermal printing."""

    start = perf_counter()

    def money(value: Decimal) -> str:
        return format_money(value, ctx.currency_symbol)

    rule = "-" * width
    merchant = ctx.merchant
    out: list[str] = [merchant.name.center(width)]
    out += [line.center(width) for line in merchant.address_lines]
    for extra in (merchant.phone, merchant.email):
        if extra:
            out.append(extra.center(width))
    if merchant.tax_number:
        out.append(f"VAT No. {merchant.tax_number}".center(width))
    out += [rule, "TAX INVOICE".center(width), rule, "BILL TO:", receipt.bill_to.name]
    if receipt.bill_to.company_name:
        out.append(receipt.bill_to.company_name)
    out += list(receipt.bill_to.address_lines)
    if receipt.bill_to.tax_number:
        out.append(f"VAT: {receipt.bill_to.tax_number}")
    out += [
        rule,
        _row("Invoice No:", receipt.invoice_no, width),
        _row("Date:", format_date(receipt.invoice_date), width),
        _row("Due Date:", format_date(receipt.due_date), width),
        _row("Terms:", receipt.terms, width),
        rule,
        _row("DESCRIPTION", "AMOUNT", width),
    ]
    for line in receipt.lines:
        amount = money(line.amount)
        label = f"{line.description.splitlines()[0] if line.description else ''} x {format_quantity(line.quantity)}"
        wrapped = textwrap.wrap(label, width - len(amount) - 1) or [""]
        out.append(_row(wrapped[0], amount, width))
        out += wrapped[1:]
        for extra in line.description.splitlines()[1:]:
            out += textwrap.wrap(extra, width) or [""]
    out += [
        rule,
        _row("SUBTOTAL:", money(receipt.subtotal), width),
        _row(f"{receipt.tax_label}:", money(receipt.tax_total), width),
        _row("TOTAL:", money(receipt.total), width),
        "=" * width,
        _row("BALANCE DUE:", money(receipt.balance_due), width),
        "=" * width,
        "PAYMENT DETAILS".center(width),
    ]
    out += [line.center(width) for line in merchant.payment_lines]
    out += ["", "Thank you for your business!".center(width)]
    text = "\n".join(row.rstrip() for row in out) + "\n"
    receipt_render_seconds.labels(format="text").observe(perf_counter() - start)
    return text


__all__ = [
    "BillTo",
    "Receipt",
    "ReceiptContext",
    "ReceiptLine",
    "format_date",
    "format_money",
    "format_quantity",
    "receipt_from_draft",
    "receipt_from_invoice",
    "render_receipt_html",
    "render_receipt_text",
]
