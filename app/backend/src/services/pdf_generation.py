"""80mm receipt PDFs for download or direct thermal printing."""

from __future__ import annotations

import textwrap
from dataclasses import dataclass
from decimal import Decimal
from io import BytesIO
from time import perf_counter

from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from app.backend.src.services.metrics import receipt_render_seconds
from app.backend.src.services.receipt import (
    Receipt,
    ReceiptContext,
    format_date,
    format_money,
    format_quantity,
)

PAGE_WIDTH = 80 * mm
MARGIN = 4 * mm
LINE_HEIGHT = 11
BODY_FONT = ("Courier-Bold", 8)
WRAP_CHARS = 30


@dataclass(frozen=True, slots=True)
class ReceiptPdf:
    """A rendered receipt PDF."""

    filename: str
    content: bytes


def _build_filename(receipt: Receipt) -> str:
    number = receipt.invoice_no.replace(" ", "_") or "draft"
    return f"Invoice_{number}.pdf"


def _layout(receipt: Receipt, ctx: ReceiptContext) -> list[tuple[str, str, str]]:
    """Return ``(kind, left, right)`` rows; kind drives font and alignment."""

    def money(value: Decimal) -> str:
        return format_money(value, ctx.currency_symbol)

    merchant = ctx.merchant
    rows: list[tuple[str, str, str]] = [("title", merchant.name, "")]
    rows += [("center", line, "") for line in merchant.address_lines]
    rows += [("center", extra, "") for extra in (merchant.phone, merchant.email) if extra]
    if merchant.tax_number:
        rows.append(("center", f"VAT No. {merchant.tax_number}", ""))
    rows += [("rule", "", ""), ("heading", "TAX INVOICE", ""), ("rule", "", "")]

    bill_to = receipt.bill_to
    rows += [("bold", "BILL TO:", ""), ("text", bill_to.name, "")]
    if bill_to.company_name:
        rows.append(("text", bill_to.company_name, ""))
    rows += [("text", line, "") for line in bill_to.address_lines]
    if bill_to.tax_number:
        rows.append(("text", f"VAT: {bill_to.tax_number}", ""))

    rows += [
        ("rule", "", ""),
        ("pair", "Invoice No:", receipt.invoice_no),
        ("pair", "Date:", format_date(receipt.invoice_date)),
        ("pair", "Due Date:", format_date(receipt.due_date)),
        ("pair", "Terms:", receipt.terms),
        ("rule", "", ""),
        ("bold_pair", "DESCRIPTION", "AMOUNT"),
    ]
    for line in receipt.lines:
        parts = line.description.splitlines() or [""]
        first = f"{parts[0]} x {format_quantity(line.quantity)}"
        wrapped = textwrap.wrap(first, WRAP_CHARS) or [""]
        rows.append(("pair", wrapped[0], money(line.amount)))
        rows += [("text", extra, "") for extra in wrapped[1:]]
        for part in parts[1:]:
            rows += [("text", extra, "") for extra in textwrap.wrap(part, WRAP_CHARS)]

    rows += [
        ("rule", "", ""),
        ("pair", "SUBTOTAL:", money(receipt.subtotal)),
        ("pair", f"{receipt.tax_label}:", money(receipt.tax_total)),
        ("bold_pair", "TOTAL:", money(receipt.total)),
        ("rule", "", ""),
        ("bold_pair", "BALANCE DUE:", money(receipt.balance_due)),
        ("rule", "", ""),
        ("heading", "PAYMENT DETAILS", ""),
    ]
    rows += [("center", line, "") for line in merchant.payment_lines]
    rows += [("blank", "", ""), ("center", "Thank you for your business!", "")]
    return rows


def render_receipt_pdf(receipt: Receipt, ctx: ReceiptContext) -> ReceiptPdf:
    """Render ``receipt`` onto a single 80mm-wide page sized to its content."""

    start = perf_counter()
    rows = _layout(receipt, ctx)
    height = 2 * MARGIN + LINE_HEIGHT * (len(rows) + 2)
    buffer = BytesIO()
    pdf_canvas = canvas.Canvas(buffer, pagesize=(PAGE_WIDTH, height))
    pdf_canvas.setTitle(f"Invoice #{receipt.invoice_no}")

    center_x = PAGE_WIDTH / 2
    right_x = PAGE_WIDTH - MARGIN
    y = height - MARGIN - LINE_HEIGHT
    for kind, left, right in rows:
        if kind == "title":
            pdf_canvas.setFont("Courier-Bold", 12)
            pdf_canvas.drawCentredString(center_x, y, left)
        elif kind in {"center", "heading"}:
            pdf_canvas.setFont("Courier-Bold", 9 if kind == "heading" else 7)
            pdf_canvas.drawCentredString(center_x, y, left)
        elif kind == "rule":
            pdf_canvas.setDash(2, 2)
            pdf_canvas.line(MARGIN, y + 4, right_x, y + 4)
            pdf_canvas.setDash()
        elif kind in {"pair", "bold_pair"}:
            pdf_canvas.setFont("Courier-Bold", 9 if kind == "bold_pair" else BODY_FONT[1])
            pdf_canvas.drawString(MARGIN, y, left)
            pdf_canvas.drawRightString(right_x, y, right)
        elif kind in {"text", "bold"}:
            pdf_canvas.setFont(*BODY_FONT)
            pdf_canvas.drawString(MARGIN, y, left)
        y -= LINE_HEIGHT

    pdf_canvas.showPage()
    pdf_canvas.save()
    receipt_render_seconds.labels(format="pdf").observe(perf_counter() - start)
    return ReceiptPdf(filename=_build_filename(receipt), content=buffer.getvalue())


__all__ = ["ReceiptPdf", "render_receipt_pdf"]
