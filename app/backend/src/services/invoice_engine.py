"""Invoice totals engine.

Line amounts and tax amounts are always derived from quantity, rate and the
resolved tax rate; they are never read from input. Every change to the line
list goes through :func:`compute_totals`, which recomputes all lines and all
aggregates from scratch, so ``grand_total == subtotal + tax_total`` holds after
every edit.
"""

from __future__ import annotations

import calendar
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from app.backend.src.core.errors import EmptyInvoice, MissingCustomer, MissingTaxSelection
from app.backend.src.services.tax import default_tax_code_id, resolve_tax_rate

CENT = Decimal("0.01")
DEFAULT_ITEM_REF = "1"
_TRAILING_DAYS = re.compile(r"(\d+)\s*$")


def _new_line_id() -> str:
    return uuid4().hex[:12]


class LineItem(BaseModel):
    """One editable invoice line. Amounts are computed, not stored."""

    id: str = Field(default_factory=_new_line_id)
    item_id: str | None = None
    product_name: str = ""
    sku: str | None = None
    description: str | None = None
    quantity: Decimal = Field(default=Decimal(1), ge=0)
    rate: Decimal = Field(default=Decimal(0), ge=0)
    tax_code_id: str | None = None


class InvoiceDraft(BaseModel):
    """Invoice being composed by the clerk."""

    customer_id: str | None = None
    invoice_no: str = ""
    invoice_date: date = Field(default_factory=date.today)
    due_date: date | None = None
    terms: str = "Net 30"
    term_id: str | None = None
    note_to_customer: str = "Thank you for your business."
    memo_on_statement: str = ""
    tags: list[str] = Field(default_factory=list)
    line_items: list[LineItem] = Field(default_factory=list)


class LineEdit(BaseModel):
    """A single clerk edit applied to a draft."""

    action: Literal["add", "update", "remove"] = "update"
    line_id: str | None = None
    field: Literal[
        "quantity", "rate", "tax_code_id", "item_id", "product_name", "sku", "description"
    ] | None = None
    value: Any = None


@dataclass(frozen=True, slots=True)
class PricedLine:
    line: LineItem
    tax_rate: Decimal
    amount: Decimal
    tax_amount: Decimal

    @property
    def gross(self) -> Decimal:
        return self.amount + self.tax_amount


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    lines: tuple[PricedLine, ...]
    subtotal: Decimal
    tax_total: Decimal
    grand_total: Decimal

    @property
    def tax_rates(self) -> tuple[Decimal, ...]:
        """Distinct resolved rates, highest first."""

        return tuple(sorted({entry.tax_rate for entry in self.lines}, reverse=True))


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_line(
    line: LineItem,
    tax_codes: Iterable[Mapping[str, Any]],
    tax_rates: Iterable[Mapping[str, Any]],
) -> PricedLine:
    rate = resolve_tax_rate(line.tax_code_id, tax_codes, tax_rates)
    amount = line.quantity * line.rate
    return PricedLine(line=line, tax_rate=rate, amount=amount, tax_amount=amount * rate)


def compute_totals(
    lines: Sequence[LineItem],
    tax_codes: Sequence[Mapping[str, Any]],
    tax_rates: Sequence[Mapping[str, Any]],
) -> InvoiceTotals:
    """Price every line and rebuild the three aggregates."""

    priced = tuple(compute_line(line, tax_codes, tax_rates) for line in lines)
    subtotal = sum((entry.amount for entry in priced), Decimal(0))
    tax_total = sum((entry.tax_amount for entry in priced), Decimal(0))
    return InvoiceTotals(
        lines=priced,
        subtotal=subtotal,
        tax_total=tax_total,
        grand_total=subtotal + tax_total,
    )


def _coerce_amount(value: Any, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"{field} must be a number") from exc
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"{field} must be a non-negative number")
    return amount


def _apply_catalog_item(
    line: LineItem, item_id: str, catalog: Iterable[Mapping[str, Any]]
) -> LineItem:
    updated = line.model_copy(update={"item_id": item_id})
    for item in catalog:
        if str(item.get("Id")) == item_id:
            return updated.model_copy(
                update={
                    "product_name": item.get("Name") or "",
                    "sku": item.get("Sku") or "",
                    "description": item.get("Description") or "",
                    "rate": _coerce_amount(item.get("UnitPrice") or 0, "rate"),
                }
            )
    return updated


def apply_line_edit(
    draft: InvoiceDraft,
    edit: LineEdit,
    *,
    catalog: Sequence[Mapping[str, Any]],
    tax_codes: Sequence[Mapping[str, Any]],
    tax_rates: Sequence[Mapping[str, Any]],
) -> tuple[InvoiceDraft, InvoiceTotals]:
    """Return the edited draft together with fully recomputed totals."""

    lines = list(draft.line_items)
    if edit.action == "add":
        lines.append(LineItem(tax_code_id=default_tax_code_id(tax_codes)))
    elif edit.action == "remove":
        lines = [line for line in lines if line.id != edit.line_id]
    else:
        if edit.field is None:
            raise ValueError("field is required for update edits")
        index = next((i for i, line in enumerate(lines) if line.id == edit.line_id), None)
        if index is None:
            raise KeyError(edit.line_id)
        line = lines[index]
        if edit.field == "item_id" and edit.value not in (None, ""):
            line = _apply_catalog_item(line, str(edit.value), catalog)
        elif edit.field == "item_id":
            line = line.model_copy(update={"item_id": None})
        elif edit.field in {"quantity", "rate"}:
            line = line.model_copy(update={edit.field: _coerce_amount(edit.value, edit.field)})
        else:
            value = None if edit.value in (None, "") else str(edit.value)
            if edit.field == "product_name":
                value = value or ""
            line = line.model_copy(update={edit.field: value})
        lines[index] = line

    updated = draft.model_copy(update={"line_items": lines})
    return updated, compute_totals(lines, tax_codes, tax_rates)


def _add_month(value: date) -> tuple[int, int]:
    if value.month == 12:
        return value.year + 1, 1
    return value.year, value.month + 1


def _as_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def derive_due_date(invoice_date: date, term: Mapping[str, Any] | None, term_name: str | None = None) -> date | None:
    """Due date from payment terms, or ``None`` when no rule applies.

    ``DueDays`` is a day offset; ``DayOfMonthDue`` pins the day in the month
    after the invoice date (clamped to that month's length); otherwise a
    trailing number in the term name (``"Net 30"``) is used as a day offset.
    Values that are not whole numbers (or a day of month below 1) are skipped.
    """

    term = term or {}
    due_days = _as_int(term.get("DueDays"))
    if due_days is not None:
        return invoice_date + timedelta(days=due_days)

    day_of_month = _as_int(term.get("DayOfMonthDue"))
    if day_of_month is not None and day_of_month >= 1:
        year, month = _add_month(invoice_date)
        last_day = calendar.monthrange(year, month)[1]
        return date(year, month, min(day_of_month, last_day))

    name = term.get("Name") or term_name or ""
    match = _TRAILING_DAYS.search(str(name))
    if match:
        return invoice_date + timedelta(days=int(match.group(1)))
    return None


def find_term(draft: InvoiceDraft, terms: Iterable[Mapping[str, Any]]) -> Mapping[str, Any] | None:
    for term in terms:
        if draft.term_id and str(term.get("Id")) == draft.term_id:
            return term
        if not draft.term_id and term.get("Name") == draft.terms:
            return term
    return None


def with_due_date(draft: InvoiceDraft, terms: Iterable[Mapping[str, Any]]) -> InvoiceDraft:
    """Fill ``due_date`` from the selected terms; keep the given one otherwise."""

    due = derive_due_date(draft.invoice_date, find_term(draft, terms), draft.terms)
    if due is None:
        return draft
    return draft.model_copy(update={"due_date": due})


def validate_for_submission(draft: InvoiceDraft) -> None:
    """Raise before any network call if the draft cannot be submitted."""

    if not draft.customer_id:
        raise MissingCustomer()
    if not draft.line_items:
        raise EmptyInvoice()
    untaxed = [line.id for line in draft.line_items if not line.tax_code_id]
    if untaxed:
        raise MissingTaxSelection(untaxed)


def build_invoice_payload(
    draft: InvoiceDraft, totals: InvoiceTotals, *, customer_name: str
) -> dict[str, Any]:
    """Translate a validated draft into an accounting API ``Invoice`` body."""

    lines = []
    for entry in totals.lines:
        line = entry.line
        detail: dict[str, Any] = {
            "ItemRef": {"value": line.item_id or DEFAULT_ITEM_REF, "name": line.product_name},
            "Qty": float(line.quantity),
            "UnitPrice": float(line.rate),
        }
        if line.tax_code_id:
            detail["TaxCodeRef"] = {"value": line.tax_code_id}
        body: dict[str, Any] = {
            "DetailType": "SalesItemLineDetail",
            "Amount": float(to_cents(entry.amount)),
            "SalesItemLineDetail": detail,
        }
        if line.description:
            body["Description"] = line.description
        lines.append(body)

    payload: dict[str, Any] = {
        "CustomerRef": {"value": draft.customer_id, "name": customer_name},
        "Line": lines,
        "TxnDate": draft.invoice_date.isoformat(),
    }
    if draft.due_date:
        payload["DueDate"] = draft.due_date.isoformat()
    if draft.invoice_no:
        payload["DocNumber"] = draft.invoice_no
    if draft.note_to_customer:
        payload["CustomerMemo"] = {"value": draft.note_to_customer}
    if draft.memo_on_statement:
        payload["PrivateNote"] = draft.memo_on_statement
    return payload


def next_invoice_number(invoices: Iterable[Mapping[str, Any]]) -> str:
    numbers = []
    for invoice in invoices:
        try:
            numbers.append(int(str(invoice.get("DocNumber") or "").strip()))
        except ValueError:
            continue
    return str(max(numbers) + 1) if numbers else "1"


def _balance(invoice: Mapping[str, Any]) -> Decimal:
    try:
        return Decimal(str(invoice.get("Balance", 0)))
    except (InvalidOperation, ValueError):
        return Decimal(0)


def is_paid(invoice: Mapping[str, Any]) -> bool:
    """A zero balance marks a remote invoice as settled and read-only."""

    return _balance(invoice) == 0


def invoice_status(invoice: Mapping[str, Any], today: date | None = None) -> str:
    if is_paid(invoice):
        return "paid"
    due_raw = invoice.get("DueDate")
    if due_raw:
        try:
            due = date.fromisoformat(str(due_raw)[:10])
        except ValueError:
            due = None
        if due is not None and due < (today or date.today()):
            return "overdue"
    return "unpaid"


__all__ = [
    "InvoiceDraft",
    "InvoiceTotals",
    "LineEdit",
    "LineItem",
    "PricedLine",
    "apply_line_edit",
    "build_invoice_payload",
    "compute_line",
    "compute_totals",
    "derive_due_date",
    "find_term",
    "invoice_status",
    "is_paid",
    "next_invoice_number",
    "to_cents",
    "validate_for_submission",
    "with_due_date",
]
