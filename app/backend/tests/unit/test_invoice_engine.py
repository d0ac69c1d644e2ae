"""Unit tests for tax resolution and the invoice totals engine."""

from __future__ import annotations

import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[4]))

import pytest

from app.backend.src.core.errors import EmptyInvoice, MissingCustomer, MissingTaxSelection
from app.backend.src.services.invoice_engine import (
    InvoiceDraft,
    LineEdit,
    LineItem,
    apply_line_edit,
    build_invoice_payload,
    compute_totals,
    derive_due_date,
    invoice_status,
    next_invoice_number,
    validate_for_submission,
    with_due_date,
)
from app.backend.src.services.tax import (
    DEFAULT_TAX_RATE,
    default_tax_code_id,
    format_rate_percent,
    resolve_tax_rate,
)

TAX_CODES = [
    {
        "Id": "7",
        "Name": "Zero Rated",
        "Active": True,
        "SalesTaxRateList": {"TaxRateDetail": [{"TaxRateRef": {"value": "4"}}]},
    },
    {
        "Id": "5",
        "Name": "Standard Rate SA",
        "Active": True,
        "SalesTaxRateList": {"TaxRateDetail": [{"TaxRateRef": {"value": "3"}}]},
    },
    {"Id": "9", "Name": "Broken", "Active": True, "SalesTaxRateList": {}},
    {"Id": "11", "Name": "SA Legacy", "Active": True, "Hidden": True},
]
TAX_RATES = [{"Id": "3", "RateValue": 15}, {"Id": "4", "RateValue": 0}]

CATALOG = [
    {
        "Id": "42",
        "Name": "Pine plank",
        "Sku": "PP-22",
        "Description": "22mm x 2.4m",
        "UnitPrice": 89.5,
    }
]


def test_resolve_tax_rate_defaults_when_chain_is_broken() -> None:
    assert resolve_tax_rate(None, [], []) == DEFAULT_TAX_RATE == Decimal("0.15")
    assert resolve_tax_rate("unknown", TAX_CODES, TAX_RATES) == DEFAULT_TAX_RATE
    assert resolve_tax_rate("9", TAX_CODES, TAX_RATES) == DEFAULT_TAX_RATE
    assert resolve_tax_rate("5", TAX_CODES, []) == DEFAULT_TAX_RATE


def test_resolve_tax_rate_follows_rate_reference() -> None:
    assert resolve_tax_rate("5", TAX_CODES, TAX_RATES) == Decimal("0.15")
    assert resolve_tax_rate("7", TAX_CODES, TAX_RATES) == Decimal(0)
    assert format_rate_percent(Decimal("0.15")) == "15%"
    assert format_rate_percent(Decimal("0.125")) == "12.5%"


def test_default_tax_code_prefers_visible_south_african_code() -> None:
    assert default_tax_code_id(TAX_CODES) == "5"
    assert default_tax_code_id([TAX_CODES[0]]) == "7"
    assert default_tax_code_id([]) is None


def test_two_line_invoice_totals() -> None:
    lines = [
        LineItem(quantity=Decimal(2), rate=Decimal(50), tax_code_id="5"),
        LineItem(quantity=Decimal(1), rate=Decimal(100), tax_code_id="7"),
    ]

    totals = compute_totals(lines, TAX_CODES, TAX_RATES)

    assert totals.subtotal == Decimal(200)
    assert totals.tax_total == Decimal(15)
    assert totals.grand_total == Decimal(215)
    assert totals.tax_rates == (Decimal("0.15"), Decimal(0))


def test_totals_identity_holds_for_fractional_amounts() -> None:
    lines = [
        LineItem(quantity=Decimal("3.333"), rate=Decimal("19.99"), tax_code_id="5"),
        LineItem(quantity=Decimal("0.5"), rate=Decimal("0.07"), tax_code_id="7"),
        LineItem(quantity=Decimal(7), rate=Decimal("1.01")),
    ]

    totals = compute_totals(lines, TAX_CODES, TAX_RATES)

    assert totals.subtotal == sum(entry.amount for entry in totals.lines)
    assert totals.tax_total == sum(entry.tax_amount for entry in totals.lines)
    assert totals.grand_total == totals.subtotal + totals.tax_total


def test_quantity_edit_recomputes_amount_and_tax() -> None:
    line = LineItem(quantity=Decimal(2), rate=Decimal(100), tax_code_id="5")
    draft = InvoiceDraft(customer_id="1", line_items=[line])
    before = compute_totals(draft.line_items, TAX_CODES, TAX_RATES)
    assert before.lines[0].amount == Decimal(200)
    assert before.lines[0].tax_amount == Decimal(30)

    updated, totals = apply_line_edit(
        draft,
        LineEdit(line_id=line.id, field="quantity", value="3"),
        catalog=CATALOG,
        tax_codes=TAX_CODES,
        tax_rates=TAX_RATES,
    )

    assert updated.line_items[0].quantity == Decimal(3)
    assert totals.lines[0].amount == Decimal(300)
    assert totals.lines[0].tax_amount == Decimal(45)
    assert totals.grand_total == Decimal(345)


def test_add_line_uses_default_tax_code_and_item_selection_fills_catalog_fields() -> None:
    draft = InvoiceDraft(customer_id="1")
    draft, _ = apply_line_edit(
        draft, LineEdit(action="add"), catalog=CATALOG, tax_codes=TAX_CODES, tax_rates=TAX_RATES
    )
    line = draft.line_items[0]
    assert line.tax_code_id == "5"

    draft, totals = apply_line_edit(
        draft,
        LineEdit(line_id=line.id, field="item_id", value="42"),
        catalog=CATALOG,
        tax_codes=TAX_CODES,
        tax_rates=TAX_RATES,
    )

    line = draft.line_items[0]
    assert (line.item_id, line.product_name, line.sku) == ("42", "Pine plank", "PP-22")
    assert line.rate == Decimal("89.5")
    assert totals.subtotal == Decimal("89.5")


def test_remove_and_invalid_edits() -> None:
    line = LineItem(rate=Decimal(10), tax_code_id="5")
    draft = InvoiceDraft(line_items=[line])

    with pytest.raises(KeyError):
        apply_line_edit(
            draft,
            LineEdit(line_id="missing", field="rate", value=1),
            catalog=[],
            tax_codes=TAX_CODES,
            tax_rates=TAX_RATES,
        )
    with pytest.raises(ValueError):
        apply_line_edit(
            draft,
            LineEdit(line_id=line.id, field="quantity", value="-1"),
            catalog=[],
            tax_codes=TAX_CODES,
            tax_rates=TAX_RATES,
        )

    emptied, totals = apply_line_edit(
        draft,
        LineEdit(action="remove", line_id=line.id),
        catalog=[],
        tax_codes=TAX_CODES,
        tax_rates=TAX_RATES,
    )
    assert emptied.line_items == []
    assert totals.grand_total == Decimal(0)


def test_due_date_from_terms() -> None:
    invoice_date = date(2024, 1, 10)

    assert derive_due_date(invoice_date, {"DueDays": 30}) == date(2024, 2, 9)
    assert derive_due_date(date(2024, 1, 31), {"DayOfMonthDue": 31}) == date(2024, 2, 29)
    assert derive_due_date(invoice_date, None, "Net 30") == date(2024, 2, 9)
    assert derive_due_date(invoice_date, {"Name": "Due on receipt"}) is None

    draft = InvoiceDraft(invoice_date=invoice_date, terms="Net 15")
    terms = [{"Id": "3", "Name": "Net 15", "DueDays": 15}]
    assert with_due_date(draft, terms).due_date == date(2024, 1, 25)


def test_due_date_skips_unusable_term_values() -> None:
    invoice_date = date(2024, 1, 10)

    assert derive_due_date(invoice_date, {"DueDays": "abc", "Name": "Net 30"}) == date(2024, 2, 9)
    assert derive_due_date(invoice_date, {"DayOfMonthDue": 0}) is None
    assert derive_due_date(invoice_date, {"DayOfMonthDue": "soon", "Name": "Net 7"}) == date(2024, 1, 17)
    assert derive_due_date(invoice_date, {"DueDays": "14"}) == date(2024, 1, 24)

    draft = InvoiceDraft(invoice_date=invoice_date, terms="Odd", due_date=date(2024, 3, 1))
    assert with_due_date(draft, [{"Id": "9", "Name": "Odd", "DayOfMonthDue": 0}]).due_date == date(2024, 3, 1)


def test_submission_validation_errors() -> None:
    with pytest.raises(MissingCustomer):
        validate_for_submission(InvoiceDraft(line_items=[LineItem(tax_code_id="5")]))
    with pytest.raises(EmptyInvoice):
        validate_for_submission(InvoiceDraft(customer_id="1"))

    untaxed = LineItem()
    with pytest.raises(MissingTaxSelection) as excinfo:
        validate_for_submission(
            InvoiceDraft(customer_id="1", line_items=[LineItem(tax_code_id="5"), untaxed])
        )
    assert excinfo.value.line_ids == [untaxed.id]


def test_build_invoice_payload_uses_computed_amounts() -> None:
    draft = InvoiceDraft(
        customer_id="12",
        invoice_no="1005",
        invoice_date=date(2024, 1, 10),
        due_date=date(2024, 2, 9),
        line_items=[
            LineItem(
                item_id="42",
                product_name="Pine plank",
                description="22mm",
                quantity=Decimal(3),
                rate=Decimal("10.005"),
                tax_code_id="5",
            )
        ],
    )
    totals = compute_totals(draft.line_items, TAX_CODES, TAX_RATES)

    payload = build_invoice_payload(draft, totals, customer_name="Acme")

    line = payload["Line"][0]
    assert line["Amount"] == 30.02
    assert line["SalesItemLineDetail"]["TaxCodeRef"] == {"value": "5"}
    assert payload["CustomerRef"] == {"value": "12", "name": "Acme"}
    assert payload["DueDate"] == "2024-02-09"
    assert payload["DocNumber"] == "1005"


def test_invoice_numbering_and_status() -> None:
    invoices = [{"DocNumber": "1003"}, {"DocNumber": "INV-9"}, {"DocNumber": "1010"}]
    assert next_invoice_number(invoices) == "1011"
    assert next_invoice_number([]) == "1"

    today = date(2024, 3, 1)
    assert invoice_status({"Balance": 0, "DueDate": "2024-01-01"}, today) == "paid"
    assert invoice_status({"Balance": 50, "DueDate": "2024-02-01"}, today) == "overdue"
    assert invoice_status({"Balance": 50, "DueDate": "2024-04-01"}, today) == "unpaid"
