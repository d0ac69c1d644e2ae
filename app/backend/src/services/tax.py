"""Tax code to tax rate resolution.

This is the only place a tax rate is derived. The totals engine and the
receipt renderer both go through :func:`resolve_tax_rate`, so a line can never
be taxed one way on screen and another way on paper.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

DEFAULT_TAX_RATE = Decimal("0.15")

_HUNDRED = Decimal(100)


def _find_by_id(entries: Iterable[Mapping[str, Any]], entry_id: str) -> Mapping[str, Any] | None:
    for entry in entries:
        if str(entry.get("Id")) == entry_id:
            return entry
    return None


def _first_rate_ref(tax_code: Mapping[str, Any]) -> str | None:
    rate_list = tax_code.get("SalesTaxRateList") or {}
    details = rate_list.get("TaxRateDetail") or []
    if not details:
        return None
    ref = (details[0] or {}).get("TaxRateRef") or {}
    value = ref.get("value")
    return str(value) if value not in (None, "") else None


def resolve_tax_rate(
    tax_code_id: str | None,
    tax_codes: Iterable[Mapping[str, Any]],
    tax_rates: Iterable[Mapping[str, Any]],
) -> Decimal:
    """Return the decimal tax fraction for ``tax_code_id``.

    Follows tax code -> first rate reference -> tax rate and returns
    ``RateValue / 100``. Any broken link in that chain yields
    :data:`DEFAULT_TAX_RATE`; this function never raises.
    """

    if not tax_code_id:
        return DEFAULT_TAX_RATE
    tax_code = _find_by_id(tax_codes, str(tax_code_id))
    if tax_code is None:
        return DEFAULT_TAX_RATE
    rate_ref = _first_rate_ref(tax_code)
    if rate_ref is None:
        return DEFAULT_TAX_RATE
    tax_rate = _find_by_id(tax_rates, rate_ref)
    if tax_rate is None:
        return DEFAULT_TAX_RATE
    try:
        return Decimal(str(tax_rate.get("RateValue"))) / _HUNDRED
    except (InvalidOperation, TypeError, ValueError):
        return DEFAULT_TAX_RATE


def format_rate_percent(rate: Decimal) -> str:
    """Render a decimal fraction as a percentage label, e.g. ``0.15`` -> ``15%``."""

    percent = (rate * _HUNDRED).normalize()
    text = format(percent, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"{text}%"


def available_tax_codes(tax_codes: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Return tax codes a clerk may pick: active and not hidden."""

    return [
        code for code in tax_codes
        if code.get("Active", True) and not code.get("Hidden", False)
    ]


def default_tax_code_id(tax_codes: Iterable[Mapping[str, Any]]) -> str | None:
    """Pick the tax code preselected on new lines.

    Prefers a South African standard-rate code, then the first available one.
    """

    candidates = available_tax_codes(tax_codes)
    for code in candidates:
        name = str(code.get("Name") or "").lower()
        description = str(code.get("Description") or "").lower()
        if "sa" in name or "15" in name or "south africa" in description:
            return str(code.get("Id"))
    if candidates:
        return str(candidates[0].get("Id"))
    return None


__all__ = [
    "DEFAULT_TAX_RATE",
    "available_tax_codes",
    "default_tax_code_id",
    "format_rate_percent",
    "resolve_tax_rate",
]
