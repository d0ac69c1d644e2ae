"""Typed errors raised by the OAuth, API client and invoice layers.

Every error carries a machine-readable ``code`` so routes can map it to an
HTTP response without parsing messages.

    TillInvoicerError
    +-- AuthError
    |   +-- NotAuthenticated
    |   +-- MissingParameters
    |   +-- CsrfMismatch
    |   +-- TokenExchangeError
    +-- SessionWriteTimeout
    +-- UpstreamError
    +-- InvoiceValidationError
        +-- MissingCustomer
        +-- EmptyInvoice
        +-- MissingTaxSelection
        +-- InvalidCustomer
        +-- InvoiceLocked
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.backend.src.core.session_store import SessionCredential


class TillInvoicerError(Exception):
    """Base class for all application errors."""

    code: str = "till_invoicer_error"


class AuthError(TillInvoicerError):
    code = "auth_error"


class NotAuthenticated(AuthError):
    code = "not_authenticated"

    def __init__(self, message: str = "Not connected to QuickBooks") -> None:
        super().__init__(message)


class MissingParameters(AuthError):
    code = "missing_parameters"

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing callback parameters: {', '.join(missing)}")


class CsrfMismatch(AuthError):
    code = "csrf_mismatch"

    def __init__(self, message: str = "Invalid state, please log in again") -> None:
        super().__init__(message)


class TokenExchangeError(AuthError):
    code = "token_exchange_failed"

    def __init__(self, status: int | None, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"Token exchange failed (status={status})")


class SessionWriteTimeout(TillInvoicerError):
    """The session store did not confirm a write (slow or unavailable).

    The in-memory credential is left as-is and may be ahead of the store.
    """

    code = "session_write_timeout"

    def __init__(self, credential: "SessionCredential", timeout: float) -> None:
        self.credential = credential
        self.timeout = timeout
        super().__init__(
            f"Session write not confirmed within {timeout:g}s"
        )


class UpstreamError(TillInvoicerError):
    """Any non-success response from the accounting API."""

    code = "upstream_error"

    def __init__(self, status: int | None, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"Accounting API request failed (status={status})")

    @property
    def is_auth_failure(self) -> bool:
        return self.status == 401


class InvoiceValidationError(TillInvoicerError):
    code = "invoice_invalid"


class MissingCustomer(InvoiceValidationError):
    code = "missing_customer"

    def __init__(self) -> None:
        super().__init__("Customer is required")


class EmptyInvoice(InvoiceValidationError):
    code = "empty_invoice"

    def __init__(self) -> None:
        super().__init__("At least one line item is required")


class MissingTaxSelection(InvoiceValidationError):
    code = "missing_tax_selection"

    def __init__(self, line_ids: list[str]) -> None:
        self.line_ids = line_ids
        super().__init__("All line items must have a tax rate selected.")


class InvalidCustomer(InvoiceValidationError):
    code = "invalid_customer"

    def __init__(self) -> None:
        super().__init__("Either Display Name or Last Name is required")


class InvoiceLocked(InvoiceValidationError):
    code = "invoice_locked"

    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} is paid and can no longer be edited")


__all__ = [
    "AuthError",
    "CsrfMismatch",
    "EmptyInvoice",
    "InvalidCustomer",
    "InvoiceLocked",
    "InvoiceValidationError",
    "MissingCustomer",
    "MissingParameters",
    "MissingTaxSelection",
    "NotAuthenticated",
    "SessionWriteTimeout",
    "TillInvoicerError",
    "TokenExchangeError",
    "UpstreamError",
]
