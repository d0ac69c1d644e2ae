"""Public API routers exposed by the FastAPI application."""

from . import auth, health, invoices, reference

__all__ = [
    "auth",
    "health",
    "invoices",
    "reference",
]
