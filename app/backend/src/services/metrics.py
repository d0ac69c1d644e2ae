"""Prometheus metric definitions for auth, upstream calls and receipts."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

oauth_callbacks_total = Counter(
    "oauth_callbacks_total",
    "OAuth callbacks handled by outcome.",
    labelnames=["outcome"],
)

upstream_requests_total = Counter(
    "upstream_requests_total",
    "Accounting API requests by operation and outcome.",
    labelnames=["operation", "outcome"],
)

receipt_render_seconds = Histogram(
    "receipt_render_seconds",
    "Time spent rendering a single receipt.",
    labelnames=["format"],
)

__all__ = [
    "oauth_callbacks_total",
    "receipt_render_seconds",
    "upstream_requests_total",
]
