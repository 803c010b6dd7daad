"""Security helpers for logging redaction and service metrics."""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from prometheus_client import Counter


WEBHOOK_EVENTS_TOTAL = Counter(
    "kebilo_stripe_webhook_events_total",
    "Stripe webhook deliveries grouped by event type and outcome",
    ("event_type", "outcome"),
)

DOCUMENT_SERVICE_CALLS_TOTAL = Counter(
    "kebilo_document_service_calls_total",
    "Requests proxied to the document-processing service",
    ("operation", "outcome"),
)

DUPLICATE_SCANS_TOTAL = Counter(
    "kebilo_duplicate_scans_total",
    "Duplicate-patient scans grouped by whether duplicates were found",
    ("result",),
)


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """Return a stable SHA256 hash prefix for identifiers."""

    if not value:
        return None
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:16]


def constant_time_equals(left: Optional[str], right: Optional[str]) -> bool:
    """Compare two secrets without leaking timing information."""

    if not left or not right:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


__all__ = [
    "DOCUMENT_SERVICE_CALLS_TOTAL",
    "DUPLICATE_SCANS_TOTAL",
    "WEBHOOK_EVENTS_TOTAL",
    "constant_time_equals",
    "hash_identifier",
]
