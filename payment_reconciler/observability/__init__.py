"""
Observability infrastructure.

Components:
- metrics.py: Prometheus metrics (counters, histograms)
- logging.py: Structured JSON logging with request and event context
- health.py: Liveness and readiness probes
"""

from payment_reconciler.observability.metrics import (
    track_ledger_decision,
    track_request,
    track_subscription_status,
    track_transaction_recorded,
    track_webhook_event,
)

__all__ = [
    "track_request",
    "track_webhook_event",
    "track_ledger_decision",
    "track_transaction_recorded",
    "track_subscription_status",
]
