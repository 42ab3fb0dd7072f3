"""
Prometheus metrics for webhook reconciliation.

Metrics tracked:
- Webhook events processed (counter) by event type and outcome
- Webhook processing latency (histogram) by event type
- Ledger decisions (counter)
- Transactions recorded (counter) by type and status
- Subscription status changes (counter) by resulting status
- HTTP request latency and count (histogram, counter)

Exposed via the /metrics endpoint for Prometheus scraping.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

# -- webhook metrics ---------------------------------------------------------

webhook_events_total = Counter(
    "payment_reconciler_webhook_events_total",
    "Stripe webhook events by outcome",
    labelnames=["event_type", "outcome"],
)

webhook_processing_duration_seconds = Histogram(
    "payment_reconciler_webhook_processing_duration_seconds",
    "Time to reconcile one Stripe event (including Stripe lookups)",
    labelnames=["event_type"],
    buckets=(0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.0, 2.5, 5.0, 10.0),
)

ledger_decisions_total = Counter(
    "payment_reconciler_ledger_decisions_total",
    "Idempotency ledger decisions",
    labelnames=["decision"],
)

# -- reconciled state metrics ------------------------------------------------

transactions_recorded_total = Counter(
    "payment_reconciler_transactions_recorded_total",
    "Transactions recorded",
    labelnames=["type", "status"],
)

subscription_status_changes_total = Counter(
    "payment_reconciler_subscription_status_changes_total",
    "Subscription writes by resulting status",
    labelnames=["status"],
)

# -- http metrics ------------------------------------------------------------

_HTTP_LABELS = ("method", "endpoint", "status_code")

http_request_duration_seconds = Histogram(
    "payment_reconciler_http_request_duration_seconds",
    "Wall time per HTTP request, webhook deliveries included",
    labelnames=_HTTP_LABELS,
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_total = Counter(
    "payment_reconciler_http_requests_total",
    "HTTP requests by route and status",
    labelnames=_HTTP_LABELS,
)


# -- helper functions --------------------------------------------------------


def track_webhook_event(event_type: str, outcome: str, duration_seconds: float | None = None) -> None:
    """
    Track one webhook delivery.

    Args:
        event_type: Stripe event type (or "unsupported")
        outcome: processed, duplicate, ignored, in_progress, failed
        duration_seconds: Processing time, when measured
    """
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
    if duration_seconds is not None:
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(duration_seconds)


def track_ledger_decision(decision: str) -> None:
    ledger_decisions_total.labels(decision=decision).inc()


def track_transaction_recorded(transaction_type: str, status: str) -> None:
    transactions_recorded_total.labels(type=transaction_type, status=status).inc()


def track_subscription_status(status: str) -> None:
    subscription_status_changes_total.labels(status=status).inc()


def track_request(method: str, endpoint: str, status_code: int, duration_seconds: float) -> None:
    labels = {"method": method, "endpoint": endpoint, "status_code": str(status_code)}
    http_request_duration_seconds.labels(**labels).observe(duration_seconds)
    http_requests_total.labels(**labels).inc()


# -- metrics endpoint --------------------------------------------------------


def generate_metrics() -> tuple[bytes, str]:
    """Exposition payload and its content type for the /metrics route."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
