"""
Tests for Prometheus metrics.

Tests:
- Metrics endpoint returns valid Prometheus format
- Webhook, ledger and recorder outcomes are counted
- HTTP requests are tracked by the middleware
"""

import pytest
from conftest import make_event, make_payment_intent
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from payment_reconciler.main import app
from payment_reconciler.observability.metrics import (
    track_ledger_decision,
    track_request,
    track_webhook_event,
)


def _sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.fixture
def client():
    return TestClient(app)


def test_metrics_endpoint_exists(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]


def test_metrics_prometheus_format(client):
    content = client.get("/metrics").text

    assert "# TYPE" in content
    assert "# HELP" in content
    assert "payment_reconciler_http_request_duration_seconds" in content
    assert "payment_reconciler_webhook_events_total" in content
    assert "payment_reconciler_ledger_decisions_total" in content


def test_track_webhook_event_counts_outcome():
    before = _sample(
        "payment_reconciler_webhook_events_total", event_type="charge.refunded", outcome="duplicate"
    )

    track_webhook_event("charge.refunded", "duplicate")

    after = _sample(
        "payment_reconciler_webhook_events_total", event_type="charge.refunded", outcome="duplicate"
    )
    assert after == before + 1


def test_track_webhook_event_observes_duration():
    before = _sample(
        "payment_reconciler_webhook_processing_duration_seconds_count", event_type="invoice.upcoming"
    )

    track_webhook_event("invoice.upcoming", "processed", duration_seconds=0.02)

    after = _sample(
        "payment_reconciler_webhook_processing_duration_seconds_count", event_type="invoice.upcoming"
    )
    assert after == before + 1


def test_track_ledger_decision():
    before = _sample("payment_reconciler_ledger_decisions_total", decision="in_progress")

    track_ledger_decision("in_progress")

    assert _sample("payment_reconciler_ledger_decisions_total", decision="in_progress") == before + 1


def test_track_request():
    labels = {"method": "POST", "endpoint": "/webhooks/stripe", "status_code": "200"}
    before = _sample("payment_reconciler_http_requests_total", **labels)

    track_request(method="POST", endpoint="/webhooks/stripe", status_code=200, duration_seconds=0.05)

    assert _sample("payment_reconciler_http_requests_total", **labels) == before + 1


@pytest.mark.asyncio
async def test_dispatch_counts_recorded_transactions(dispatcher, linked_user):
    labels = {"type": "PAYMENT", "status": "COMPLETED"}
    before = _sample("payment_reconciler_transactions_recorded_total", **labels)

    await dispatcher.process(make_event("payment_intent.succeeded", make_payment_intent()))

    assert _sample("payment_reconciler_transactions_recorded_total", **labels) == before + 1


def test_middleware_tracks_requests(client):
    labels = {"method": "GET", "endpoint": "/health/liveness", "status_code": "200"}
    before = _sample("payment_reconciler_http_requests_total", **labels)

    client.get("/health/liveness")

    assert _sample("payment_reconciler_http_requests_total", **labels) == before + 1
