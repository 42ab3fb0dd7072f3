"""
HTTP tests for the webhook endpoint, health probes and metrics.

The app is exercised without its lifespan: the module-level handler and
database are patched in per test.
"""

import json
from unittest.mock import patch

import pytest
import stripe
from conftest import make_event, make_payment_intent
from fastapi.testclient import TestClient

from payment_reconciler.billing.ledger import LedgerDecision
from payment_reconciler.billing.webhooks import StripeWebhookHandler
from payment_reconciler.config import StripeConfig
from payment_reconciler.main import app
from payment_reconciler.resilience.circuit_breakers import get_stripe_breaker


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def handler(dispatcher) -> StripeWebhookHandler:
    return StripeWebhookHandler(StripeConfig(webhook_secret="whsec_local_signing"), dispatcher)


@pytest.fixture
def installed_handler(handler):
    with patch("payment_reconciler.main.webhook_handler", handler):
        yield handler


@pytest.fixture
def signature_accepted():
    with patch("stripe.Webhook.construct_event") as construct_event:
        yield construct_event


def _payload(event_type: str, obj: dict, event_id: str = "evt_http") -> bytes:
    return make_event(event_type, obj, event_id=event_id).model_dump_json().encode()


def _post(client: TestClient, payload: bytes, signature: str | None = "t=1,v1=abc"):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return client.post("/webhooks/stripe", content=payload, headers=headers)


# ----------------------------------------------------------------------------
# Webhook endpoint
# ----------------------------------------------------------------------------


def test_processed_then_duplicate(client, installed_handler, signature_accepted, linked_user):
    payload = _payload("payment_intent.succeeded", make_payment_intent())

    first = _post(client, payload)
    second = _post(client, payload)

    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    assert second.status_code == 200
    assert second.json() == {
        "status": "duplicate",
        "event_id": "evt_http",
        "message": "Event already processed",
    }
    signature_accepted.assert_called_with(payload, "t=1,v1=abc", "whsec_local_signing")


def test_unsupported_event_is_acknowledged(client, installed_handler, signature_accepted):
    response = _post(client, _payload("customer.updated", {"id": "cus_123"}))

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


def test_bad_signature_is_rejected(client, installed_handler, signature_accepted):
    signature_accepted.side_effect = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")

    response = _post(client, _payload("payment_intent.succeeded", make_payment_intent()))

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid signature"


def test_malformed_event_is_rejected(client, installed_handler, signature_accepted):
    response = _post(client, json.dumps({"id": "evt_x"}).encode())

    assert response.status_code == 400
    assert response.json()["detail"] == "Webhook verification failed"


def test_missing_signature_header(client, installed_handler):
    response = _post(client, _payload("charge.refunded", {"id": "ch_1"}), signature=None)

    assert response.status_code == 422


def test_missing_webhook_secret(client, dispatcher):
    handler = StripeWebhookHandler(StripeConfig(webhook_secret=""), dispatcher)

    with patch("payment_reconciler.main.webhook_handler", handler):
        response = _post(client, _payload("charge.refunded", {"id": "ch_1"}))

    assert response.status_code == 500
    assert response.json() == {"detail": "Webhook endpoint not configured"}


def test_event_in_progress_returns_conflict(client, installed_handler, signature_accepted):
    # Another delivery holds the lease
    with patch.object(
        installed_handler.dispatcher.ledger, "begin_processing", return_value=LedgerDecision.IN_PROGRESS
    ):
        response = _post(client, _payload("payment_intent.succeeded", make_payment_intent()))

    assert response.status_code == 409


def test_processing_failure_asks_for_redelivery(client, installed_handler, signature_accepted, linked_user):
    with patch.object(
        installed_handler.dispatcher.transactions, "record", side_effect=RuntimeError("disk I/O error")
    ):
        response = _post(client, _payload("payment_intent.succeeded", make_payment_intent()))

    assert response.status_code == 500
    assert response.json()["detail"] == "Webhook processing failed"


# ----------------------------------------------------------------------------
# Health and metrics
# ----------------------------------------------------------------------------


def test_liveness(client):
    response = client.get("/health/liveness")

    assert response.status_code == 200
    assert response.json()["status"] == "alive"


def test_readiness_with_database(client, db):
    with patch("payment_reconciler.main.billing_db", db):
        response = client.get("/health/readiness")

    assert response.status_code == 200
    body = response.json()
    assert body["ready"] is True
    assert {c["name"] for c in body["components"]} == {"billing_database", "stripe_api"}


def test_readiness_without_database(client):
    with patch("payment_reconciler.main.billing_db", None):
        response = client.get("/health/readiness")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


def test_open_stripe_breaker_only_degrades_readiness(client, db):
    get_stripe_breaker().open()

    with patch("payment_reconciler.main.billing_db", db):
        response = client.get("/health/readiness")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"


def test_metrics_exposition(client, installed_handler, signature_accepted):
    _post(client, _payload("customer.updated", {"id": "cus_123"}, event_id="evt_metrics"))

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "payment_reconciler_webhook_events_total" in response.text


# ----------------------------------------------------------------------------
# Middleware
# ----------------------------------------------------------------------------


def test_request_ids_are_echoed(client):
    response = client.get("/", headers={"X-Request-ID": "req_from_caller"})

    assert response.headers["X-Request-ID"] == "req_from_caller"
    assert response.headers["X-Trace-ID"].startswith("trace_")


def test_oversized_body_rejected_before_verification(client, installed_handler, signature_accepted):
    response = _post(client, b"x" * (2 * 1024 * 1024))

    assert response.status_code == 413
    signature_accepted.assert_not_called()
