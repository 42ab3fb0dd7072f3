"""
Tests for structured logging infrastructure.

Tests:
- JSON and console configuration
- Request and webhook context propagation
- Credential and email redaction
- Operation context timing
"""

import asyncio

import pytest

from payment_reconciler.observability.logging import (
    OperationContext,
    RequestContext,
    WebhookContext,
    add_exception_info,
    add_request_context,
    configure_logging,
    get_event_id,
    get_event_type,
    get_logger,
    get_request_id,
    get_trace_id,
    redact_sensitive_fields,
)


def test_configure_logging_json_output():
    """Test that JSON logging can be configured."""
    configure_logging(log_level="INFO", json_output=True, colorized=False)

    logger = get_logger("test")
    logger.info("Test message", test_field="value")


def test_configure_logging_console_output():
    configure_logging(log_level="DEBUG", json_output=False, colorized=False)

    logger = get_logger("test")
    logger.debug("Debug message")
    logger.warning("Warning message", latency_ms=150.5)


def test_request_context():
    """Test request context propagation."""
    with RequestContext(request_id="req_123"):
        assert get_request_id() == "req_123"
        assert get_trace_id().startswith("trace_")

    assert get_request_id() is None
    assert get_trace_id() is None


def test_request_context_auto_generation():
    with RequestContext():
        assert get_request_id().startswith("req_")
        assert get_trace_id().startswith("trace_")


def test_nested_webhook_contexts_restore_outer_event():
    with WebhookContext("evt_outer", "invoice.payment_failed"):
        with WebhookContext("evt_inner", "charge.refunded"):
            assert get_event_id() == "evt_inner"
            assert get_event_type() == "charge.refunded"

        assert get_event_id() == "evt_outer"
        assert get_event_type() == "invoice.payment_failed"

    assert get_event_id() is None


def test_context_processor_injects_request_and_event_ids():
    with RequestContext(request_id="req_1", trace_id="trace_1"):
        with WebhookContext("evt_1", "invoice.upcoming"):
            event_dict = add_request_context(None, "info", {"event": "Processing"})

    assert event_dict["request_id"] == "req_1"
    assert event_dict["trace_id"] == "trace_1"
    assert event_dict["event_id"] == "evt_1"
    assert event_dict["event_type"] == "invoice.upcoming"


def test_context_processor_keeps_explicit_fields():
    with WebhookContext("evt_ctx", "charge.refunded"):
        event_dict = add_request_context(None, "info", {"event": "x", "event_id": "evt_explicit"})

    assert event_dict["event_id"] == "evt_explicit"


def test_context_processor_without_context():
    assert add_request_context(None, "info", {"event": "idle"}) == {"event": "idle"}


def test_context_survives_async_boundaries():
    async def read_context():
        await asyncio.sleep(0)
        return get_request_id(), get_event_id()

    with RequestContext(request_id="req_async"), WebhookContext("evt_async", "charge.refunded"):
        assert asyncio.run(read_context()) == ("req_async", "evt_async")


# ----------------------------------------------------------------------------
# Redaction
# ----------------------------------------------------------------------------


def test_long_secrets_keep_prefix_only():
    event_dict = redact_sensitive_fields(
        None, "info", {"event": "x", "secret_key": "sk_live_abcdefghijklmnop"}
    )

    assert event_dict["secret_key"] == "sk_live_***nop"


def test_short_secrets_fully_masked():
    event_dict = redact_sensitive_fields(None, "info", {"event": "x", "signature": "t=1,v1=ab"})

    assert event_dict["signature"] == "***REDACTED***"


def test_email_reduced_to_domain():
    event_dict = redact_sensitive_fields(
        None, "info", {"event": "x", "customer_email": "ada@example.com", "user_id": "user-1"}
    )

    assert event_dict["customer_email"] == "***@example.com"
    assert event_dict["user_id"] == "user-1"


def test_exception_info_fields():
    try:
        raise ValueError("database is locked")
    except ValueError as e:
        exc_info = (type(e), e, e.__traceback__)

    event_dict = add_exception_info(None, "error", {"event": "x", "exc_info": exc_info})

    assert event_dict["exception_type"] == "ValueError"
    assert event_dict["exception_message"] == "database is locked"


# ----------------------------------------------------------------------------
# Operation context
# ----------------------------------------------------------------------------


def test_operation_context():
    configure_logging(log_level="INFO", json_output=False, colorized=False)

    with OperationContext("settlement_lookup", payment_intent_id="pi_1") as operation:
        pass

    assert operation.start_time is not None


def test_operation_context_propagates_exception():
    configure_logging(log_level="INFO", json_output=False, colorized=False)

    with pytest.raises(ValueError):
        with OperationContext("stripe_customer_create", user_id="user-1"):
            raise ValueError("Stripe unavailable")
