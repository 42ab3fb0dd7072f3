"""
structlog setup for the reconciler.

Every line is a JSON object in production (console output in development).
Lines written while a Stripe event is reconciled carry its event_id and
event_type, so a ledger row can be matched with everything logged for it.
Request and trace IDs are bound per HTTP request by the logging middleware.

Credentials and Stripe signatures are masked before rendering, and email
addresses are reduced to their domain.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from structlog.types import EventDict, Processor

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)
event_id_var: ContextVar[str | None] = ContextVar("event_id", default=None)
event_type_var: ContextVar[str | None] = ContextVar("event_type", default=None)

_CONTEXT_FIELDS = (
    ("request_id", request_id_var),
    ("trace_id", trace_id_var),
    ("event_id", event_id_var),
    ("event_type", event_type_var),
)

SENSITIVE_FIELDS = frozenset(
    {
        "api_key",
        "secret",
        "secret_key",
        "webhook_secret",
        "admin_api_key",
        "password",
        "authorization",
        "token",
        "signature",
        "stripe_signature",
    }
)

EMAIL_FIELDS = frozenset({"email", "customer_email"})


# -- processors ---------------------------------------------------------------


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Copy request, trace and Stripe event IDs from context; explicit fields win."""
    for key, var in _CONTEXT_FIELDS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    now = datetime.now(timezone.utc)
    event_dict["timestamp"] = now.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Tag lines with service name, version and environment from LOGGING_* settings."""
    # Settings may fail to load; resolved per line, not at import
    from pydantic import ValidationError

    from payment_reconciler.config import ConfigurationError, get_settings

    try:
        logging_settings = get_settings().logging
    except (ConfigurationError, ValidationError):
        event_dict["service"] = "payment-reconciler"
        return event_dict

    event_dict["service"] = logging_settings.service_name
    event_dict["version"] = logging_settings.service_version
    event_dict["environment"] = logging_settings.environment
    return event_dict


def _mask(value: str) -> str:
    # Long values keep the key prefix (sk_live_, whsec_) for debugging
    if len(value) > 12:
        return f"{value[:8]}***{value[-3:]}"
    return "***REDACTED***"


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        name = key.lower()
        if name in SENSITIVE_FIELDS:
            event_dict[key] = _mask(value)
        elif name in EMAIL_FIELDS and "@" in value:
            event_dict[key] = "***@" + value.rsplit("@", 1)[1]
    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Flatten exc_info into exception_type / exception_message for grouping."""
    exc_info = event_dict.get("exc_info")
    if not (isinstance(exc_info, tuple) and len(exc_info) == 3):
        return event_dict

    exc_type, exc_value, _ = exc_info
    event_dict["exception_type"] = getattr(exc_type, "__name__", "Unknown")
    event_dict["exception_message"] = "" if exc_value is None else str(exc_value)
    return event_dict


# -- setup --------------------------------------------------------------------


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Install the processor chain and route structlog through stdlib logging.

    Args:
        log_level: Minimum level name, e.g. "INFO"
        json_output: Render JSON lines; False gives the dev console renderer
        colorized: Colour the console renderer (ignored for JSON)

    A failed invoice payment is logged roughly as:
        {"event": "Invoice payment failed", "level": "warning",
         "event_id": "evt_1Nx...", "event_type": "invoice.payment_failed",
         "subscription_id": "sub_123", "service": "payment-reconciler", ...}
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
        structlog.processors.format_exc_info,
    ]
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=colorized)
    )

    structlog.configure(
        processors=[*processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    level = logging.getLevelName(log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# -- context ------------------------------------------------------------------


class RequestContext:
    """
    Binds request_id and trace_id for the duration of a request.

    Missing IDs are generated. Values live in contextvars, so concurrent
    requests never see each other's IDs.
    """

    def __init__(self, trace_id: str | None = None, request_id: str | None = None):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"
        self._tokens = None

    def __enter__(self):
        self._tokens = (
            request_id_var.set(self.request_id),
            trace_id_var.set(self.trace_id),
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._tokens is not None:
            request_token, trace_token = self._tokens
            request_id_var.reset(request_token)
            trace_id_var.reset(trace_token)
            self._tokens = None


class WebhookContext:
    """Binds the Stripe event being reconciled; nests cleanly."""

    def __init__(self, event_id: str, event_type: str):
        self.event_id = event_id
        self.event_type = event_type
        self._tokens = None

    def __enter__(self):
        self._tokens = (
            event_id_var.set(self.event_id),
            event_type_var.set(self.event_type),
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._tokens is not None:
            event_token, type_token = self._tokens
            event_id_var.reset(event_token)
            event_type_var.reset(type_token)
            self._tokens = None


class OperationContext:
    """
    Times a single outbound operation, such as creating a Stripe customer.

    Logs "<operation> completed" with latency, or "<operation> failed" with
    the traceback. Exceptions are not suppressed.
    """

    def __init__(self, operation: str, **fields):
        self.operation = operation
        self.context = fields
        self.logger = get_logger(f"operation.{operation}")
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        latency_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        if exc_type is None:
            self.logger.info(f"{self.operation} completed", latency_ms=latency_ms, **self.context)
            return
        self.logger.error(
            f"{self.operation} failed",
            latency_ms=latency_ms,
            exception_type=exc_type.__name__,
            exc_info=True,
            **self.context,
        )


def get_request_id() -> str | None:
    return request_id_var.get()


def get_trace_id() -> str | None:
    return trace_id_var.get()


def get_event_id() -> str | None:
    """Stripe event ID bound by the innermost WebhookContext, if any."""
    return event_id_var.get()


def get_event_type() -> str | None:
    return event_type_var.get()
