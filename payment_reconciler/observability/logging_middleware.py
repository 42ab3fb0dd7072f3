"""
Request logging middleware.

Every request runs inside a RequestContext, so log lines written while a
webhook is reconciled carry the request and trace IDs next to the Stripe
event ID. Stripe deliveries are tagged so they can be told apart from admin
traffic in the aggregated logs.
"""

import time
import uuid
from collections.abc import Callable
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from payment_reconciler.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)

QUIET_PATHS = frozenset({"/health/liveness", "/health/readiness", "/metrics"})


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _request_fields(request: Request) -> dict[str, Any]:
    fields: dict[str, Any] = {"method": request.method, "path": request.url.path}
    if "stripe-signature" in request.headers:
        fields["stripe_delivery"] = True
    return fields


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds request context and writes one access log line per request.

    X-Request-ID and X-Trace-ID are taken from the caller when present and
    echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        context = RequestContext(
            request_id=request.headers.get("x-request-id") or _new_id("req"),
            trace_id=request.headers.get("x-trace-id") or _new_id("trace"),
        )

        with context:
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.error(
                    "Unhandled error while serving request",
                    **_request_fields(request),
                    latency_ms=_elapsed_ms(started),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                raise

            if request.url.path not in QUIET_PATHS:
                logger.info(
                    "Request served",
                    **_request_fields(request),
                    status_code=response.status_code,
                    latency_ms=_elapsed_ms(started),
                )

        response.headers["X-Request-ID"] = context.request_id
        response.headers["X-Trace-ID"] = context.trace_id
        return response


class SlowRequestLogger(BaseHTTPMiddleware):
    """
    Flags requests slower than the configured thresholds.

    A webhook that blocks on Stripe lookups for too long risks Stripe giving
    up on the delivery and sending it again.
    """

    def __init__(
        self,
        app: ASGIApp,
        warning_threshold_ms: float = 250.0,
        error_threshold_ms: float = 2000.0,
    ):
        super().__init__(app)
        self.warning_threshold_ms = warning_threshold_ms
        self.error_threshold_ms = error_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        latency_ms = _elapsed_ms(started)

        if latency_ms <= self.warning_threshold_ms:
            return response

        over_error = latency_ms > self.error_threshold_ms
        log = logger.error if over_error else logger.warning
        log(
            "Slow request",
            **_request_fields(request),
            status_code=response.status_code,
            latency_ms=latency_ms,
            threshold_ms=self.error_threshold_ms if over_error else self.warning_threshold_ms,
        )
        return response
