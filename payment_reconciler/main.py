"""
FastAPI application for Stripe payment reconciliation.

Provides:
- Stripe webhook endpoint (signature-verified, idempotent)
- Billing admin API (users, customer linking, reconciled state)
- Health probes and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Request, Response, status
from fastapi.responses import JSONResponse

from payment_reconciler.billing.webhooks import (
    EventInProgressError,
    StripeWebhookHandler,
    WebhookConfigurationError,
    WebhookProcessingError,
    WebhookVerificationError,
    get_webhook_handler,
)
from payment_reconciler.config import get_settings
from payment_reconciler.observability.health import (
    LivenessResponse,
    ReadinessResponse,
    get_health_checker,
)
from payment_reconciler.observability.logging import configure_logging, get_logger
from payment_reconciler.observability.logging_middleware import (
    SlowRequestLogger,
    StructuredLoggingMiddleware,
)
from payment_reconciler.observability.metrics import generate_metrics
from payment_reconciler.observability.middleware import PrometheusMiddleware
from payment_reconciler.observability.request_limits import RequestSizeLimitMiddleware
from payment_reconciler.routers import billing_router
from payment_reconciler.storage.database import BillingDatabase, get_billing_db

settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)

# Initialized in lifespan
billing_db: BillingDatabase | None = None
webhook_handler: StripeWebhookHandler | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: open the billing database and build the webhook handler.
    Shutdown: close the database connection.
    """
    global billing_db, webhook_handler

    settings = get_settings()
    logger.info("=== Payment Reconciler Starting ===")

    try:
        settings.validate_configuration()

        billing_db = await get_billing_db()
        logger.info("Billing database ready", path=settings.database.path)

        webhook_handler = get_webhook_handler(settings, billing_db)
        logger.info(
            "Webhook handler ready",
            ledger_enabled=settings.stripe.webhook_logging_enabled,
        )

        logger.info("=== Service Ready ===")

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")
        if billing_db:
            billing_db.close()
            logger.info("Billing database closed")
        logger.info("=== Shutdown complete ===")


app = FastAPI(
    title="Payment Reconciler API",
    description="Stripe webhook reconciliation into a local billing ledger",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Processed in reverse order of registration:
# 1. RequestSizeLimitMiddleware (innermost) - rejects oversized requests first
# 2. PrometheusMiddleware - tracks metrics
# 3. SlowRequestLogger - logs slow requests
# 4. StructuredLoggingMiddleware (outermost) - sets request context
app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(
    SlowRequestLogger,
    warning_threshold_ms=settings.logging.slow_request_warning_ms,
    error_threshold_ms=settings.logging.slow_request_error_ms,
)
app.add_middleware(PrometheusMiddleware)
app.add_middleware(
    RequestSizeLimitMiddleware,
    max_body_size=settings.service.max_request_body_size,
)

app.include_router(billing_router)


@app.exception_handler(WebhookVerificationError)
async def webhook_verification_error_handler(request: Request, exc: WebhookVerificationError):
    logger.warning("Webhook verification failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Webhook verification failed", "error": str(exc)},
    )


@app.exception_handler(WebhookConfigurationError)
async def webhook_configuration_error_handler(request: Request, exc: WebhookConfigurationError):
    logger.error("Webhook endpoint misconfigured", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Webhook endpoint not configured"},
    )


@app.exception_handler(WebhookProcessingError)
async def webhook_processing_error_handler(request: Request, exc: WebhookProcessingError):
    """Non-2xx tells Stripe to redeliver."""
    if isinstance(exc, EventInProgressError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "Event is already being processed", "error": str(exc)},
        )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Webhook processing failed", "error": str(exc)},
    )


@app.post("/webhooks/stripe", tags=["Webhooks"])
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
):
    """
    Receive a Stripe webhook delivery.

    The raw body is verified against the Stripe-Signature header before any
    processing. Reconciliation finishes (or is durably marked failed) before
    the response is sent.

    Returns:
        200 {"status": "processed" | "duplicate" | "ignored"}
        400 on verification failure
        409 while another delivery of the same event is in progress
        500 on processing failure or missing webhook secret
    """
    handler = webhook_handler or get_webhook_handler(get_settings(), await get_billing_db())
    payload = await request.body()
    result = await handler.handle_event(payload, stripe_signature)
    return result.to_response()


@app.get(
    "/health/liveness",
    response_model=LivenessResponse,
    tags=["Health"],
    summary="Liveness probe",
)
async def liveness_probe():
    """Always 200 while the process is up. No I/O."""
    return await get_health_checker().check_liveness()


@app.get(
    "/health/readiness",
    response_model=ReadinessResponse,
    tags=["Health"],
    summary="Readiness probe",
    responses={
        200: {"description": "Service is ready"},
        503: {"description": "Service is not ready"},
    },
)
async def readiness_probe(response: Response):
    """
    Readiness probe.

    HTTP 503 when the billing database is unavailable. An open Stripe
    circuit breaker only degrades the status.
    """
    readiness = await get_health_checker().check_readiness(billing_db=billing_db)
    if not readiness.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    logger.debug(
        "Readiness probe completed",
        ready=readiness.ready,
        status=readiness.status.value,
    )
    return readiness


@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics in exposition format."""
    content, content_type = generate_metrics()
    return Response(content=content, media_type=content_type)


@app.get("/", tags=["System"])
async def root():
    return {
        "service": "Payment Reconciler API",
        "version": "0.1.0",
        "docs": "/docs",
        "webhook": "/webhooks/stripe",
        "health": "/health/readiness",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "payment_reconciler.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        log_level=settings.logging.level.lower(),
    )
