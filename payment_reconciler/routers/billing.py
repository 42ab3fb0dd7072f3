"""
Billing administration API endpoints.

Local user registration, Stripe customer linking, and read access to the
reconciled state (transactions, subscriptions, payment methods, ledger).

Security:
- Every endpoint requires the X-Admin-Key header
- Endpoints are blocked entirely when ADMIN_API_KEY is not configured
"""

import logging
import secrets
from typing import Any

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from payment_reconciler.billing.customers import (
    CustomerLinkError,
    CustomerLinker,
    CustomerProfileHint,
    UserNotFoundError,
)
from payment_reconciler.billing.webhooks import get_webhook_handler
from payment_reconciler.config import get_settings
from payment_reconciler.models.billing import (
    LocalUser,
    LocalUserCreate,
    PaymentMethod,
    Subscription,
    Transaction,
    WebhookEvent,
)
from payment_reconciler.resilience.circuit_breakers import StripeCircuitBreakerError
from payment_reconciler.storage.database import BillingDatabase, get_billing_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["Billing"])


class LinkCustomerRequest(BaseModel):
    name: str | None = Field(default=None, max_length=200, description="Name sent to Stripe")


class LinkCustomerResponse(BaseModel):
    user_id: str
    stripe_customer_id: str


class WebhookEventResponse(BaseModel):
    """Ledger row without the raw payload."""

    external_event_id: str
    event_type: str
    processing_status: str
    retry_count: int
    error_message: str | None
    processed_at: str | None
    created_at: str
    updated_at: str


async def verify_admin_key(x_admin_key: str = Header(...)) -> bool:
    """
    Verify the admin API key against ADMIN_API_KEY.

    Raises:
        503: Admin key not configured
        401: Key does not match
    """
    admin_key = get_settings().admin_api_key
    if not admin_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is disabled (ADMIN_API_KEY not configured)",
        )
    if not secrets.compare_digest(x_admin_key, admin_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
    return True


async def get_customer_linker(
    db: BillingDatabase = Depends(get_billing_db),
) -> CustomerLinker:
    return get_webhook_handler(get_settings(), db).dispatcher.customers


@router.post(
    "/users",
    response_model=LocalUser,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_admin_key)],
)
async def create_user(
    user_data: LocalUserCreate,
    db: BillingDatabase = Depends(get_billing_db),
    linker: CustomerLinker = Depends(get_customer_linker),
) -> LocalUser:
    """
    Register a local user.

    Raises:
        409: User ID already exists
    """
    user = await db.create_user(user_data, linker.context.now())
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"User ID '{user_data.user_id}' already exists",
        )
    return user


@router.post(
    "/users/{user_id}/customer",
    response_model=LinkCustomerResponse,
    dependencies=[Depends(verify_admin_key)],
)
async def link_customer(
    user_id: str,
    request: LinkCustomerRequest | None = None,
    linker: CustomerLinker = Depends(get_customer_linker),
) -> LinkCustomerResponse:
    """
    Link the user to a Stripe customer, creating one if needed.

    Raises:
        404: User not found
        503: Stripe not configured or unavailable
        502: Stripe rejected the request
    """
    hint = CustomerProfileHint(name=request.name) if request else None
    try:
        customer_id = await linker.link_or_create(user_id, hint)
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (CustomerLinkError, StripeCircuitBreakerError) as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e
    except stripe.StripeError as e:
        logger.error(
            "Stripe customer creation failed",
            extra={"user_id": user_id, "error": str(e)},
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Stripe customer creation failed",
        ) from e

    return LinkCustomerResponse(user_id=user_id, stripe_customer_id=customer_id)


async def _require_user(db: BillingDatabase, user_id: str) -> None:
    if await db.get_user(user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User not found: {user_id}",
        )


@router.get(
    "/users/{user_id}/transactions",
    response_model=list[Transaction],
    dependencies=[Depends(verify_admin_key)],
)
async def list_transactions(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: BillingDatabase = Depends(get_billing_db),
) -> list[Transaction]:
    await _require_user(db, user_id)
    return await db.list_transactions(user_id, limit=limit)


@router.get(
    "/users/{user_id}/subscriptions",
    response_model=list[Subscription],
    dependencies=[Depends(verify_admin_key)],
)
async def list_subscriptions(
    user_id: str,
    db: BillingDatabase = Depends(get_billing_db),
) -> list[Subscription]:
    await _require_user(db, user_id)
    return await db.list_subscriptions(user_id)


@router.get(
    "/users/{user_id}/payment-methods",
    response_model=list[PaymentMethod],
    dependencies=[Depends(verify_admin_key)],
)
async def list_payment_methods(
    user_id: str,
    db: BillingDatabase = Depends(get_billing_db),
) -> list[PaymentMethod]:
    await _require_user(db, user_id)
    return await db.list_payment_methods(user_id)


def _event_response(event: WebhookEvent) -> dict[str, Any]:
    return WebhookEventResponse(
        external_event_id=event.external_event_id,
        event_type=event.event_type,
        processing_status=event.processing_status.value,
        retry_count=event.retry_count,
        error_message=event.error_message,
        processed_at=event.processed_at.isoformat() if event.processed_at else None,
        created_at=event.created_at.isoformat(),
        updated_at=event.updated_at.isoformat(),
    ).model_dump()


@router.get(
    "/webhook-events/{event_id}",
    response_model=WebhookEventResponse,
    dependencies=[Depends(verify_admin_key)],
)
async def get_webhook_event(
    event_id: str,
    db: BillingDatabase = Depends(get_billing_db),
) -> dict[str, Any]:
    """
    Inspect the ledger row of a Stripe event.

    Raises:
        404: Event not recorded (or the ledger is disabled)
    """
    event = await db.get_webhook_event(event_id)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook event not found: {event_id}",
        )
    return _event_response(event)
