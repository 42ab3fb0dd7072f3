"""
Billing data models for webhook reconciliation.

Amounts are Decimal in the major currency unit (dollars, not cents).
Timestamps are timezone-aware UTC datetimes.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class WebhookProcessingStatus(str, Enum):
    """Ledger status of a Stripe event."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class TransactionType(str, Enum):
    PAYMENT = "PAYMENT"
    SUBSCRIPTION = "SUBSCRIPTION"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class SubscriptionStatus(str, Enum):
    """Local subscription status (see map_subscription_status for the Stripe mapping)."""

    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    UNPAID = "UNPAID"
    INCOMPLETE = "INCOMPLETE"


class StripeEventData(BaseModel):
    """The data envelope of a Stripe event."""

    object: dict[str, Any] = Field(..., description="The Stripe object the event is about")
    previous_attributes: dict[str, Any] | None = None


class StripeEvent(BaseModel):
    """
    Verified Stripe event.

    Built from the raw payload only after stripe.Webhook.construct_event has
    accepted the signature.
    """

    id: str = Field(..., min_length=1, description="Stripe event ID (evt_xxx)")
    type: str = Field(..., min_length=1, description="Event type tag, e.g. invoice.payment_failed")
    created: int | None = None
    livemode: bool = False
    data: StripeEventData

    @property
    def object(self) -> dict[str, Any]:
        """Shortcut for data.object."""
        return self.data.object


class WebhookEvent(BaseModel):
    """Ledger record of a Stripe event."""

    external_event_id: str
    event_type: str
    raw_payload: str | None = None
    processing_status: WebhookProcessingStatus = WebhookProcessingStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    processed_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LocalUser(BaseModel):
    """
    Local user identity.

    Only stripe_customer_id is written by reconciliation, and only once.
    """

    user_id: str = Field(..., min_length=1, max_length=100)
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    stripe_customer_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: str | None) -> str | None:
        """Basic email validation."""
        if v is None:
            return None
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()

    @property
    def display_name(self) -> str | None:
        """'First Last' as sent to Stripe, or None when no first name is known."""
        if not self.first_name:
            return None
        return f"{self.first_name} {self.last_name or ''}".strip()


class LocalUserCreate(BaseModel):
    """Registration payload for a local user."""

    user_id: str = Field(..., min_length=1, max_length=100)
    email: str | None = None
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)


class Transaction(BaseModel):
    """Immutable financial transaction (status corrections excepted)."""

    id: int | None = None
    user_id: str
    external_reference_id: str = Field(..., description="Payment intent, charge, invoice or session ID")
    type: TransactionType
    amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    status: TransactionStatus
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    stripe_fee: Decimal = Decimal("0")
    net_amount: Decimal
    failure_reason: str | None = None
    processed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()


class Subscription(BaseModel):
    """Authoritative local record of a Stripe subscription."""

    id: int | None = None
    user_id: str
    external_subscription_id: str
    status: SubscriptionStatus
    plan_id: str | None = None
    plan_name: str = "Unknown Plan"
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    interval: str = "month"
    interval_count: int = Field(default=1, ge=1)
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start_date: datetime | None = None
    trial_end_date: datetime | None = None
    failed_payment_count: int = Field(default=0, ge=0)
    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED


class PaymentMethod(BaseModel):
    """Card saved from a payment_method.attached event."""

    id: int | None = None
    user_id: str
    stripe_payment_method_id: str
    type: str
    last4: str | None = None
    brand: str | None = None
    exp_month: int | None = Field(default=None, ge=1, le=12)
    exp_year: int | None = None
    is_default: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
