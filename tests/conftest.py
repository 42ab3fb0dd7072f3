"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Temporary billing database
- Reconciliation context with a controllable clock
- Fake Stripe gateway
- Stripe event and object builders
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from payment_reconciler.billing.context import ReconciliationContext
from payment_reconciler.billing.gateway import StripeGateway
from payment_reconciler.billing.webhooks import WebhookDispatcher, build_dispatcher
from payment_reconciler.models.billing import LocalUserCreate, StripeEvent
from payment_reconciler.resilience.circuit_breakers import reset_all_breakers
from payment_reconciler.storage.database import BillingDatabase

FIXED_NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)

# 2025-01-01T00:00:00Z and 2025-02-01T00:00:00Z
PERIOD_START = 1735689600
PERIOD_END = 1738368000


class FakeClock:
    """Deterministic clock that tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def context(clock: FakeClock) -> ReconciliationContext:
    """Context with the durable ledger enabled and a fixed clock."""
    return ReconciliationContext(ledger_enabled=True, clock=clock)


@pytest.fixture
async def db(tmp_path) -> BillingDatabase:
    database = BillingDatabase(db_path=str(tmp_path / "billing.db"))
    await database.initialize()
    yield database
    database.close()


@pytest.fixture
async def linked_user(db: BillingDatabase) -> str:
    """user-1 linked to Stripe customer cus_123."""
    await db.create_user(
        LocalUserCreate(user_id="user-1", email="ada@example.com", first_name="Ada", last_name="Lovelace"),
        now=FIXED_NOW,
    )
    await db.link_stripe_customer("user-1", "cus_123", FIXED_NOW)
    return "user-1"


@pytest.fixture
def gateway() -> AsyncMock:
    """Fake Stripe gateway; every lookup misses unless a test says otherwise."""
    fake = AsyncMock(spec=StripeGateway)
    fake.retrieve_payment_intent.return_value = {}
    fake.retrieve_customer.return_value = {"id": "cus_unknown", "metadata": {}}
    fake.create_customer.return_value = "cus_new"
    return fake


@pytest.fixture
def dispatcher(context, db, gateway) -> WebhookDispatcher:
    return build_dispatcher(context, db, gateway)


@pytest.fixture(autouse=True)
def closed_breaker():
    reset_all_breakers()
    yield
    reset_all_breakers()


def make_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_1") -> StripeEvent:
    return StripeEvent.model_validate(
        {
            "id": event_id,
            "type": event_type,
            "created": PERIOD_START,
            "livemode": False,
            "data": {"object": obj},
        }
    )


def make_subscription(
    subscription_id: str = "sub_1",
    status: str = "active",
    customer: str = "cus_123",
    **overrides: Any,
) -> dict[str, Any]:
    subscription = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "created": PERIOD_START,
        "billing_cycle_anchor": PERIOD_START,
        "metadata": {"source": "checkout"},
        "items": {
            "data": [
                {
                    "id": "si_1",
                    "current_period_start": PERIOD_START,
                    "current_period_end": PERIOD_END,
                    "price": {
                        "id": "price_basic",
                        "nickname": "Basic Monthly",
                        "unit_amount": 12900,
                        "currency": "usd",
                        "product": "prod_basic",
                        "recurring": {"interval": "month", "interval_count": 1},
                    },
                }
            ]
        },
    }
    subscription.update(overrides)
    return subscription


def make_invoice(
    invoice_id: str = "in_1",
    subscription: str | None = "sub_1",
    customer: str = "cus_123",
    **overrides: Any,
) -> dict[str, Any]:
    invoice = {
        "id": invoice_id,
        "object": "invoice",
        "number": "INV-0001",
        "customer": customer,
        "subscription": subscription,
        "payment_intent": "pi_inv_1",
        "amount_due": 5000,
        "amount_paid": 5000,
        "currency": "usd",
        "attempt_count": 1,
        "next_payment_attempt": PERIOD_END,
        "period_start": PERIOD_START,
        "period_end": PERIOD_END,
    }
    invoice.update(overrides)
    return invoice


def make_payment_intent(
    payment_intent_id: str = "pi_1",
    customer: str = "cus_123",
    **overrides: Any,
) -> dict[str, Any]:
    payment_intent = {
        "id": payment_intent_id,
        "object": "payment_intent",
        "customer": customer,
        "amount": 5000,
        "currency": "usd",
        "description": None,
        "invoice": None,
        "payment_method": "pm_1",
        "metadata": {"order": "42"},
    }
    payment_intent.update(overrides)
    return payment_intent
