"""
Subscription state machine driven by Stripe subscription and invoice events.

    INCOMPLETE -> TRIALING -> ACTIVE <-> PAST_DUE -> UNPAID
                                              any -> CANCELED (terminal)

Every mutation is a single conditional UPDATE keyed by the Stripe
subscription ID, so concurrent or out-of-order deliveries never need a lock.
"""

from datetime import datetime
from typing import Any

from payment_reconciler.billing.context import ReconciliationContext
from payment_reconciler.billing.plans import PriceCatalog
from payment_reconciler.billing.timestamps import resolve_timestamp
from payment_reconciler.models.billing import Subscription, SubscriptionStatus
from payment_reconciler.observability.logging import get_logger
from payment_reconciler.observability.metrics import track_subscription_status
from payment_reconciler.storage.database import BillingDatabase

logger = get_logger(__name__)

_STRIPE_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "incomplete": SubscriptionStatus.INCOMPLETE,
}


def map_subscription_status(raw: str | None) -> SubscriptionStatus:
    """
    Map a Stripe subscription status to the local status.

    Unknown values (incomplete_expired, paused, None, ...) map to ACTIVE.
    """
    if raw is None:
        return SubscriptionStatus.ACTIVE
    return _STRIPE_STATUS_MAP.get(raw, SubscriptionStatus.ACTIVE)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, dict) else None
    if data and isinstance(data[0], dict):
        return data[0]
    return {}


def _period_bounds(subscription: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    # Newer API versions moved billing periods onto the subscription item
    item = _first_item(subscription)
    start = resolve_timestamp(
        item.get("current_period_start"),
        subscription.get("current_period_start"),
        subscription.get("billing_cycle_anchor"),
        subscription.get("created"),
        field="current_period_start",
    )
    end = resolve_timestamp(
        item.get("current_period_end"),
        subscription.get("current_period_end"),
        field="current_period_end",
    )
    return start, end


class SubscriptionStateMachine:
    """Applies Stripe subscription lifecycle events to local records."""

    def __init__(
        self,
        db: BillingDatabase,
        context: ReconciliationContext,
        catalog: PriceCatalog | None = None,
    ):
        self.db = db
        self.context = context
        self.catalog = catalog or PriceCatalog()

    def resolve_plan_name(self, price: dict[str, Any]) -> str:
        """
        Human-readable plan name for a Stripe price.

        Order: price nickname, catalog entry, expanded product name,
        product ID, "Unknown Plan".
        """
        if price.get("nickname"):
            return price["nickname"]

        catalog_name = self.catalog.plan_name_for(price.get("id"))
        if catalog_name:
            return catalog_name

        product = price.get("product")
        if isinstance(product, dict):
            if product.get("name"):
                return product["name"]
            product = product.get("id")
        if isinstance(product, str) and product:
            return product

        return "Unknown Plan"

    async def on_created(self, user_id: str, subscription: dict[str, Any]) -> Subscription | None:
        """
        Insert the local record for a new Stripe subscription.

        Returns:
            The stored subscription (the existing one on redelivery)
        """
        external_id = subscription["id"]
        price = _first_item(subscription).get("price") or {}
        recurring = price.get("recurring") or {}
        currency = price.get("currency") or self.context.default_currency
        status = map_subscription_status(subscription.get("status"))
        period_start, period_end = _period_bounds(subscription)

        trial_start = resolve_timestamp(subscription.get("trial_start"), field="trial_start")
        trial_end = resolve_timestamp(subscription.get("trial_end"), field="trial_end")
        if trial_start is None or trial_end is None:
            trial_start = trial_end = None

        now = self.context.now()
        record = Subscription(
            user_id=user_id,
            external_subscription_id=external_id,
            status=status,
            plan_id=price.get("id"),
            plan_name=self.resolve_plan_name(price),
            amount=self.context.minor_to_major(price.get("unit_amount") or 0, currency),
            currency=currency.upper(),
            interval=recurring.get("interval") or "month",
            interval_count=recurring.get("interval_count") or 1,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_start_date=trial_start,
            trial_end_date=trial_end,
            metadata=subscription.get("metadata") or {},
            created_at=now,
            updated_at=now,
        )

        if not await self.db.insert_subscription(record):
            logger.info("Subscription already exists, create ignored", subscription_id=external_id)
            return await self.db.get_subscription(external_id)

        track_subscription_status(status.value)
        logger.info(
            "Subscription created",
            subscription_id=external_id,
            user_id=user_id,
            status=status.value,
            plan_name=record.plan_name,
        )
        return await self.db.get_subscription(external_id)

    async def on_updated(self, subscription: dict[str, Any]) -> Subscription | None:
        """
        Overwrite status and metadata from a Stripe update; period bounds
        only change when the update carries them.

        Returns:
            The updated subscription, or None if no local record exists
        """
        external_id = subscription["id"]
        existing = await self.db.get_subscription(external_id)
        if existing is None:
            logger.warning("Subscription not found for update", subscription_id=external_id)
            return None

        status = map_subscription_status(subscription.get("status"))
        period_start, period_end = _period_bounds(subscription)

        updated = await self.db.apply_subscription_update(
            external_id,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            canceled_at=resolve_timestamp(subscription.get("canceled_at"), field="canceled_at"),
            ended_at=resolve_timestamp(subscription.get("ended_at"), field="ended_at"),
            metadata=subscription.get("metadata") or {},
            now=self.context.now(),
        )
        if not updated:
            logger.warning(
                "Update for canceled subscription ignored",
                subscription_id=external_id,
                incoming_status=status.value,
            )
            return existing

        track_subscription_status(status.value)
        logger.info(
            "Subscription updated",
            subscription_id=external_id,
            previous_status=existing.status.value,
            status=status.value,
        )
        return await self.db.get_subscription(external_id)

    async def on_deleted(self, subscription: dict[str, Any]) -> Subscription | None:
        """Force CANCELED. Deletion is terminal."""
        external_id = subscription["id"]
        if await self.db.get_subscription(external_id) is None:
            logger.warning("Subscription not found for deletion", subscription_id=external_id)
            return None

        if await self.db.cancel_subscription(external_id, self.context.now()):
            track_subscription_status(SubscriptionStatus.CANCELED.value)
            logger.info("Subscription canceled", subscription_id=external_id)
        else:
            logger.info("Subscription already canceled", subscription_id=external_id)
        return await self.db.get_subscription(external_id)

    async def on_payment_failed(self, external_subscription_id: str | None) -> Subscription | None:
        """
        Count a failed invoice payment; the first failure moves to PAST_DUE.
        """
        if not external_subscription_id:
            return None

        if not await self.db.record_failed_payment(external_subscription_id, self.context.now()):
            logger.warning(
                "Subscription not found for failed payment",
                subscription_id=external_subscription_id,
            )
            return None

        record = await self.db.get_subscription(external_subscription_id)
        if record is not None and record.failed_payment_count == 1:
            track_subscription_status(record.status.value)
        logger.warning(
            "Subscription payment failed",
            subscription_id=external_subscription_id,
            failed_payment_count=record.failed_payment_count if record else None,
            status=record.status.value if record else None,
        )
        return record

    async def on_trial_will_end(self, subscription: dict[str, Any]) -> Subscription | None:
        external_id = subscription["id"]
        record = await self.db.get_subscription(external_id)
        if record is None:
            logger.warning("Subscription not found for trial end notice", subscription_id=external_id)
            return None

        trial_end = resolve_timestamp(subscription.get("trial_end"), field="trial_end")
        logger.info(
            "Subscription trial will end",
            subscription_id=external_id,
            user_id=record.user_id,
            trial_end=trial_end.isoformat() if trial_end else None,
        )
        return record

    async def get(self, external_subscription_id: str) -> Subscription | None:
        return await self.db.get_subscription(external_subscription_id)

    async def list_for_user(self, user_id: str) -> list[Subscription]:
        return await self.db.list_subscriptions(user_id)
