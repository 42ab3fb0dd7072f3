"""Card payment methods saved from payment_method.attached events."""

from typing import Any

from payment_reconciler.billing.context import ReconciliationContext
from payment_reconciler.models.billing import PaymentMethod
from payment_reconciler.observability.logging import get_logger
from payment_reconciler.storage.database import BillingDatabase

logger = get_logger(__name__)


class PaymentMethodRegistry:
    def __init__(self, db: BillingDatabase, context: ReconciliationContext):
        self.db = db
        self.context = context

    async def save_card(self, user_id: str, payment_method: dict[str, Any]) -> PaymentMethod | None:
        """
        Save a card payment method for a user.

        Non-card methods are skipped. Re-attaching a known method is a no-op.

        Returns:
            The saved payment method, or None if it was skipped
        """
        card = payment_method.get("card")
        if payment_method.get("type") != "card" or not isinstance(card, dict):
            logger.info(
                "Non-card payment method skipped",
                payment_method_id=payment_method.get("id"),
                type=payment_method.get("type"),
            )
            return None

        record = PaymentMethod(
            user_id=user_id,
            stripe_payment_method_id=payment_method["id"],
            type="card",
            last4=card.get("last4"),
            brand=card.get("brand"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
            created_at=self.context.now(),
        )

        if await self.db.insert_payment_method(record):
            logger.info(
                "Payment method saved",
                user_id=user_id,
                payment_method_id=record.stripe_payment_method_id,
                brand=record.brand,
                last4=record.last4,
            )
        else:
            logger.info(
                "Payment method already saved",
                payment_method_id=record.stripe_payment_method_id,
            )
        return record

    async def list_for_user(self, user_id: str) -> list[PaymentMethod]:
        return await self.db.list_payment_methods(user_id)
