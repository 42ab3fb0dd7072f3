"""
Correlation between local users and Stripe customers.

A user is linked to at most one Stripe customer, and the link is written
exactly once. Webhook handlers resolve the owning user from an event's
customer ID, linking lazily from the customer's userId metadata when the
local record does not know the customer yet.
"""

from dataclasses import dataclass

import stripe

from payment_reconciler.billing.context import ReconciliationContext
from payment_reconciler.billing.gateway import StripeGateway
from payment_reconciler.observability.logging import OperationContext, get_logger
from payment_reconciler.storage.database import BillingDatabase

logger = get_logger(__name__)


class CustomerLinkError(Exception):
    """Stripe customer could not be linked to a local user."""

    pass


class UserNotFoundError(CustomerLinkError):
    """Local user does not exist."""

    pass


@dataclass(frozen=True)
class CustomerProfileHint:
    """Optional profile details for a newly created Stripe customer."""

    name: str | None = None


def customer_idempotency_key(user_id: str) -> str:
    return f"customer-link-{user_id}"


class CustomerLinker:
    """Links local users to Stripe customers and resolves the reverse."""

    def __init__(
        self,
        db: BillingDatabase,
        context: ReconciliationContext,
        gateway: StripeGateway | None = None,
    ):
        """
        Args:
            db: Billing database
            context: Reconciliation context (clock)
            gateway: Stripe gateway, None when Stripe is not configured
        """
        self.db = db
        self.context = context
        self.gateway = gateway

    async def link_or_create(
        self, user_id: str, profile_hint: CustomerProfileHint | None = None
    ) -> str:
        """
        Return the user's Stripe customer ID, creating the customer if needed.

        Concurrent callers for the same user end up with one Stripe customer:
        creation uses an idempotency key derived from the user ID, and the
        link is only written while the user has none.

        Raises:
            UserNotFoundError: If the user does not exist
            CustomerLinkError: If Stripe is not configured
            stripe.StripeError: If the Stripe call fails
        """
        user = await self.db.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User not found: {user_id}")

        if user.stripe_customer_id:
            return user.stripe_customer_id

        if self.gateway is None:
            raise CustomerLinkError("Stripe is not configured")

        name = profile_hint.name if profile_hint and profile_hint.name else user.display_name
        with OperationContext("stripe_customer_create", user_id=user_id):
            customer_id = await self.gateway.create_customer(
                email=user.email,
                name=name,
                metadata={"userId": user_id},
                idempotency_key=customer_idempotency_key(user_id),
            )

        if await self.db.link_stripe_customer(user_id, customer_id, self.context.now()):
            logger.info("Stripe customer linked", user_id=user_id, stripe_customer_id=customer_id)
            return customer_id

        # Lost the race; whoever won wrote the link
        current = await self.db.get_user(user_id)
        if current is None or not current.stripe_customer_id:
            raise CustomerLinkError(f"Failed to link Stripe customer for user {user_id}")

        if current.stripe_customer_id != customer_id:
            logger.warning(
                "Stripe customer link already held by another customer",
                user_id=user_id,
                stripe_customer_id=current.stripe_customer_id,
                discarded_customer_id=customer_id,
            )
        return current.stripe_customer_id

    async def resolve_user(self, stripe_customer_id: str | None) -> str | None:
        """
        Find the local user owning a Stripe customer.

        Falls back to the customer's userId metadata and links the user if it
        is still unlinked.

        Returns:
            Local user ID, or None on a correlation miss

        Raises:
            stripe.StripeError: On transient Stripe failures (not a miss)
        """
        if not stripe_customer_id:
            logger.warning("Event carries no customer ID")
            return None

        user_id = await self.db.find_user_id_by_stripe_customer(stripe_customer_id)
        if user_id:
            return user_id

        if self.gateway is None:
            logger.warning("User not found for customer", stripe_customer_id=stripe_customer_id)
            return None

        try:
            customer = await self.gateway.retrieve_customer(stripe_customer_id)
        except stripe.InvalidRequestError as e:
            logger.warning(
                "Stripe customer not found",
                stripe_customer_id=stripe_customer_id,
                error=str(e),
            )
            return None

        metadata = customer.get("metadata") or {}
        candidate = metadata.get("userId")
        if not candidate:
            logger.warning(
                "Stripe customer has no userId metadata",
                stripe_customer_id=stripe_customer_id,
            )
            return None

        user = await self.db.get_user(candidate)
        if user is None:
            logger.warning(
                "User from customer metadata does not exist",
                stripe_customer_id=stripe_customer_id,
                user_id=candidate,
            )
            return None

        if user.stripe_customer_id and user.stripe_customer_id != stripe_customer_id:
            logger.warning(
                "User already linked to a different customer",
                user_id=candidate,
                stripe_customer_id=stripe_customer_id,
                linked_customer_id=user.stripe_customer_id,
            )
            return None

        if user.stripe_customer_id:
            return candidate

        if await self.db.link_stripe_customer(candidate, stripe_customer_id, self.context.now()):
            logger.info(
                "Stripe customer linked from metadata",
                user_id=candidate,
                stripe_customer_id=stripe_customer_id,
            )
            return candidate

        # A concurrent link won; accept it only if it points at this customer
        current = await self.db.get_user(candidate)
        if current is not None and current.stripe_customer_id == stripe_customer_id:
            return candidate

        logger.warning(
            "Stripe customer link lost to a different customer",
            user_id=candidate,
            stripe_customer_id=stripe_customer_id,
        )
        return None
