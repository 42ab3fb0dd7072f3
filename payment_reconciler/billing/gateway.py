"""
Stripe API gateway for the reconciliation core.

The only outbound Stripe calls the core makes:
- retrieving a payment intent with its settlement (balance transaction)
- retrieving a customer to read correlation metadata
- creating a customer for a local user

SDK calls are blocking; they run in a worker thread behind the Stripe
circuit breaker. Results are returned as plain dicts so handlers treat
webhook payloads and API responses the same way.
"""

import asyncio
import logging
from typing import Any

import stripe

from payment_reconciler.config import StripeConfig
from payment_reconciler.resilience.circuit_breakers import (
    with_retry,
    with_stripe_circuit_breaker,
)

logger = logging.getLogger(__name__)

SETTLEMENT_EXPAND = ["latest_charge.balance_transaction"]


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


class StripeGateway:
    """Thin async facade over the Stripe SDK."""

    def __init__(self, config: StripeConfig):
        """
        Args:
            config: Stripe configuration (must have a secret key)

        Raises:
            ValueError: If the secret key is missing
        """
        if not config.is_configured:
            raise ValueError("Stripe secret key not configured")

        self.config = config
        stripe.api_key = config.secret_key
        if config.api_version:
            stripe.api_version = config.api_version

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        """
        Retrieve a payment intent with latest_charge.balance_transaction expanded.

        Raises:
            stripe.StripeError: On API failure
            StripeCircuitBreakerError: If Stripe is failing fast
        """
        intent = await asyncio.to_thread(self._retrieve_payment_intent, payment_intent_id)
        return _as_dict(intent)

    async def retrieve_customer(self, stripe_customer_id: str) -> dict[str, Any]:
        """
        Retrieve a Stripe customer.

        Raises:
            stripe.InvalidRequestError: If the customer does not exist
            stripe.StripeError: On other API failures
        """
        customer = await asyncio.to_thread(self._retrieve_customer, stripe_customer_id)
        return _as_dict(customer)

    async def create_customer(
        self,
        email: str | None,
        name: str | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """
        Create a Stripe customer.

        The idempotency key makes concurrent or retried creations for the same
        local user resolve to a single Stripe customer.

        Returns:
            Stripe customer ID (cus_xxx)
        """
        customer = await asyncio.to_thread(
            self._create_customer, email, name, metadata, idempotency_key
        )
        logger.info(
            "Created Stripe customer",
            extra={"stripe_customer_id": customer["id"], "metadata": metadata},
        )
        return customer["id"]

    @staticmethod
    @with_stripe_circuit_breaker
    def _retrieve_payment_intent(payment_intent_id: str):
        return stripe.PaymentIntent.retrieve(payment_intent_id, expand=SETTLEMENT_EXPAND)

    @staticmethod
    @with_stripe_circuit_breaker
    def _retrieve_customer(stripe_customer_id: str):
        return stripe.Customer.retrieve(stripe_customer_id)

    @staticmethod
    @with_retry(max_attempts=3, exceptions=(stripe.APIConnectionError, stripe.RateLimitError))
    @with_stripe_circuit_breaker
    def _create_customer(email, name, metadata, idempotency_key):
        params: dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        return stripe.Customer.create(idempotency_key=idempotency_key, **params)
