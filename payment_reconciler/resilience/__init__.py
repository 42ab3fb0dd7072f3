"""
Resilience patterns for the Stripe API.

The circuit breaker keeps webhook handling fast when Stripe is failing.
"""

from payment_reconciler.resilience.circuit_breakers import (
    get_stripe_breaker,
    reset_all_breakers,
)

__all__ = [
    "get_stripe_breaker",
    "reset_all_breakers",
]
