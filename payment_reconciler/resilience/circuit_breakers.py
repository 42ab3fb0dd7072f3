"""
Fail-fast and retry policies for outbound Stripe calls.

Handlers call Stripe for settlement details and customer metadata while the
webhook request is open. If Stripe is struggling, the breaker opens so those
lookups fail immediately and the delivery is answered well inside Stripe's
own timeout.

Breaker lifecycle: closed (calls pass) -> open (calls refused) after
repeated server-side failures -> half-open after the reset timeout, where
one trial call decides whether it closes again.
"""

import functools
import logging

import stripe
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class StripeCircuitBreakerError(Exception):
    """Stripe calls are being refused while the breaker is open."""

    pass


class _StateLoggingListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state) -> None:
        new_name = getattr(new_state, "name", str(new_state))
        extra = {
            "breaker": cb.name,
            "from_state": getattr(old_state, "name", str(old_state)),
            "to_state": new_name,
            "failures": cb.fail_counter,
        }
        if new_name == "open":
            logger.error("Stripe breaker opened; lookups will fail fast", extra=extra)
        elif new_name == "half-open":
            logger.warning("Stripe breaker half-open; next call is a trial", extra=extra)
        else:
            logger.info("Stripe breaker closed", extra=extra)


# Client-side errors (bad request, missing object, declined card) say nothing
# about Stripe's health and do not count towards opening.
stripe_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    exclude=[stripe.InvalidRequestError, stripe.CardError],
    listeners=[_StateLoggingListener()],
    name="Stripe",
)


def get_stripe_breaker() -> CircuitBreaker:
    return stripe_breaker


def reset_all_breakers() -> None:
    """Force the breaker closed (tests, manual recovery)."""
    stripe_breaker.close()
    logger.info("Stripe breaker reset")


def with_stripe_circuit_breaker(func):
    """
    Run a blocking Stripe SDK call through the breaker.

    Raises:
        StripeCircuitBreakerError: If the breaker is open, or the call just
            opened it
    """

    @functools.wraps(func)
    def guarded(*args, **kwargs):
        try:
            return stripe_breaker.call(func, *args, **kwargs)
        except CircuitBreakerError as e:
            logger.warning(
                "Stripe call refused by open breaker",
                extra={"call": func.__name__, "state": stripe_breaker.current_state},
            )
            raise StripeCircuitBreakerError(
                f"Stripe circuit breaker open; retry after {stripe_breaker.reset_timeout}s"
            ) from e

    return guarded


def with_retry(
    max_attempts: int = 3,
    min_wait: int = 1,
    max_wait: int = 10,
    exceptions: tuple[type[Exception], ...] = (Exception,),
):
    """
    Exponential backoff for calls that are safe to repeat.

    Only idempotent calls qualify (read-only, or carrying a Stripe
    idempotency key). Event handling is never retried in-process; Stripe
    redelivers instead.
    """
    return retry(
        retry=retry_if_exception_type(exceptions),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        reraise=True,
    )
