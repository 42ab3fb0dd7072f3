"""
Payment Reconciler - Stripe webhook reconciliation core.

Turns signature-verified Stripe webhook events into a local, auditable
record of transactions, subscriptions and payment methods, with
at-most-once processing per event ID.

Example:
    >>> from payment_reconciler import get_settings
    >>> settings = get_settings()
    >>> print(settings.database.path)
"""

from payment_reconciler.config import get_settings

__all__ = ["get_settings"]
