"""
Storage layer for reconciled billing state.

SQLite in WAL mode; concurrent deliveries are serialized by conditional
writes rather than application locks.
"""

from payment_reconciler.storage.database import BillingDatabase, get_billing_db

__all__ = ["BillingDatabase", "get_billing_db"]
