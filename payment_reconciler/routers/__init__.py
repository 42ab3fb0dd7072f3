"""
API routers for the payment reconciler.

Routers:
- billing: Users, customer linking and reconciled state (admin only)
"""

from payment_reconciler.routers.billing import router as billing_router

__all__ = ["billing_router"]
