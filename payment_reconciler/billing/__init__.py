"""
Stripe reconciliation core.

- Idempotency ledger (webhook_events)
- Transaction recording with settlement fees
- Subscription state machine
- Customer correlation
- Webhook dispatch
"""

from payment_reconciler.billing.context import ReconciliationContext
from payment_reconciler.billing.ledger import DisabledLedger, DurableLedger, LedgerDecision
from payment_reconciler.billing.webhooks import (
    StripeWebhookHandler,
    SupportedEventType,
    WebhookDispatcher,
)

__all__ = [
    "ReconciliationContext",
    "DurableLedger",
    "DisabledLedger",
    "LedgerDecision",
    "StripeWebhookHandler",
    "SupportedEventType",
    "WebhookDispatcher",
]
