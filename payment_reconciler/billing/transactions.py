"""
Transaction recording and settlement resolution.

Amounts reaching this module are already in the major currency unit;
conversion from Stripe's minor units happens in the webhook handlers.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from payment_reconciler.billing.context import ReconciliationContext
from payment_reconciler.models.billing import (
    Transaction,
    TransactionStatus,
    TransactionType,
)
from payment_reconciler.observability.logging import get_logger
from payment_reconciler.observability.metrics import track_transaction_recorded
from payment_reconciler.storage.database import BillingDatabase

logger = get_logger(__name__)


@dataclass(frozen=True)
class Settlement:
    """Stripe fee and net amount behind a payment, in the major unit."""

    fee: Decimal
    net: Decimal


def resolve_settlement(
    payment_intent: dict[str, Any] | None,
    gross: Decimal,
    context: ReconciliationContext,
) -> Settlement:
    """
    Extract fee and net from an expanded payment intent.

    Reads payment_intent.latest_charge.balance_transaction when both levels
    are expanded objects. Anything less falls back to fee = 0, net = gross.

    Args:
        payment_intent: Payment intent dict (or None if it could not be fetched)
        gross: Gross amount already in the major unit
        context: Reconciliation context (unit conversion)
    """
    fallback = Settlement(fee=Decimal("0"), net=gross)
    if not payment_intent:
        return fallback

    charge = payment_intent.get("latest_charge")
    if not isinstance(charge, dict):
        return fallback

    balance_transaction = charge.get("balance_transaction")
    if not isinstance(balance_transaction, dict):
        return fallback

    currency = balance_transaction.get("currency")
    fee = balance_transaction.get("fee")
    net = balance_transaction.get("net")
    return Settlement(
        fee=context.minor_to_major(fee, currency) if fee is not None else Decimal("0"),
        net=context.minor_to_major(net, currency) if net is not None else gross,
    )


class TransactionRecorder:
    """
    Appends transaction records and applies keyed status corrections.
    """

    def __init__(self, db: BillingDatabase, context: ReconciliationContext):
        self.db = db
        self.context = context

    async def record(
        self,
        user_id: str,
        external_ref: str,
        transaction_type: TransactionType,
        amount: Decimal,
        currency: str,
        status: TransactionStatus,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        failure_reason: str | None = None,
        fee: Decimal | None = None,
        net_amount: Decimal | None = None,
        processed_at: datetime | None = None,
    ) -> Transaction:
        """
        Record a transaction.

        Args:
            user_id: Local user the transaction belongs to
            external_ref: Stripe payment intent / charge / invoice / session ID
            transaction_type: PAYMENT, SUBSCRIPTION or REFUND
            amount: Gross amount in the major unit
            currency: ISO currency code (stored upper-case)
            status: Transaction status
            description: Human-readable description
            metadata: Opaque key/value mapping
            failure_reason: Why the payment failed, if it did
            fee: Stripe fee (defaults to 0)
            net_amount: Net amount (defaults to amount)
            processed_at: When Stripe processed the money movement

        Returns:
            Transaction: The stored record
        """
        now = self.context.now()
        transaction = Transaction(
            user_id=user_id,
            external_reference_id=external_ref,
            type=transaction_type,
            amount=amount,
            currency=currency.upper(),
            status=status,
            description=description,
            metadata=metadata or {},
            stripe_fee=fee if fee is not None else Decimal("0"),
            net_amount=net_amount if net_amount is not None else amount,
            failure_reason=failure_reason,
            processed_at=processed_at,
            created_at=now,
            updated_at=now,
        )

        stored = await self.db.insert_transaction(transaction)
        track_transaction_recorded(transaction_type.value, status.value)

        logger.info(
            "Transaction recorded",
            user_id=user_id,
            reference_id=external_ref,
            type=transaction_type.value,
            status=status.value,
            amount=str(stored.amount),
            currency=stored.currency,
        )
        return stored

    async def update_status(
        self,
        external_ref: str,
        status: TransactionStatus,
        failure_reason: str | None = None,
        from_statuses: Iterable[TransactionStatus] | None = None,
        types: Iterable[TransactionType] | None = None,
    ) -> int:
        """
        Correct the status of transactions recorded under external_ref.

        from_statuses and types narrow the rows touched; by default every
        row with the reference is corrected.

        Safe when nothing matches: the event may have arrived before, or
        without, the original record.

        Returns:
            int: Number of transactions updated
        """
        reason = failure_reason if status == TransactionStatus.FAILED else None
        updated = await self.db.update_transaction_status(
            external_ref,
            status,
            reason,
            self.context.now(),
            from_statuses=from_statuses,
            types=types,
        )

        if updated == 0:
            logger.warning(
                "No transaction found for status update",
                reference_id=external_ref,
                status=status.value,
            )
        else:
            logger.info(
                "Transaction status updated",
                reference_id=external_ref,
                status=status.value,
                count=updated,
            )
        return updated

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Transaction]:
        """Most recent transactions first."""
        return await self.db.list_transactions(user_id, limit=limit)

    async def refunded_total(self, external_ref: str) -> Decimal:
        """Sum of REFUND transactions already recorded under external_ref."""
        rows = await self.db.find_transactions_by_reference(external_ref)
        return sum(
            (row.amount for row in rows if row.type == TransactionType.REFUND),
            Decimal("0"),
        )
