"""
Idempotency ledger for Stripe webhook events.

Two strategies implement the same protocol:
- DurableLedger: persists every event in webhook_events and serializes
  deliveries of the same event ID with conditional writes
- DisabledLedger: degraded mode, admits everything and records nothing

Allowed status transitions:
    PENDING  -> COMPLETED | FAILED
    FAILED   -> RETRYING
    RETRYING -> COMPLETED | FAILED
"""

from datetime import timedelta
from enum import Enum
from typing import Protocol

from payment_reconciler.billing.context import ReconciliationContext
from payment_reconciler.models.billing import StripeEvent, WebhookProcessingStatus
from payment_reconciler.observability.logging import get_logger
from payment_reconciler.observability.metrics import track_ledger_decision
from payment_reconciler.storage.database import BillingDatabase

logger = get_logger(__name__)

_IN_FLIGHT = (WebhookProcessingStatus.PENDING, WebhookProcessingStatus.RETRYING)


class LedgerDecision(str, Enum):
    """Outcome of asking the ledger whether an event may be processed."""

    ADMITTED = "admitted"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"


class IdempotencyLedger(Protocol):
    """Gate against duplicate and concurrent processing of one event."""

    async def begin_processing(self, event: StripeEvent) -> LedgerDecision: ...

    async def complete(self, event_id: str) -> None: ...

    async def fail(self, event_id: str, reason: str) -> None: ...


class DurableLedger:
    """
    Ledger backed by the webhook_events table.

    Every decision is made by a single conditional INSERT or UPDATE, so two
    deliveries of the same event racing in different processes cannot both
    be admitted.
    """

    def __init__(
        self,
        db: BillingDatabase,
        context: ReconciliationContext,
        store_payload: bool = True,
    ):
        """
        Args:
            db: Billing database
            context: Reconciliation context (clock, processing timeout)
            store_payload: Keep the raw event JSON on the ledger row
        """
        self.db = db
        self.context = context
        self.store_payload = store_payload

    async def begin_processing(self, event: StripeEvent) -> LedgerDecision:
        """
        Admit an event for processing, or report why it must be skipped.

        Returns:
            ADMITTED on first sight, or on redelivery of a FAILED event
            (the row moves to RETRYING). ALREADY_PROCESSED if the event is
            COMPLETED. IN_PROGRESS if another delivery holds it.
        """
        now = self.context.now()
        payload = event.model_dump_json() if self.store_payload else None

        if await self.db.insert_webhook_event(event.id, event.type, payload, now):
            logger.info("Webhook event logged", status=WebhookProcessingStatus.PENDING.value)
            return self._decide(LedgerDecision.ADMITTED)

        if await self._admit_retry(event.id):
            return self._decide(LedgerDecision.ADMITTED)

        record = await self.db.get_webhook_event(event.id)
        if record is None:
            # Row vanished between statements; ledger rows are never deleted
            raise RuntimeError(f"Ledger row for {event.id} disappeared")

        if record.processing_status == WebhookProcessingStatus.COMPLETED:
            logger.info("Duplicate webhook event skipped", processed_at=str(record.processed_at))
            return self._decide(LedgerDecision.ALREADY_PROCESSED)

        # In flight elsewhere; take it over only if the holder looks dead
        stale_before = now - timedelta(seconds=self.context.processing_timeout_seconds)
        expired = await self.db.transition_webhook_event(
            event.id,
            from_statuses=_IN_FLIGHT,
            to_status=WebhookProcessingStatus.FAILED,
            now=now,
            error_message="processing lease expired",
            increment_retry=True,
            updated_before=stale_before,
        )
        if expired:
            logger.warning(
                "Abandoned webhook processing detected",
                previous_status=record.processing_status.value,
                last_update=str(record.updated_at),
            )
            if await self._admit_retry(event.id):
                return self._decide(LedgerDecision.ADMITTED)

        logger.warning(
            "Webhook event already being processed",
            status=record.processing_status.value,
        )
        return self._decide(LedgerDecision.IN_PROGRESS)

    async def complete(self, event_id: str) -> None:
        moved = await self.db.transition_webhook_event(
            event_id,
            from_statuses=_IN_FLIGHT,
            to_status=WebhookProcessingStatus.COMPLETED,
            now=self.context.now(),
        )
        if moved:
            logger.info("Webhook event status updated", status=WebhookProcessingStatus.COMPLETED.value)
        else:
            logger.warning("Webhook event was not in flight when completing", event_id=event_id)

    async def fail(self, event_id: str, reason: str) -> None:
        moved = await self.db.transition_webhook_event(
            event_id,
            from_statuses=_IN_FLIGHT,
            to_status=WebhookProcessingStatus.FAILED,
            now=self.context.now(),
            error_message=reason[:2000],
            increment_retry=True,
        )
        if moved:
            logger.warning(
                "Webhook event status updated",
                status=WebhookProcessingStatus.FAILED.value,
                error=reason,
            )
        else:
            logger.warning("Webhook event was not in flight when failing", event_id=event_id)

    async def _admit_retry(self, event_id: str) -> bool:
        admitted = await self.db.transition_webhook_event(
            event_id,
            from_statuses=(WebhookProcessingStatus.FAILED,),
            to_status=WebhookProcessingStatus.RETRYING,
            now=self.context.now(),
        )
        if admitted:
            logger.info("Retrying previously failed webhook event")
        return admitted

    @staticmethod
    def _decide(decision: LedgerDecision) -> LedgerDecision:
        track_ledger_decision(decision.value)
        return decision


class DisabledLedger:
    """
    Degraded mode: no durable record, no duplicate suppression.

    Selected when STRIPE_WEBHOOK_LOGGING_ENABLED is false (the default).
    """

    async def begin_processing(self, event: StripeEvent) -> LedgerDecision:
        logger.debug("Webhook event not logged (ledger disabled)", event_id=event.id)
        track_ledger_decision(LedgerDecision.ADMITTED.value)
        return LedgerDecision.ADMITTED

    async def complete(self, event_id: str) -> None:
        logger.debug("Webhook status update skipped (ledger disabled)", event_id=event_id)

    async def fail(self, event_id: str, reason: str) -> None:
        logger.debug(
            "Webhook status update skipped (ledger disabled)", event_id=event_id, error=reason
        )


def build_ledger(context: ReconciliationContext, db: BillingDatabase) -> IdempotencyLedger:
    """Select the ledger strategy for this process."""
    if context.ledger_enabled:
        return DurableLedger(db, context)
    return DisabledLedger()
