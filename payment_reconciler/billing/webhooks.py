"""
Stripe webhook event handling.

StripeWebhookHandler verifies the signature and parses the event;
WebhookDispatcher gates it through the idempotency ledger and routes it to
exactly one handler:

- checkout.session.completed
- invoice.payment_succeeded / invoice.payment_failed / invoice.upcoming
- payment_method.attached
- customer.subscription.created / updated / deleted / trial_will_end
- payment_intent.succeeded / created / payment_failed / canceled
- charge.refunded

Any other event type is acknowledged without dispatch.
"""

import json
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

import stripe
from pydantic import ValidationError

from payment_reconciler.billing.context import ReconciliationContext
from payment_reconciler.billing.customers import CustomerLinker
from payment_reconciler.billing.gateway import StripeGateway
from payment_reconciler.billing.ledger import IdempotencyLedger, LedgerDecision, build_ledger
from payment_reconciler.billing.payment_methods import PaymentMethodRegistry
from payment_reconciler.billing.plans import load_price_catalog
from payment_reconciler.billing.subscriptions import SubscriptionStateMachine
from payment_reconciler.billing.timestamps import resolve_timestamp
from payment_reconciler.billing.transactions import (
    Settlement,
    TransactionRecorder,
    resolve_settlement,
)
from payment_reconciler.config import Settings, StripeConfig
from payment_reconciler.models.billing import StripeEvent, TransactionStatus, TransactionType
from payment_reconciler.observability.logging import WebhookContext, get_logger
from payment_reconciler.observability.metrics import track_webhook_event
from payment_reconciler.resilience.circuit_breakers import StripeCircuitBreakerError
from payment_reconciler.storage.database import BillingDatabase

logger = get_logger(__name__)


class WebhookError(Exception):
    """Base exception for webhook processing errors."""

    pass


class WebhookVerificationError(WebhookError):
    """Payload or signature rejected. Stripe should not retry."""

    pass


class WebhookConfigurationError(WebhookError):
    """Webhook secret not configured."""

    pass


class WebhookProcessingError(WebhookError):
    """Handler failed; the event must be redelivered."""

    pass


class EventInProgressError(WebhookProcessingError):
    """Another delivery of the same event is being processed."""

    pass


class SupportedEventType(str, Enum):
    """Stripe event types with a handler; anything else is acknowledged and ignored."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPCOMING = "invoice.upcoming"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_CREATED = "payment_intent.created"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    CHARGE_REFUNDED = "charge.refunded"

    @classmethod
    def parse(cls, event_type: str) -> "SupportedEventType | None":
        try:
            return cls(event_type)
        except ValueError:
            return None


EventHandler = Callable[[dict[str, Any]], Awaitable[str]]


def validate_handler_table(table: Mapping[SupportedEventType, EventHandler]) -> None:
    """
    Raises:
        ValueError: If any supported event type has no handler
    """
    missing = [member.value for member in SupportedEventType if member not in table]
    if missing:
        raise ValueError(f"No handler registered for event types: {', '.join(missing)}")


@dataclass(frozen=True)
class DispatchResult:
    """Outcome reported back to Stripe."""

    status: str
    event_id: str
    event_type: str
    message: str | None = None

    def to_response(self) -> dict[str, Any]:
        return {"status": self.status, "event_id": self.event_id, "message": self.message}


def _id_of(value: Any) -> str | None:
    """ID of a Stripe reference that may be a string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


class WebhookDispatcher:
    """
    Runs a verified event through the ledger and its handler.

    Each delivery makes exactly one ledger transition: COMPLETED when the
    handler returns, FAILED when it raises. Handlers that write more than
    once do so inside one store transaction, so a failed delivery leaves
    nothing behind for the redelivery to apply twice.
    """

    def __init__(
        self,
        context: ReconciliationContext,
        db: BillingDatabase,
        ledger: IdempotencyLedger,
        transactions: TransactionRecorder,
        subscriptions: SubscriptionStateMachine,
        customers: CustomerLinker,
        payment_methods: PaymentMethodRegistry,
        gateway: StripeGateway | None = None,
    ):
        self.context = context
        self.db = db
        self.ledger = ledger
        self.transactions = transactions
        self.subscriptions = subscriptions
        self.customers = customers
        self.payment_methods = payment_methods
        self.gateway = gateway

        self.handlers: dict[SupportedEventType, EventHandler] = {
            SupportedEventType.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
            SupportedEventType.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_paid,
            SupportedEventType.INVOICE_PAYMENT_FAILED: self._handle_invoice_failed,
            SupportedEventType.INVOICE_UPCOMING: self._handle_invoice_upcoming,
            SupportedEventType.PAYMENT_METHOD_ATTACHED: self._handle_payment_method_attached,
            SupportedEventType.SUBSCRIPTION_CREATED: self._handle_subscription_created,
            SupportedEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            SupportedEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            SupportedEventType.SUBSCRIPTION_TRIAL_WILL_END: self._handle_trial_will_end,
            SupportedEventType.PAYMENT_INTENT_SUCCEEDED: self._handle_payment_intent_succeeded,
            SupportedEventType.PAYMENT_INTENT_CREATED: self._handle_payment_intent_created,
            SupportedEventType.PAYMENT_INTENT_FAILED: self._handle_payment_intent_failed,
            SupportedEventType.PAYMENT_INTENT_CANCELED: self._handle_payment_intent_canceled,
            SupportedEventType.CHARGE_REFUNDED: self._handle_charge_refunded,
        }
        validate_handler_table(self.handlers)

    async def process(self, event: StripeEvent) -> DispatchResult:
        """
        Process one verified event.

        Returns:
            DispatchResult with status processed, duplicate or ignored

        Raises:
            EventInProgressError: If another delivery holds the event
            WebhookProcessingError: If the handler failed
        """
        started = time.perf_counter()
        decision = await self.ledger.begin_processing(event)

        if decision == LedgerDecision.ALREADY_PROCESSED:
            track_webhook_event(event.type, "duplicate")
            return DispatchResult("duplicate", event.id, event.type, "Event already processed")

        if decision == LedgerDecision.IN_PROGRESS:
            track_webhook_event(event.type, "in_progress")
            raise EventInProgressError(f"Event {event.id} is already being processed")

        event_type = SupportedEventType.parse(event.type)
        if event_type is None:
            logger.warning("Unhandled webhook event type")
            await self.ledger.complete(event.id)
            track_webhook_event(event.type, "ignored")
            return DispatchResult("ignored", event.id, event.type, f"Unhandled event: {event.type}")

        handler = self.handlers[event_type]
        try:
            message = await handler(event.object)
        except Exception as e:
            logger.error("Webhook event processing failed", error=str(e), exc_info=True)
            await self.ledger.fail(event.id, str(e) or type(e).__name__)
            track_webhook_event(event.type, "failed", time.perf_counter() - started)
            raise WebhookProcessingError(f"Event processing failed: {e}") from e

        await self.ledger.complete(event.id)
        track_webhook_event(event.type, "processed", time.perf_counter() - started)
        logger.info("Webhook event processed", result=message)
        return DispatchResult("processed", event.id, event.type, message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_user(self, obj: dict[str, Any]) -> str | None:
        return await self.customers.resolve_user(_id_of(obj.get("customer")))

    async def _retrieve_payment_intent(self, payment_intent_id: str | None) -> dict[str, Any] | None:
        """Fetch a payment intent for enrichment; failures degrade to None."""
        if not payment_intent_id or self.gateway is None:
            return None
        try:
            return await self.gateway.retrieve_payment_intent(payment_intent_id)
        except (stripe.StripeError, StripeCircuitBreakerError) as e:
            logger.warning(
                "Could not retrieve payment intent details",
                payment_intent_id=payment_intent_id,
                error=str(e),
            )
            return None

    async def _settlement(self, payment_intent_id: str | None, gross) -> Settlement:
        intent = await self._retrieve_payment_intent(payment_intent_id)
        return resolve_settlement(intent, gross, self.context)

    def _amount(self, obj: dict[str, Any], key: str):
        return self.context.minor_to_major(obj.get(key), obj.get("currency"))

    def _currency(self, obj: dict[str, Any]) -> str:
        return self.context.currency_or_default(obj.get("currency"))

    @staticmethod
    def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
        subscription_id = _id_of(invoice.get("subscription"))
        if subscription_id:
            return subscription_id
        # Newer API versions nest it under the invoice parent
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") if isinstance(parent, dict) else None
        return _id_of(details.get("subscription")) if isinstance(details, dict) else None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_checkout_completed(self, session: dict[str, Any]) -> str:
        user_id = await self._resolve_user(session)
        if not user_id:
            return "Unknown customer"

        mode = session.get("mode")
        reference = (
            _id_of(session.get("payment_intent"))
            or _id_of(session.get("subscription"))
            or session["id"]
        )
        await self.transactions.record(
            user_id=user_id,
            external_ref=reference,
            transaction_type=(
                TransactionType.SUBSCRIPTION if mode == "subscription" else TransactionType.PAYMENT
            ),
            amount=self._amount(session, "amount_total"),
            currency=self._currency(session),
            status=TransactionStatus.COMPLETED,
            description=f"Checkout session completed - {mode}",
            metadata={
                "sessionId": session["id"],
                "mode": mode,
                "customerEmail": session.get("customer_email"),
            },
        )
        return f"Checkout session recorded for {user_id}"

    async def _handle_invoice_paid(self, invoice: dict[str, Any]) -> str:
        user_id = await self._resolve_user(invoice)
        if not user_id:
            return "Unknown customer"

        raw_intent = invoice.get("payment_intent")
        gross = self._amount(invoice, "amount_paid")
        settlement = await self._settlement(raw_intent if isinstance(raw_intent, str) else None, gross)

        await self.transactions.record(
            user_id=user_id,
            external_ref=_id_of(raw_intent) or invoice["id"],
            transaction_type=TransactionType.SUBSCRIPTION,
            amount=gross,
            currency=self._currency(invoice),
            status=TransactionStatus.COMPLETED,
            description=f"Invoice payment succeeded - {invoice.get('number')}",
            metadata={
                "invoiceId": invoice["id"],
                "invoiceNumber": invoice.get("number"),
                "subscriptionId": self._invoice_subscription_id(invoice),
                "periodStart": invoice.get("period_start"),
                "periodEnd": invoice.get("period_end"),
            },
            fee=settlement.fee,
            net_amount=settlement.net,
            processed_at=self.context.now(),
        )
        return f"Invoice payment recorded for {user_id}"

    async def _handle_invoice_failed(self, invoice: dict[str, Any]) -> str:
        user_id = await self._resolve_user(invoice)
        if not user_id:
            return "Unknown customer"

        subscription_id = self._invoice_subscription_id(invoice)
        failure_reason = "Unknown failure reason"
        raw_intent = invoice.get("payment_intent")
        intent = await self._retrieve_payment_intent(raw_intent if isinstance(raw_intent, str) else None)
        error = (intent or {}).get("last_payment_error")
        if error:
            failure_reason = error.get("message") or error.get("code") or "Payment failed"

        async with self.db.transaction():
            await self.subscriptions.on_payment_failed(subscription_id)
            await self.transactions.record(
                user_id=user_id,
                external_ref=_id_of(raw_intent) or invoice["id"],
                transaction_type=TransactionType.SUBSCRIPTION,
                amount=self._amount(invoice, "amount_due"),
                currency=self._currency(invoice),
                status=TransactionStatus.FAILED,
                description=f"Subscription payment failed: {invoice['id']}",
                metadata={
                    "invoiceId": invoice["id"],
                    "subscriptionId": subscription_id,
                    "attemptCount": invoice.get("attempt_count"),
                    "nextPaymentAttempt": invoice.get("next_payment_attempt"),
                },
                failure_reason=failure_reason,
            )
        return f"Invoice payment failure recorded for {user_id}"

    async def _handle_invoice_upcoming(self, invoice: dict[str, Any]) -> str:
        user_id = await self._resolve_user(invoice)
        if not user_id:
            return "Unknown customer"

        period_start = resolve_timestamp(invoice.get("period_start"), field="period_start")
        period_end = resolve_timestamp(invoice.get("period_end"), field="period_end")
        logger.info(
            "Upcoming invoice",
            user_id=user_id,
            invoice_id=invoice.get("id"),
            amount=str(self._amount(invoice, "amount_due")),
            currency=self._currency(invoice),
            period_start=period_start.isoformat() if period_start else None,
            period_end=period_end.isoformat() if period_end else None,
        )
        return f"Upcoming invoice noted for {user_id}"

    async def _handle_payment_method_attached(self, payment_method: dict[str, Any]) -> str:
        user_id = await self._resolve_user(payment_method)
        if not user_id:
            return "Unknown customer"

        saved = await self.payment_methods.save_card(user_id, payment_method)
        if saved is None:
            return f"Payment method {payment_method.get('id')} skipped"
        return f"Payment method saved for {user_id}"

    async def _handle_subscription_created(self, subscription: dict[str, Any]) -> str:
        user_id = await self._resolve_user(subscription)
        if not user_id:
            return "Unknown customer"

        await self.subscriptions.on_created(user_id, subscription)
        return f"Subscription created for {user_id}"

    async def _handle_subscription_updated(self, subscription: dict[str, Any]) -> str:
        record = await self.subscriptions.on_updated(subscription)
        if record is None:
            return "Subscription not found"
        return f"Subscription {record.external_subscription_id} is {record.status.value}"

    async def _handle_subscription_deleted(self, subscription: dict[str, Any]) -> str:
        record = await self.subscriptions.on_deleted(subscription)
        if record is None:
            return "Subscription not found"
        return f"Subscription {record.external_subscription_id} canceled"

    async def _handle_trial_will_end(self, subscription: dict[str, Any]) -> str:
        user_id = await self._resolve_user(subscription)
        if not user_id:
            return "Unknown customer"

        await self.subscriptions.on_trial_will_end(subscription)
        return f"Trial ending notification for {user_id}"

    async def _handle_payment_intent_succeeded(self, payment_intent: dict[str, Any]) -> str:
        user_id = await self._resolve_user(payment_intent)
        if not user_id:
            return "Unknown customer"

        if payment_intent.get("invoice"):
            # Recorded by invoice.payment_succeeded
            logger.info(
                "Payment intent belongs to an invoice, skipped",
                payment_intent_id=payment_intent["id"],
            )
            return "Invoice payment intent skipped"

        gross = self._amount(payment_intent, "amount")
        settlement = await self._settlement(payment_intent["id"], gross)

        await self.transactions.record(
            user_id=user_id,
            external_ref=payment_intent["id"],
            transaction_type=TransactionType.PAYMENT,
            amount=gross,
            currency=self._currency(payment_intent),
            status=TransactionStatus.COMPLETED,
            description=payment_intent.get("description") or "Payment completed",
            metadata={
                "paymentMethodId": _id_of(payment_intent.get("payment_method")),
                "metadata": payment_intent.get("metadata") or {},
            },
            fee=settlement.fee,
            net_amount=settlement.net,
            processed_at=self.context.now(),
        )
        return f"Payment recorded for {user_id}"

    async def _handle_payment_intent_created(self, payment_intent: dict[str, Any]) -> str:
        logger.info(
            "Payment intent created",
            payment_intent_id=payment_intent.get("id"),
            amount=str(self._amount(payment_intent, "amount")),
            currency=self._currency(payment_intent),
        )
        return "Payment intent creation noted"

    async def _handle_payment_intent_failed(self, payment_intent: dict[str, Any]) -> str:
        user_id = await self._resolve_user(payment_intent)
        if not user_id:
            return "Unknown customer"

        error = payment_intent.get("last_payment_error") or {}
        failure_message = error.get("message")
        await self.transactions.record(
            user_id=user_id,
            external_ref=payment_intent["id"],
            transaction_type=TransactionType.PAYMENT,
            amount=self._amount(payment_intent, "amount"),
            currency=self._currency(payment_intent),
            status=TransactionStatus.FAILED,
            description=payment_intent.get("description") or "Payment failed",
            metadata={
                "paymentMethodId": _id_of(payment_intent.get("payment_method")),
                "failureCode": error.get("code"),
                "failureMessage": failure_message,
                "metadata": payment_intent.get("metadata") or {},
            },
            failure_reason=failure_message or error.get("code") or "Payment failed",
        )
        return f"Payment failure recorded for {user_id}"

    async def _handle_payment_intent_canceled(self, payment_intent: dict[str, Any]) -> str:
        user_id = await self._resolve_user(payment_intent)
        if not user_id:
            return "Unknown customer"

        await self.transactions.record(
            user_id=user_id,
            external_ref=payment_intent["id"],
            transaction_type=TransactionType.PAYMENT,
            amount=self._amount(payment_intent, "amount"),
            currency=self._currency(payment_intent),
            status=TransactionStatus.CANCELLED,
            description=payment_intent.get("description") or "Payment canceled",
            metadata={
                "cancellationReason": payment_intent.get("cancellation_reason"),
                "metadata": payment_intent.get("metadata") or {},
            },
        )
        return f"Payment cancellation recorded for {user_id}"

    async def _handle_charge_refunded(self, charge: dict[str, Any]) -> str:
        user_id = await self._resolve_user(charge)
        if not user_id:
            return "Unknown customer"

        refunds = (charge.get("refunds") or {}).get("data") or []
        refund = refunds[0] if refunds else None
        reference = _id_of(charge.get("payment_intent")) or charge["id"]

        async with self.db.transaction():
            if refund:
                amount = self.context.minor_to_major(refund.get("amount"), charge.get("currency"))
            else:
                # amount_refunded is cumulative; record only what is new
                refunded_so_far = await self.transactions.refunded_total(reference)
                amount = max(self._amount(charge, "amount_refunded") - refunded_so_far, Decimal("0"))

            await self.transactions.record(
                user_id=user_id,
                external_ref=reference,
                transaction_type=TransactionType.REFUND,
                amount=amount,
                currency=self._currency(charge),
                status=TransactionStatus.REFUNDED,
                description=f"Refund for charge {charge['id']}",
                metadata={
                    "originalChargeId": charge["id"],
                    "refundId": refund.get("id") if refund else None,
                    "refundReason": refund.get("reason") if refund else None,
                    "refundStatus": refund.get("status") if refund else None,
                    "metadata": charge.get("metadata") or {},
                },
            )

            if charge.get("refunded"):
                # Earlier FAILED or CANCELLED attempts under the same intent keep their status
                await self.transactions.update_status(
                    reference,
                    TransactionStatus.REFUNDED,
                    from_statuses=(TransactionStatus.COMPLETED,),
                    types=(TransactionType.PAYMENT, TransactionType.SUBSCRIPTION),
                )
        return f"Refund recorded for {user_id}"


class StripeWebhookHandler:
    """
    Transport-facing entry point: verify, parse, dispatch.
    """

    def __init__(self, config: StripeConfig, dispatcher: WebhookDispatcher):
        """
        Args:
            config: Stripe configuration (for webhook secret)
            dispatcher: Dispatcher for verified events
        """
        self.config = config
        self.dispatcher = dispatcher

    def verify(self, payload: bytes, signature: str) -> StripeEvent:
        """
        Verify the Stripe signature and parse the event.

        Raises:
            WebhookConfigurationError: If no webhook secret is configured
            WebhookVerificationError: If the payload or signature is invalid
        """
        if not self.config.webhook_secret:
            raise WebhookConfigurationError("Webhook secret not configured")

        try:
            stripe.Webhook.construct_event(payload, signature, self.config.webhook_secret)
        except ValueError as e:
            raise WebhookVerificationError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError("Invalid signature") from e

        try:
            return StripeEvent.model_validate(json.loads(payload))
        except (ValueError, ValidationError) as e:
            raise WebhookVerificationError(f"Malformed event: {e}") from e

    async def handle_event(self, payload: bytes, signature: str) -> DispatchResult:
        """
        Process a Stripe webhook delivery.

        Args:
            payload: Raw webhook payload
            signature: Stripe signature header (Stripe-Signature)

        Returns:
            DispatchResult: processed, duplicate or ignored

        Raises:
            WebhookConfigurationError: If no webhook secret is configured
            WebhookVerificationError: If the payload or signature is invalid
            WebhookProcessingError: If processing failed (EventInProgressError
                if another delivery holds the event)
        """
        event = self.verify(payload, signature)

        with WebhookContext(event.id, event.type):
            logger.info("Processing Stripe webhook event", livemode=event.livemode)
            return await self.dispatcher.process(event)


def build_dispatcher(
    context: ReconciliationContext,
    db: BillingDatabase,
    gateway: StripeGateway | None = None,
    price_catalog_path: str | None = None,
) -> WebhookDispatcher:
    """Wire the reconciliation components around one database and context."""
    catalog = load_price_catalog(price_catalog_path) if price_catalog_path else None
    return WebhookDispatcher(
        context=context,
        db=db,
        ledger=build_ledger(context, db),
        transactions=TransactionRecorder(db, context),
        subscriptions=SubscriptionStateMachine(db, context, catalog),
        customers=CustomerLinker(db, context, gateway),
        payment_methods=PaymentMethodRegistry(db, context),
        gateway=gateway,
    )


def build_webhook_handler(settings: Settings, db: BillingDatabase) -> StripeWebhookHandler:
    """
    Build the webhook handler from settings.

    Without a Stripe secret key the handler still reconciles events, but
    skips settlement lookups and customer-metadata correlation.
    """
    stripe_config = settings.stripe
    context = ReconciliationContext.from_config(stripe_config)
    gateway = StripeGateway(stripe_config) if stripe_config.is_configured else None
    if gateway is None:
        logger.warning("Stripe API key not configured - remote lookups disabled")

    dispatcher = build_dispatcher(context, db, gateway, stripe_config.price_catalog_path)
    logger.info(
        "Webhook handler initialized",
        ledger_enabled=context.ledger_enabled,
        remote_lookups=gateway is not None,
    )
    return StripeWebhookHandler(stripe_config, dispatcher)


# Global webhook handler instance
_webhook_handler: StripeWebhookHandler | None = None


def get_webhook_handler(settings: Settings, db: BillingDatabase) -> StripeWebhookHandler:
    """
    Get global webhook handler instance (singleton).

    Returns:
        StripeWebhookHandler: Webhook handler instance
    """
    global _webhook_handler
    if _webhook_handler is None:
        _webhook_handler = build_webhook_handler(settings, db)
    return _webhook_handler


def reset_webhook_handler() -> None:
    global _webhook_handler
    _webhook_handler = None
