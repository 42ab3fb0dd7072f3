"""
Reconciliation context passed explicitly into every billing component.

Holds the configuration the core needs (ledger durability, currency
normalization, clock) so components never read global settings.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from payment_reconciler.config import StripeConfig

# Stripe amounts for these currencies are not multiplied by 100
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
        "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
    }
)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ReconciliationContext:
    """Per-process configuration for the reconciliation core."""

    ledger_enabled: bool = False
    default_currency: str = "usd"
    minor_unit_divisor: int = 100
    processing_timeout_seconds: int = 300
    clock: Callable[[], datetime] = field(default=utc_now)

    @classmethod
    def from_config(cls, config: StripeConfig) -> "ReconciliationContext":
        """Build the context from Stripe settings."""
        return cls(
            ledger_enabled=config.webhook_logging_enabled,
            default_currency=config.default_currency,
            processing_timeout_seconds=config.processing_timeout_seconds,
        )

    def now(self) -> datetime:
        return self.clock()

    def minor_to_major(self, value: int | float | str | None, currency: str | None = None) -> Decimal:
        """
        Convert a Stripe minor-unit amount (cents) to the major unit.

        Zero-decimal currencies (JPY, KRW, ...) are already in the major unit.
        Missing or malformed values convert to 0.00.
        """
        if value is None or isinstance(value, bool):
            return Decimal("0.00")
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return Decimal("0.00")

        if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES:
            divisor = Decimal(1)
        else:
            divisor = Decimal(self.minor_unit_divisor)
        return (amount / divisor).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def currency_or_default(self, currency: str | None) -> str:
        """Upper-cased ISO currency code, falling back to the default currency."""
        return (currency or self.default_currency).upper()
