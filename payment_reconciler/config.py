"""
Settings for the reconciler, read by pydantic-settings.

Each section has its own env prefix (STRIPE_, DATABASE_, SERVICE_, LOGGING_).
Process environment overrides .env, which overrides the defaults below.
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Startup cannot continue with the current settings."""

    pass


# Substrings that mark a value copied from .env.example rather than a real one
_PLACEHOLDER_PATTERNS = ("your-", "example", "dummy", "changeme", "xxx")


def _looks_like_placeholder(value: str, extra: tuple[str, ...] = ()) -> bool:
    lowered = value.lower()
    return any(marker in lowered for marker in (*_PLACEHOLDER_PATTERNS, *extra))


class StripeConfig(BaseSettings):
    """
    Stripe keys plus the knobs for webhook reconciliation.

    Placeholder keys are dropped at load time so the rest of the service sees
    "not configured" instead of failing on its first Stripe call.
    """

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    secret_key: str = ""
    webhook_secret: str = Field(default="", description="Signing secret of the endpoint (whsec_...)")
    api_version: str | None = Field(default=None, description="Leave unset to use the account default")

    # Off by default: the ledger table grows by one row per delivery
    webhook_logging_enabled: bool = False
    processing_timeout_seconds: int = Field(
        default=300,
        ge=10,
        le=86400,
        description="Seconds before an unfinished ledger claim may be taken over",
    )

    default_currency: str = Field(default="usd", min_length=3, max_length=3)
    price_catalog_path: str = Field(
        default=".env",
        description="File the price setup script writes STRIPE_PRICE_* lines into",
    )

    @field_validator("secret_key", "webhook_secret")
    @classmethod
    def drop_placeholder_secrets(cls, v: str, info) -> str:
        if v and _looks_like_placeholder(v):
            logging.warning("stripe %s looks like a placeholder; treating it as unset", info.field_name)
            return ""
        return v or ""

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.lower()

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def can_verify_webhooks(self) -> bool:
        return bool(self.webhook_secret)


class DatabaseConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = "./data/billing.db"
    busy_timeout_ms: int = Field(
        default=5000,
        ge=0,
        le=60000,
        description="SQLite busy timeout applied to every connection",
    )


class ServiceConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = False
    workers: int = Field(default=1, ge=1)

    # Stripe event payloads are a few KB; 1MB leaves plenty of headroom
    max_request_body_size: int = Field(default=1024 * 1024, ge=1024)


class LoggingConfig(BaseSettings):
    """structlog output and the slow request thresholds."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_output: bool = Field(default=True, description="False switches to the console renderer")
    colorized: bool = False

    slow_request_warning_ms: float = Field(default=250.0, ge=0.0)
    slow_request_error_ms: float = Field(default=2000.0, ge=0.0)

    # Attached to every log line
    service_name: str = "payment-reconciler"
    service_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"

    @field_validator("slow_request_error_ms")
    @classmethod
    def error_threshold_above_warning(cls, v: float, info) -> float:
        warning = info.data.get("slow_request_warning_ms")
        if warning is not None and v <= warning:
            raise ValueError(
                f"slow_request_error_ms ({v}) must be > slow_request_warning_ms ({warning})"
            )
        return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    stripe: StripeConfig = Field(default_factory=StripeConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Unset means the /api/v1/billing admin routes answer 503
    admin_api_key: str | None = Field(default=None, description="Shared secret for X-Admin-API-Key")

    @field_validator("admin_api_key")
    @classmethod
    def reject_weak_admin_key(cls, v: str | None) -> str | None:
        """Placeholder keys disable the admin routes; short keys only warn."""
        if not v:
            return None

        if _looks_like_placeholder(v, extra=("admin", "test")):
            logging.warning("admin_api_key looks like a placeholder; admin routes stay disabled")
            return None

        if len(v) < 32:
            logging.warning("admin_api_key is too short; use at least 32 random characters")
        return v

    def validate_configuration(self, strict: bool = False) -> None:
        """
        Startup checks that span several sections.

        A missing webhook signing secret is fatal in strict mode and always in
        production. Elsewhere every gap is logged as a warning.

        Raises:
            ConfigurationError: When webhooks could not be verified in strict mode
        """
        if not self.stripe.can_verify_webhooks:
            if strict or self.logging.environment == "production":
                raise ConfigurationError(
                    "STRIPE_WEBHOOK_SECRET is not configured; webhook signatures cannot be verified"
                )
            logging.warning("Stripe webhook secret not configured; every delivery will be rejected")

        if not self.stripe.is_configured:
            logging.warning(
                "Stripe secret key not configured; settlement lookups and customer linking are off"
            )

        if not self.stripe.webhook_logging_enabled:
            logging.warning(
                "Webhook ledger disabled (STRIPE_WEBHOOK_LOGGING_ENABLED=false); "
                "redelivered events will be applied again"
            )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Load and validate settings once per process."""
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
