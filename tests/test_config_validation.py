"""
Unit tests for config validation.

Tests the validate_configuration method and the placeholder filters on
credentials.
"""

import logging

import pytest

from payment_reconciler.config import (
    ConfigurationError,
    LoggingConfig,
    Settings,
    StripeConfig,
)


@pytest.fixture
def complete_settings() -> Settings:
    return Settings(
        stripe=StripeConfig(
            secret_key="sk_live_51abcdefghijklmnop",
            webhook_secret="whsec_abcdefghijklmnop",
            webhook_logging_enabled=True,
        ),
    )


@pytest.fixture
def settings_without_webhook_secret() -> Settings:
    return Settings(
        stripe=StripeConfig(secret_key="", webhook_secret="", webhook_logging_enabled=False),
    )


def test_validate_configuration_complete(complete_settings, caplog):
    with caplog.at_level(logging.WARNING):
        complete_settings.validate_configuration()

    assert caplog.records == []


def test_validate_configuration_warns_for_each_gap(settings_without_webhook_secret, caplog):
    """
    Development mode only warns, once per missing piece.
    """
    with caplog.at_level(logging.WARNING):
        settings_without_webhook_secret.validate_configuration()

    messages = [record.message for record in caplog.records]
    assert any("webhook secret not configured" in m for m in messages)
    assert any("secret key not configured" in m for m in messages)
    assert any("Webhook ledger disabled" in m for m in messages)


def test_strict_mode_requires_webhook_secret(settings_without_webhook_secret):
    with pytest.raises(ConfigurationError, match="STRIPE_WEBHOOK_SECRET"):
        settings_without_webhook_secret.validate_configuration(strict=True)


def test_production_requires_webhook_secret():
    settings = Settings(
        stripe=StripeConfig(webhook_secret=""),
        logging=LoggingConfig(environment="production"),
    )

    with pytest.raises(ConfigurationError):
        settings.validate_configuration()


@pytest.mark.parametrize(
    "secret",
    ["sk_live_your-key-here", "whsec_EXAMPLE", "changeme", "sk_test_xxx"],
)
def test_placeholder_stripe_secrets_are_discarded(secret, caplog):
    with caplog.at_level(logging.WARNING):
        config = StripeConfig(secret_key=secret, webhook_secret=secret)

    assert config.secret_key == ""
    assert config.webhook_secret == ""
    assert not config.is_configured
    assert any("placeholder" in record.message for record in caplog.records)


def test_real_stripe_secrets_are_kept():
    config = StripeConfig(secret_key="sk_test_51Habcdef", webhook_secret="whsec_1234567890")

    assert config.is_configured
    assert config.can_verify_webhooks


def test_default_currency_normalized():
    assert StripeConfig(default_currency="EUR").default_currency == "eur"


def test_short_admin_key_kept_with_warning(caplog):
    with caplog.at_level(logging.WARNING):
        settings = Settings(admin_api_key="k9Qw7Zr2Lm4Np8")

    assert settings.admin_api_key == "k9Qw7Zr2Lm4Np8"
    assert any("too short" in record.message for record in caplog.records)


def test_slow_request_thresholds_must_be_ordered():
    with pytest.raises(ValueError):
        LoggingConfig(slow_request_warning_ms=500.0, slow_request_error_ms=100.0)
