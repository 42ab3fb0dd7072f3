"""Tests for Stripe timestamp resolution."""

import logging
import math
from datetime import UTC, datetime

import pytest

from payment_reconciler.billing.timestamps import resolve_timestamp, to_timestamp


def test_valid_epoch_seconds_convert_to_utc():
    assert to_timestamp(1735689600) == datetime(2025, 1, 1, tzinfo=UTC)
    assert to_timestamp(1735689600.5) == datetime(2025, 1, 1, 0, 0, 0, 500000, tzinfo=UTC)


def test_none_is_silently_absent(caplog):
    with caplog.at_level(logging.WARNING):
        assert to_timestamp(None) is None
    assert caplog.records == []


@pytest.mark.parametrize(
    "value",
    ["1735689600", True, 0, -5, math.nan, math.inf, 10**20, {"seconds": 1}],
)
def test_invalid_values_are_logged_and_absent(value, caplog):
    with caplog.at_level(logging.WARNING):
        assert to_timestamp(value, field="current_period_start") is None

    assert any(record.message == "Invalid timestamp received" for record in caplog.records)


def test_resolve_returns_first_valid_candidate():
    resolved = resolve_timestamp(None, "garbage", 0, 1735689600, 1738368000, field="start")

    assert resolved == datetime(2025, 1, 1, tzinfo=UTC)


def test_resolve_never_produces_epoch_zero():
    assert resolve_timestamp(0, None, -1, field="start") is None


def test_resolve_without_candidates():
    assert resolve_timestamp(field="start") is None
