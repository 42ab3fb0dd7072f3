"""
Stripe epoch timestamp resolution.

Stripe reports times as integer epoch seconds, and the same logical time
(for example a billing period start) can live on several objects. Callers
pass candidates in priority order and get the first usable one.
"""

import logging
import math
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


def to_timestamp(value: Any, field: str | None = None) -> datetime | None:
    """
    Convert one Stripe epoch-seconds value to a UTC datetime.

    Args:
        value: Candidate value from a Stripe payload
        field: Field name for diagnostics

    Returns:
        datetime, or None if the value is absent or unusable. Non-numeric,
        NaN, infinite, zero, negative and out-of-range values are logged and
        treated as absent rather than producing an epoch-zero date.
    """
    if value is None:
        return None

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        logger.warning(
            "Invalid timestamp received",
            extra={"field": field, "value": repr(value), "reason": "not numeric"},
        )
        return None

    if not math.isfinite(value) or value <= 0:
        logger.warning(
            "Invalid timestamp received",
            extra={"field": field, "value": repr(value), "reason": "not a positive finite number"},
        )
        return None

    try:
        return datetime.fromtimestamp(value, UTC)
    except (OverflowError, OSError, ValueError):
        logger.warning(
            "Invalid timestamp received",
            extra={"field": field, "value": repr(value), "reason": "out of range"},
        )
        return None


def resolve_timestamp(*candidates: Any, field: str | None = None) -> datetime | None:
    """
    Return the first usable candidate converted to a UTC datetime.

    Args:
        *candidates: Epoch-second values in priority order
        field: Logical field name for diagnostics

    Returns:
        datetime, or None if no candidate qualifies

    Example:
        resolve_timestamp(
            item.get("current_period_start"),
            subscription.get("billing_cycle_anchor"),
            subscription.get("created"),
            field="current_period_start",
        )
    """
    for candidate in candidates:
        resolved = to_timestamp(candidate, field=field)
        if resolved is not None:
            return resolved
    return None
