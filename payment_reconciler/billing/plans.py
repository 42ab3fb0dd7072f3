"""
Plan catalog and price ID lookup.

Price IDs are generated once in the Stripe dashboard (or by a setup script)
and written to the env file as STRIPE_PRICE_<PLAN>=price_xxx lines. The
catalog is read-only at runtime; it only helps name a subscription whose
price carries no nickname.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

PRICE_KEY_PREFIX = "STRIPE_PRICE_"


@dataclass(frozen=True)
class PlanDefinition:
    """A sellable plan. Amount is in the minor unit, as Stripe expects it."""

    name: str
    amount: int
    currency: str = "usd"
    recurring_interval: str | None = "month"

    @property
    def is_recurring(self) -> bool:
        return self.recurring_interval is not None


PLAN_CATALOG: tuple[PlanDefinition, ...] = (
    PlanDefinition(name="plan 1", amount=12900),
    PlanDefinition(name="plan 2", amount=19900),
    PlanDefinition(name="plan 3", amount=39900, recurring_interval=None),
    PlanDefinition(name="plan 34", amount=79900, recurring_interval=None),
)


def normalize_plan_env_key(plan_name: str) -> str:
    """
    Env key holding a plan's price ID.

    Example:
        "plan 34" -> "STRIPE_PRICE_PLAN_34"
    """
    return PRICE_KEY_PREFIX + re.sub(r"[^A-Z0-9]", "_", plan_name.upper())


@dataclass(frozen=True)
class PriceCatalog:
    """Bidirectional price ID <-> plan name mapping."""

    names_by_price: dict[str, str] = field(default_factory=dict)
    prices_by_name: dict[str, str] = field(default_factory=dict)

    def plan_name_for(self, price_id: str | None) -> str | None:
        if not price_id:
            return None
        return self.names_by_price.get(price_id)

    def price_id_for(self, plan_name: str) -> str | None:
        return self.prices_by_name.get(plan_name)

    def __len__(self) -> int:
        return len(self.names_by_price)


def load_price_catalog(
    path: str | Path, plans: tuple[PlanDefinition, ...] = PLAN_CATALOG
) -> PriceCatalog:
    """
    Load price IDs for the known plans from an env file.

    Args:
        path: Env file with STRIPE_PRICE_<PLAN> lines
        plans: Plans to look up

    Returns:
        PriceCatalog: Empty if the file does not exist
    """
    env_path = Path(path)
    if not env_path.is_file():
        logger.info("Price catalog file not found", extra={"path": str(env_path)})
        return PriceCatalog()

    values = dotenv_values(env_path)
    names_by_price: dict[str, str] = {}
    prices_by_name: dict[str, str] = {}

    for plan in plans:
        price_id = values.get(normalize_plan_env_key(plan.name))
        if not price_id:
            continue
        names_by_price[price_id] = plan.name
        prices_by_name[plan.name] = price_id

    logger.info(
        "Loaded price catalog",
        extra={"path": str(env_path), "plans": len(names_by_price)},
    )
    return PriceCatalog(names_by_price=names_by_price, prices_by_name=prices_by_name)
