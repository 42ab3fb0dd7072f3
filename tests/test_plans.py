"""Tests for the plan catalog and price ID lookup."""

import pytest

from payment_reconciler.billing.plans import (
    PLAN_CATALOG,
    PlanDefinition,
    load_price_catalog,
    normalize_plan_env_key,
)


@pytest.mark.parametrize(
    "plan_name,expected",
    [
        ("plan 1", "STRIPE_PRICE_PLAN_1"),
        ("plan 34", "STRIPE_PRICE_PLAN_34"),
        ("Pro-Annual", "STRIPE_PRICE_PRO_ANNUAL"),
    ],
)
def test_normalize_plan_env_key(plan_name, expected):
    assert normalize_plan_env_key(plan_name) == expected


def test_catalog_recurring_and_one_time_plans():
    recurring = {plan.name for plan in PLAN_CATALOG if plan.is_recurring}

    assert recurring == {"plan 1", "plan 2"}
    assert all(plan.currency == "usd" for plan in PLAN_CATALOG)


def test_load_price_catalog(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "STRIPE_SECRET_KEY=sk_test_51Habcdef\n"
        "STRIPE_PRICE_PLAN_1=price_basic\n"
        "STRIPE_PRICE_PLAN_34=price_lifetime\n"
        "STRIPE_PRICE_PLAN_2=\n"
    )

    catalog = load_price_catalog(env_file)

    assert len(catalog) == 2
    assert catalog.plan_name_for("price_basic") == "plan 1"
    assert catalog.price_id_for("plan 34") == "price_lifetime"
    assert catalog.price_id_for("plan 2") is None
    assert catalog.plan_name_for(None) is None


def test_load_price_catalog_custom_plans(tmp_path):
    env_file = tmp_path / "prices.env"
    env_file.write_text("STRIPE_PRICE_TEAM=price_team\n")

    catalog = load_price_catalog(env_file, plans=(PlanDefinition(name="team", amount=4900),))

    assert catalog.plan_name_for("price_team") == "team"


def test_missing_catalog_file_is_empty(tmp_path):
    catalog = load_price_catalog(tmp_path / "absent.env")

    assert len(catalog) == 0
    assert catalog.plan_name_for("price_basic") is None
