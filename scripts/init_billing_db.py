#!/usr/bin/env python3
"""
Database initialization script for the billing ledger.

Creates the SQLite schema (users, webhook_events, transactions,
subscriptions, payment_methods, audit_log) and reports which plan price
IDs the env file provides.

Usage:
    python scripts/init_billing_db.py [--db-path PATH] [--env-file PATH] [--create-demo]

This script is idempotent - safe to run multiple times.
"""

import argparse
import asyncio
import logging
import sqlite3
import sys
from datetime import UTC, datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from payment_reconciler.billing.plans import (
    PLAN_CATALOG,
    load_price_catalog,
    normalize_plan_env_key,
)
from payment_reconciler.models.billing import LocalUserCreate
from payment_reconciler.storage.database import BillingDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = (
    "users",
    "webhook_events",
    "transactions",
    "subscriptions",
    "payment_methods",
    "audit_log",
)


async def init_database(db_path: str) -> bool:
    """
    Initialize billing database schema.

    Returns:
        bool: True if initialization succeeded
    """
    logger.info(f"Initializing billing database at {db_path}")

    db = BillingDatabase(db_path=db_path)
    try:
        await db.initialize()

        conn = db._get_connection()
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        missing = set(EXPECTED_TABLES) - tables
        if missing:
            logger.error(f"Missing tables: {sorted(missing)}")
            return False

        for table in EXPECTED_TABLES:
            count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            logger.info(f"  {table}: {count} rows")

        logger.info("Database initialization complete")
        return True

    except sqlite3.Error as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        return False

    finally:
        db.close()


async def create_demo_user(db_path: str) -> bool:
    """Register a demo user (not linked to Stripe)."""
    db = BillingDatabase(db_path=db_path)
    try:
        user = await db.create_user(
            LocalUserCreate(
                user_id="demo-user",
                email="demo@example.com",
                first_name="Demo",
                last_name="User",
            ),
            now=datetime.now(UTC),
        )
        if user:
            logger.info(f"Demo user created: {user.user_id} (email: {user.email})")
        else:
            logger.warning("Demo user already exists - skipping")
        return True

    except sqlite3.Error as e:
        logger.error(f"Demo user creation failed: {e}", exc_info=True)
        return False

    finally:
        db.close()


def report_price_catalog(env_file: str) -> None:
    catalog = load_price_catalog(env_file)
    for plan in PLAN_CATALOG:
        price_id = catalog.price_id_for(plan.name)
        billing = f"every {plan.recurring_interval}" if plan.is_recurring else "one-time"
        if price_id:
            logger.info(f"  {plan.name}: {price_id} ({plan.amount} {plan.currency}, {billing})")
        else:
            logger.warning(f"  {plan.name}: {normalize_plan_env_key(plan.name)} not set")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Initialize billing database schema")
    parser.add_argument(
        "--db-path",
        default="./data/billing.db",
        help="Path to SQLite database file (default: ./data/billing.db)",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Env file holding STRIPE_PRICE_* lines (default: .env)",
    )
    parser.add_argument(
        "--create-demo",
        action="store_true",
        help="Register a demo user for local testing",
    )

    args = parser.parse_args()

    if not asyncio.run(init_database(args.db_path)):
        logger.error("Database initialization failed")
        sys.exit(1)

    if args.create_demo and not asyncio.run(create_demo_user(args.db_path)):
        logger.error("Demo user creation failed")
        sys.exit(1)

    logger.info("Price catalog:")
    report_price_catalog(args.env_file)

    logger.info("=== Database Ready ===")
    logger.info(f"Database path: {Path(args.db_path).absolute()}")


if __name__ == "__main__":
    main()
