"""
Billing state storage using SQLite.

Every write that must be exclusive per key (event id, subscription id,
user id) is a single conditional statement: INSERT ... ON CONFLICT DO NOTHING
or UPDATE ... WHERE <expected state>. The affected row count tells the caller
whether it won. No in-process locks are used, so several worker processes may
share the database file.

Storage conventions:
- Timestamps: ISO 8601 UTC strings with microsecond precision (sortable)
- Amounts: Decimal serialized as TEXT (exact)
- Metadata: JSON TEXT
"""

import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from payment_reconciler.models.billing import (
    LocalUser,
    LocalUserCreate,
    PaymentMethod,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    WebhookEvent,
    WebhookProcessingStatus,
)

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class BillingDatabase:
    """
    Durable store for the webhook ledger, users, transactions, subscriptions
    and payment methods.

    Methods are async to match the service's call sites; the underlying
    sqlite3 calls are synchronous and short.
    """

    def __init__(self, db_path: str = "./data/billing.db", busy_timeout_ms: int = 5000):
        """
        Initialize billing database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: Time a writer waits for a competing writer's lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_ms = busy_timeout_ms

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False
        # Set while the current task is inside transaction()
        self._tx_conn: ContextVar[sqlite3.Connection | None] = ContextVar(
            f"billing_tx_{id(self)}", default=None
        )

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing billing database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            # WAL lets readers proceed while a webhook writer holds the lock
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    email TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    stripe_customer_id TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS webhook_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_event_id TEXT NOT NULL UNIQUE,
                    event_type TEXT NOT NULL,
                    raw_payload TEXT,
                    processing_status TEXT NOT NULL DEFAULT 'PENDING',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    processed_at TEXT,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (processing_status IN ('PENDING', 'COMPLETED', 'FAILED', 'RETRYING')),
                    CHECK (retry_count >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    external_reference_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL,
                    description TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    stripe_fee TEXT NOT NULL DEFAULT '0',
                    net_amount TEXT NOT NULL,
                    failure_reason TEXT,
                    processed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (type IN ('PAYMENT', 'SUBSCRIPTION', 'REFUND')),
                    CHECK (status IN ('COMPLETED', 'FAILED', 'CANCELLED', 'REFUNDED'))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    external_subscription_id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    plan_id TEXT,
                    plan_name TEXT NOT NULL,
                    amount TEXT NOT NULL DEFAULT '0',
                    currency TEXT NOT NULL,
                    interval TEXT NOT NULL DEFAULT 'month',
                    interval_count INTEGER NOT NULL DEFAULT 1,
                    current_period_start TEXT,
                    current_period_end TEXT,
                    trial_start_date TEXT,
                    trial_end_date TEXT,
                    failed_payment_count INTEGER NOT NULL DEFAULT 0,
                    canceled_at TEXT,
                    ended_at TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (failed_payment_count >= 0),
                    CHECK ((trial_start_date IS NULL) = (trial_end_date IS NULL))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payment_methods (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    stripe_payment_method_id TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    last4 TEXT,
                    brand TEXT,
                    exp_month INTEGER,
                    exp_year INTEGER,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,

                    CHECK (is_default IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    user_id TEXT,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    details TEXT
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_webhook_events_status "
                "ON webhook_events(processing_status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_reference "
                "ON transactions(external_reference_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_payment_methods_user ON payment_methods(user_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id)")

            conn.commit()
            logger.info("Billing database initialized successfully")
            self._initialized = True

        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            timeout=self.busy_timeout_ms / 1000,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Connection of the open transaction, else the shared one (created if needed)."""
        tx_conn = self._tx_conn.get()
        if tx_conn is not None:
            return tx_conn
        if self._conn is None:
            self._conn = self._connect()
        return self._conn

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        """
        Execute a single write statement.

        Outside transaction() the statement commits on its own. Inside, the
        commit (or rollback) is left to the transaction.
        """
        tx_conn = self._tx_conn.get()
        if tx_conn is not None:
            return tx_conn.execute(sql, tuple(params))

        conn = self._get_connection()
        try:
            cursor = conn.execute(sql, tuple(params))
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        return cursor

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["BillingDatabase"]:
        """
        Group several writes so they commit together or not at all.

        The write lock is taken up front (BEGIN IMMEDIATE) on a dedicated
        connection. The body must not await Stripe or other network calls,
        since other writers wait on the lock until it is released. Nested
        use joins the outer transaction.

        Usage:
            async with db.transaction():
                await db.record_failed_payment("sub_123", now)
                await db.insert_transaction(transaction)
        """
        if self._tx_conn.get() is not None:
            yield self
            return

        conn = self._connect()
        token = self._tx_conn.set(conn)
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield self
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._tx_conn.reset(token)
            conn.close()

    async def ping(self) -> bool:
        """Readiness check."""
        try:
            self._get_connection().execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.error("Billing database ping failed", extra={"error": str(e)})
            return False

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, user_create: LocalUserCreate, now: datetime) -> LocalUser | None:
        """
        Register a local user.

        Returns:
            LocalUser, or None if user_id already exists
        """
        user = LocalUser(**user_create.model_dump(), created_at=now, updated_at=now)
        try:
            self._execute(
                """
                INSERT INTO users (user_id, email, first_name, last_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user.user_id, user.email, user.first_name, user.last_name, _iso(now), _iso(now)),
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(f"User creation failed: {user.user_id} already exists")
                return None
            raise

        await self._log_audit(action="CREATE", resource_type="user", user_id=user.user_id, now=now)
        return user

    async def get_user(self, user_id: str) -> LocalUser | None:
        row = self._get_connection().execute(
            "SELECT * FROM users WHERE user_id = ?", (user_id,)
        ).fetchone()
        if not row:
            return None
        return LocalUser(
            user_id=row["user_id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            stripe_customer_id=row["stripe_customer_id"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    async def find_user_id_by_stripe_customer(self, stripe_customer_id: str) -> str | None:
        row = self._get_connection().execute(
            "SELECT user_id FROM users WHERE stripe_customer_id = ?", (stripe_customer_id,)
        ).fetchone()
        return row["user_id"] if row else None

    async def link_stripe_customer(
        self, user_id: str, stripe_customer_id: str, now: datetime
    ) -> bool:
        """
        Attach a Stripe customer ID to a user that has none.

        Returns:
            bool: True if this call wrote the link, False if the user was
            already linked (or does not exist)
        """
        try:
            cursor = self._execute(
                """
                UPDATE users SET stripe_customer_id = ?, updated_at = ?
                WHERE user_id = ? AND stripe_customer_id IS NULL
                """,
                (stripe_customer_id, _iso(now), user_id),
            )
        except sqlite3.IntegrityError as e:
            # Customer already linked to a different user
            logger.warning(
                "Stripe customer link rejected",
                extra={"user_id": user_id, "stripe_customer_id": stripe_customer_id, "error": str(e)},
            )
            return False

        if cursor.rowcount > 0:
            await self._log_audit(
                action="LINK",
                resource_type="stripe_customer",
                user_id=user_id,
                resource_id=stripe_customer_id,
                now=now,
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Webhook ledger
    # ------------------------------------------------------------------

    async def insert_webhook_event(
        self, event_id: str, event_type: str, raw_payload: str | None, now: datetime
    ) -> bool:
        """
        Record first sight of an event as PENDING.

        Returns:
            bool: True if inserted, False if a row for event_id already exists
        """
        cursor = self._execute(
            """
            INSERT INTO webhook_events (
                external_event_id, event_type, raw_payload, processing_status,
                retry_count, created_at, updated_at
            ) VALUES (?, ?, ?, 'PENDING', 0, ?, ?)
            ON CONFLICT(external_event_id) DO NOTHING
            """,
            (event_id, event_type, raw_payload, _iso(now), _iso(now)),
        )
        return cursor.rowcount > 0

    async def transition_webhook_event(
        self,
        event_id: str,
        from_statuses: Iterable[WebhookProcessingStatus],
        to_status: WebhookProcessingStatus,
        now: datetime,
        error_message: str | None = None,
        increment_retry: bool = False,
        updated_before: datetime | None = None,
    ) -> bool:
        """
        Move an event to to_status if it is currently in one of from_statuses.

        Args:
            event_id: Stripe event ID
            from_statuses: Statuses the transition is allowed from
            to_status: Target status
            now: Transition time
            error_message: Stored error (cleared when None)
            increment_retry: Add one to retry_count
            updated_before: Only transition rows not touched since this time

        Returns:
            bool: True if this call performed the transition
        """
        from_values = [status.value for status in from_statuses]
        placeholders = ", ".join("?" for _ in from_values)

        sql = f"""
            UPDATE webhook_events
            SET processing_status = ?,
                error_message = ?,
                retry_count = retry_count + ?,
                processed_at = CASE WHEN ? = 'COMPLETED' THEN ? ELSE processed_at END,
                updated_at = ?
            WHERE external_event_id = ? AND processing_status IN ({placeholders})
        """
        params: list = [
            to_status.value,
            error_message,
            1 if increment_retry else 0,
            to_status.value,
            _iso(now),
            _iso(now),
            event_id,
            *from_values,
        ]
        if updated_before is not None:
            sql += " AND updated_at < ?"
            params.append(_iso(updated_before))

        cursor = self._execute(sql, params)
        return cursor.rowcount > 0

    async def get_webhook_event(self, event_id: str) -> WebhookEvent | None:
        row = self._get_connection().execute(
            "SELECT * FROM webhook_events WHERE external_event_id = ?", (event_id,)
        ).fetchone()
        if not row:
            return None
        return WebhookEvent(
            external_event_id=row["external_event_id"],
            event_type=row["event_type"],
            raw_payload=row["raw_payload"],
            processing_status=WebhookProcessingStatus(row["processing_status"]),
            retry_count=row["retry_count"],
            processed_at=_dt(row["processed_at"]),
            error_message=row["error_message"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        cursor = self._execute(
            """
            INSERT INTO transactions (
                user_id, external_reference_id, type, amount, currency, status,
                description, metadata, stripe_fee, net_amount, failure_reason,
                processed_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transaction.user_id,
                transaction.external_reference_id,
                transaction.type.value,
                str(transaction.amount),
                transaction.currency,
                transaction.status.value,
                transaction.description,
                json.dumps(transaction.metadata, default=str),
                str(transaction.stripe_fee),
                str(transaction.net_amount),
                transaction.failure_reason,
                _iso(transaction.processed_at),
                _iso(transaction.created_at),
                _iso(transaction.updated_at),
            ),
        )
        return transaction.model_copy(update={"id": cursor.lastrowid})

    async def update_transaction_status(
        self,
        external_reference_id: str,
        status: TransactionStatus,
        failure_reason: str | None,
        now: datetime,
        from_statuses: Iterable[TransactionStatus] | None = None,
        types: Iterable[TransactionType] | None = None,
    ) -> int:
        """
        Correct the status of transactions with this reference.

        Args:
            from_statuses: Only rows currently in one of these statuses
            types: Only rows of one of these types

        Returns:
            int: Number of rows updated (0 when no transaction matches)
        """
        where = ["external_reference_id = ?"]
        params: list = [status.value, failure_reason, _iso(now), external_reference_id]
        for column, allowed in (("status", from_statuses), ("type", types)):
            if allowed is None:
                continue
            values = [member.value for member in allowed]
            where.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)

        cursor = self._execute(
            f"""
            UPDATE transactions
            SET status = ?,
                failure_reason = COALESCE(?, failure_reason),
                updated_at = ?
            WHERE {' AND '.join(where)}
            """,
            params,
        )
        return cursor.rowcount

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[Transaction]:
        rows = self._get_connection().execute(
            "SELECT * FROM transactions WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def find_transactions_by_reference(self, external_reference_id: str) -> list[Transaction]:
        rows = self._get_connection().execute(
            "SELECT * FROM transactions WHERE external_reference_id = ? ORDER BY id",
            (external_reference_id,),
        ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            user_id=row["user_id"],
            external_reference_id=row["external_reference_id"],
            type=TransactionType(row["type"]),
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            status=TransactionStatus(row["status"]),
            description=row["description"],
            metadata=json.loads(row["metadata"] or "{}"),
            stripe_fee=Decimal(row["stripe_fee"]),
            net_amount=Decimal(row["net_amount"]),
            failure_reason=row["failure_reason"],
            processed_at=_dt(row["processed_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def insert_subscription(self, subscription: Subscription) -> bool:
        """
        Insert a subscription unless one with the same external ID exists.

        Returns:
            bool: True if inserted
        """
        cursor = self._execute(
            """
            INSERT INTO subscriptions (
                user_id, external_subscription_id, status, plan_id, plan_name,
                amount, currency, interval, interval_count,
                current_period_start, current_period_end,
                trial_start_date, trial_end_date, failed_payment_count,
                canceled_at, ended_at, metadata, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(external_subscription_id) DO NOTHING
            """,
            (
                subscription.user_id,
                subscription.external_subscription_id,
                subscription.status.value,
                subscription.plan_id,
                subscription.plan_name,
                str(subscription.amount),
                subscription.currency,
                subscription.interval,
                subscription.interval_count,
                _iso(subscription.current_period_start),
                _iso(subscription.current_period_end),
                _iso(subscription.trial_start_date),
                _iso(subscription.trial_end_date),
                subscription.failed_payment_count,
                _iso(subscription.canceled_at),
                _iso(subscription.ended_at),
                json.dumps(subscription.metadata, default=str),
                _iso(subscription.created_at),
                _iso(subscription.updated_at),
            ),
        )
        return cursor.rowcount > 0

    async def get_subscription(self, external_subscription_id: str) -> Subscription | None:
        row = self._get_connection().execute(
            "SELECT * FROM subscriptions WHERE external_subscription_id = ?",
            (external_subscription_id,),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        rows = self._get_connection().execute(
            "SELECT * FROM subscriptions WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    async def apply_subscription_update(
        self,
        external_subscription_id: str,
        status: SubscriptionStatus,
        current_period_start: datetime | None,
        current_period_end: datetime | None,
        canceled_at: datetime | None,
        ended_at: datetime | None,
        metadata: dict,
        now: datetime,
    ) -> bool:
        """
        Overwrite a subscription from a Stripe update in one statement.

        - failed_payment_count resets to 0 only on PAST_DUE -> ACTIVE
        - period bounds, canceled_at and ended_at keep their stored value
          when None is passed
        - rows already CANCELED are not touched

        Returns:
            bool: True if a row was updated
        """
        cursor = self._execute(
            """
            UPDATE subscriptions
            SET failed_payment_count = CASE
                    WHEN status = 'PAST_DUE' AND ? = 'ACTIVE' THEN 0
                    ELSE failed_payment_count
                END,
                status = ?,
                current_period_start = COALESCE(?, current_period_start),
                current_period_end = COALESCE(?, current_period_end),
                canceled_at = COALESCE(?, canceled_at),
                ended_at = COALESCE(?, ended_at),
                metadata = ?,
                updated_at = ?
            WHERE external_subscription_id = ? AND status != 'CANCELED'
            """,
            (
                status.value,
                status.value,
                _iso(current_period_start),
                _iso(current_period_end),
                _iso(canceled_at),
                _iso(ended_at),
                json.dumps(metadata, default=str),
                _iso(now),
                external_subscription_id,
            ),
        )
        return cursor.rowcount > 0

    async def cancel_subscription(self, external_subscription_id: str, now: datetime) -> bool:
        """
        Force CANCELED with canceled_at = ended_at = now.

        A row that is already CANCELED with ended_at set is left as is.
        """
        cursor = self._execute(
            """
            UPDATE subscriptions
            SET status = 'CANCELED', canceled_at = ?, ended_at = ?, updated_at = ?
            WHERE external_subscription_id = ?
              AND (status != 'CANCELED' OR ended_at IS NULL)
            """,
            (_iso(now), _iso(now), _iso(now), external_subscription_id),
        )
        return cursor.rowcount > 0

    async def record_failed_payment(self, external_subscription_id: str, now: datetime) -> bool:
        """
        Increment failed_payment_count; the first failure forces PAST_DUE.

        CANCELED is terminal and keeps its status.
        """
        cursor = self._execute(
            """
            UPDATE subscriptions
            SET status = CASE
                    WHEN failed_payment_count = 0 AND status != 'CANCELED' THEN 'PAST_DUE'
                    ELSE status
                END,
                failed_payment_count = failed_payment_count + 1,
                updated_at = ?
            WHERE external_subscription_id = ?
            """,
            (_iso(now), external_subscription_id),
        )
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            user_id=row["user_id"],
            external_subscription_id=row["external_subscription_id"],
            status=SubscriptionStatus(row["status"]),
            plan_id=row["plan_id"],
            plan_name=row["plan_name"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            interval=row["interval"],
            interval_count=row["interval_count"],
            current_period_start=_dt(row["current_period_start"]),
            current_period_end=_dt(row["current_period_end"]),
            trial_start_date=_dt(row["trial_start_date"]),
            trial_end_date=_dt(row["trial_end_date"]),
            failed_payment_count=row["failed_payment_count"],
            canceled_at=_dt(row["canceled_at"]),
            ended_at=_dt(row["ended_at"]),
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def insert_payment_method(self, payment_method: PaymentMethod) -> bool:
        cursor = self._execute(
            """
            INSERT INTO payment_methods (
                user_id, stripe_payment_method_id, type, last4, brand,
                exp_month, exp_year, is_default, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(stripe_payment_method_id) DO NOTHING
            """,
            (
                payment_method.user_id,
                payment_method.stripe_payment_method_id,
                payment_method.type,
                payment_method.last4,
                payment_method.brand,
                payment_method.exp_month,
                payment_method.exp_year,
                1 if payment_method.is_default else 0,
                _iso(payment_method.created_at),
            ),
        )
        return cursor.rowcount > 0

    async def list_payment_methods(self, user_id: str) -> list[PaymentMethod]:
        rows = self._get_connection().execute(
            "SELECT * FROM payment_methods WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        ).fetchall()
        return [
            PaymentMethod(
                id=row["id"],
                user_id=row["user_id"],
                stripe_payment_method_id=row["stripe_payment_method_id"],
                type=row["type"],
                last4=row["last4"],
                brand=row["brand"],
                exp_month=row["exp_month"],
                exp_year=row["exp_year"],
                is_default=bool(row["is_default"]),
                created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]

    async def _log_audit(
        self,
        action: str,
        resource_type: str,
        now: datetime,
        user_id: str | None = None,
        resource_id: str | None = None,
        details: str | None = None,
    ) -> None:
        """
        Log audit event for user mutations.

        Args:
            action: Action performed (CREATE, LINK)
            resource_type: Type of resource (user, stripe_customer)
            now: Event time
            user_id: Affected user
            resource_id: ID of affected resource
            details: Additional details (JSON string)
        """
        self._execute(
            """
            INSERT INTO audit_log (timestamp, user_id, action, resource_type, resource_id, details)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (_iso(now), user_id, action, resource_type, resource_id, details),
        )

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None


# Global instance
_db: BillingDatabase | None = None


async def get_billing_db() -> BillingDatabase:
    """
    Get global billing database instance.

    Returns:
        BillingDatabase: Initialized database
    """
    global _db
    if _db is None:
        from payment_reconciler.config import get_settings

        settings = get_settings()
        _db = BillingDatabase(
            db_path=settings.database.path,
            busy_timeout_ms=settings.database.busy_timeout_ms,
        )
        await _db.initialize()
    return _db
