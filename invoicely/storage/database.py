"""
Billing, upload-link and Gmail connection storage using SQLite (bootstrap) → PostgreSQL (production).

Correctness under concurrent requests is delegated to the store:
- UNIQUE constraints on customers.user_id, subscriptions.external_subscription_id,
  document_usage(user_id, month_year) and upload_links.link_code
- Single-statement upserts for webhook reconciliation and usage increments
- Customer + initial free subscription written in one transaction
- Audit logging for all mutations and received billing events
"""

import json
import logging
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path

from invoicely.models.billing import (
    DEFAULT_DOCUMENT_LIMIT,
    FREE_PLAN_PRODUCT_ID,
    Customer,
    DocumentUsage,
    Subscription,
    SubscriptionPlan,
    SubscriptionPlanCreate,
    SubscriptionStatus,
    SubscriptionUpsert,
)
from invoicely.models.gmail import GmailConnection
from invoicely.models.upload_link import UploadLink, UploadLinkRecord

logger = logging.getLogger(__name__)

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in SubscriptionStatus)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class BillingDatabase:
    """
    Storage for customers, plans, subscriptions, document usage,
    upload links and Gmail connections.

    Uses SQLite for bootstrapping (free, embedded). The schema only uses
    constructs with direct Postgres equivalents (ON CONFLICT, RETURNING).
    """

    def __init__(
        self,
        db_path: str = "./data/invoicely.db",
        default_document_limit: int = DEFAULT_DOCUMENT_LIMIT,
        free_plan_product_id: str = FREE_PLAN_PRODUCT_ID,
    ):
        """
        Initialize billing database.

        Args:
            db_path: Path to SQLite database file
            default_document_limit: Limit of the seeded free plan
            free_plan_product_id: external_product_id of the free plan
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.default_document_limit = default_document_limit
        self.free_plan_product_id = free_plan_product_id

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema and seed the free plan.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing billing database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS customers (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL UNIQUE,
                    external_billing_id TEXT UNIQUE,
                    email TEXT NOT NULL,
                    name TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscription_plans (
                    id TEXT PRIMARY KEY,
                    external_product_id TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    description TEXT,
                    document_limit INTEGER NOT NULL DEFAULT 10,
                    features TEXT NOT NULL DEFAULT '[]',
                    price_monthly REAL,
                    price_yearly REAL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (document_limit >= -1),
                    CHECK (is_active IN (0, 1))
                )
            """
            )

            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    plan_id TEXT,
                    external_subscription_id TEXT UNIQUE,
                    status TEXT NOT NULL DEFAULT 'free',
                    current_period_start TEXT,
                    current_period_end TEXT,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    FOREIGN KEY (customer_id) REFERENCES customers(id)
                        ON DELETE CASCADE,
                    FOREIGN KEY (plan_id) REFERENCES subscription_plans(id)
                        ON DELETE SET NULL,
                    CHECK (status IN ({_STATUS_VALUES})),
                    CHECK (cancel_at_period_end IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    month_year TEXT NOT NULL,
                    document_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    UNIQUE (user_id, month_year),
                    CHECK (document_count >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS upload_links (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    link_code TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    name TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (is_active IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gmail_connections (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT NOT NULL,
                    token_expires_at TEXT NOT NULL,
                    last_history_id TEXT,
                    last_sync_at TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    UNIQUE (user_id, email),
                    CHECK (is_active IN (0, 1))
                )
            """
            )

            # Audit log (compliance: track all mutations and billing events)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    user_id TEXT,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    details TEXT,
                    ip_address TEXT
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_customer "
                "ON subscriptions(customer_id, created_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_upload_links_user ON upload_links(user_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_gmail_connections_active "
                "ON gmail_connections(is_active)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)")

            now = _now()
            conn.execute(
                """
                INSERT OR IGNORE INTO subscription_plans (
                    id, external_product_id, name, description, document_limit,
                    features, price_monthly, price_yearly, is_active, created_at, updated_at
                ) VALUES (?, ?, 'Free', 'Free tier', ?, '[]', 0, 0, 1, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    self.free_plan_product_id,
                    self.default_document_limit,
                    now,
                    now,
                ),
            )

            conn.commit()
            logger.info("Billing database initialized successfully")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    async def ping(self) -> bool:
        """Cheap liveness check used by /health."""
        conn = self._get_connection()
        return conn.execute("SELECT 1").fetchone() is not None

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_customer(row: sqlite3.Row) -> Customer:
        return Customer(
            id=row["id"],
            user_id=row["user_id"],
            external_billing_id=row["external_billing_id"],
            email=row["email"],
            name=row["name"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def get_customer_by_user_id(self, user_id: str) -> Customer | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM customers WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_customer(row) if row else None

    async def get_customer_by_external_id(self, external_billing_id: str) -> Customer | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM customers WHERE external_billing_id = ?", (external_billing_id,)
        ).fetchone()
        return self._row_to_customer(row) if row else None

    async def create_customer_with_free_subscription(
        self,
        user_id: str,
        email: str,
        name: str | None,
        external_billing_id: str | None,
    ) -> Customer | None:
        """
        Create a customer and its initial free subscription atomically.

        Args:
            user_id: Authenticated user the customer belongs to
            email: Billing email
            name: Display name
            external_billing_id: Polar customer id

        Returns:
            Customer: Created customer, or None if the user already has one
            (a concurrent request won; callers should re-fetch)
        """
        now = _now()
        customer_id = str(uuid.uuid4())

        conn = self._get_connection()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO customers (
                        id, user_id, external_billing_id, email, name, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (customer_id, user_id, external_billing_id, email, name, now, now),
                )
                conn.execute(
                    """
                    INSERT INTO subscriptions (
                        id, customer_id, plan_id, status, cancel_at_period_end,
                        created_at, updated_at
                    ) VALUES (
                        ?, ?,
                        (SELECT id FROM subscription_plans WHERE external_product_id = ?),
                        'free', 0, ?, ?
                    )
                    """,
                    (str(uuid.uuid4()), customer_id, self.free_plan_product_id, now, now),
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(
                    "Customer creation lost a race",
                    extra={"user_id": user_id, "error": str(e)},
                )
                return None
            raise

        await self._log_audit(
            user_id=user_id,
            action="CREATE",
            resource_type="customer",
            resource_id=customer_id,
            details=json.dumps({"external_billing_id": external_billing_id}),
        )

        logger.info(f"Created customer for user: {user_id}")
        return await self.get_customer_by_user_id(user_id)

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_plan(row: sqlite3.Row) -> SubscriptionPlan:
        return SubscriptionPlan(
            id=row["id"],
            external_product_id=row["external_product_id"],
            name=row["name"],
            description=row["description"],
            document_limit=row["document_limit"],
            features=json.loads(row["features"] or "[]"),
            price_monthly=row["price_monthly"],
            price_yearly=row["price_yearly"],
            is_active=bool(row["is_active"]),
        )

    async def get_plan(self, plan_id: str) -> SubscriptionPlan | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM subscription_plans WHERE id = ?", (plan_id,)).fetchone()
        return self._row_to_plan(row) if row else None

    async def get_plan_by_external_product_id(self, product_id: str) -> SubscriptionPlan | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM subscription_plans WHERE external_product_id = ?", (product_id,)
        ).fetchone()
        return self._row_to_plan(row) if row else None

    async def get_free_plan(self) -> SubscriptionPlan | None:
        return await self.get_plan_by_external_product_id(self.free_plan_product_id)

    async def list_active_plans(self) -> list[SubscriptionPlan]:
        """Active plans, cheapest first."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM subscription_plans
            WHERE is_active = 1
            ORDER BY COALESCE(price_monthly, 0) ASC, name ASC
            """
        ).fetchall()
        return [self._row_to_plan(row) for row in rows]

    async def upsert_plan(self, plan: SubscriptionPlanCreate) -> SubscriptionPlan:
        """Insert or update a plan keyed by external_product_id."""
        now = _now()
        conn = self._get_connection()
        with conn:
            conn.execute(
                """
                INSERT INTO subscription_plans (
                    id, external_product_id, name, description, document_limit,
                    features, price_monthly, price_yearly, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_product_id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    document_limit = excluded.document_limit,
                    features = excluded.features,
                    price_monthly = excluded.price_monthly,
                    price_yearly = excluded.price_yearly,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    str(uuid.uuid4()),
                    plan.external_product_id,
                    plan.name,
                    plan.description,
                    plan.document_limit,
                    json.dumps(plan.features),
                    plan.price_monthly,
                    plan.price_yearly,
                    int(plan.is_active),
                    now,
                    now,
                ),
            )

        await self._log_audit(
            action="UPSERT",
            resource_type="subscription_plan",
            resource_id=plan.external_product_id,
            details=json.dumps({"document_limit": plan.document_limit}),
        )

        stored = await self.get_plan_by_external_product_id(plan.external_product_id)
        assert stored is not None
        return stored

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            customer_id=row["customer_id"],
            plan_id=row["plan_id"],
            external_subscription_id=row["external_subscription_id"],
            status=SubscriptionStatus(row["status"]),
            current_period_start=_parse_dt(row["current_period_start"]),
            current_period_end=_parse_dt(row["current_period_end"]),
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def get_current_subscription(self, customer_id: str) -> Subscription | None:
        """Most recently created subscription of the customer."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE customer_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (customer_id,),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def get_subscription_by_external_id(
        self, external_subscription_id: str
    ) -> Subscription | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE external_subscription_id = ?",
            (external_subscription_id,),
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def upsert_subscription(self, upsert: SubscriptionUpsert) -> tuple[Subscription, bool]:
        """
        Insert or update a subscription keyed by external_subscription_id.

        A single INSERT ... ON CONFLICT statement, so replays and concurrent
        deliveries of the same event converge on one row.

        Returns:
            (subscription, created): the stored row and whether it was new
        """
        now = _now()
        conn = self._get_connection()

        existed = (
            conn.execute(
                "SELECT 1 FROM subscriptions WHERE external_subscription_id = ?",
                (upsert.external_subscription_id,),
            ).fetchone()
            is not None
        )

        with conn:
            conn.execute(
                """
                INSERT INTO subscriptions (
                    id, customer_id, plan_id, external_subscription_id, status,
                    current_period_start, current_period_end, cancel_at_period_end,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_subscription_id) DO UPDATE SET
                    customer_id = excluded.customer_id,
                    plan_id = excluded.plan_id,
                    status = excluded.status,
                    current_period_start = excluded.current_period_start,
                    current_period_end = excluded.current_period_end,
                    cancel_at_period_end = excluded.cancel_at_period_end,
                    updated_at = excluded.updated_at
                """,
                (
                    str(uuid.uuid4()),
                    upsert.customer_id,
                    upsert.plan_id,
                    upsert.external_subscription_id,
                    upsert.status.value,
                    _to_iso(upsert.current_period_start),
                    _to_iso(upsert.current_period_end),
                    int(upsert.cancel_at_period_end),
                    now,
                    now,
                ),
            )

        stored = await self.get_subscription_by_external_id(upsert.external_subscription_id)
        assert stored is not None

        await self._log_audit(
            action="UPDATE" if existed else "CREATE",
            resource_type="subscription",
            resource_id=stored.id,
            details=json.dumps(
                {
                    "external_subscription_id": upsert.external_subscription_id,
                    "status": upsert.status.value,
                    "plan_id": upsert.plan_id,
                }
            ),
        )
        return stored, not existed

    async def cancel_subscription(self, external_subscription_id: str) -> bool:
        """
        Mark a subscription canceled at period end.

        Only status, cancel_at_period_end and updated_at change.

        Returns:
            bool: True if a row was updated, False if the id is unknown
        """
        conn = self._get_connection()
        with conn:
            cursor = conn.execute(
                """
                UPDATE subscriptions
                SET status = 'canceled', cancel_at_period_end = 1, updated_at = ?
                WHERE external_subscription_id = ?
                """,
                (_now(), external_subscription_id),
            )

        if cursor.rowcount > 0:
            await self._log_audit(
                action="CANCEL",
                resource_type="subscription",
                resource_id=external_subscription_id,
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Document usage
    # ------------------------------------------------------------------

    async def get_document_usage(self, user_id: str, month_year: str) -> DocumentUsage | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM document_usage WHERE user_id = ? AND month_year = ?",
            (user_id, month_year),
        ).fetchone()
        if not row:
            return None
        return DocumentUsage(
            user_id=row["user_id"],
            month_year=row["month_year"],
            document_count=row["document_count"],
        )

    async def increment_document_usage(
        self, user_id: str, month_year: str, limit: int
    ) -> int | None:
        """
        Atomically add one document to the month's counter if under limit.

        The check and the increment are one statement, so concurrent callers
        can never push the count past the limit. A negative limit means
        unlimited.

        Returns:
            int: New document count, or None if the limit was already reached
        """
        now = _now()
        conn = self._get_connection()
        with conn:
            rows = conn.execute(
                """
                INSERT INTO document_usage (user_id, month_year, document_count, created_at, updated_at)
                SELECT :user_id, :month_year, 1, :now, :now
                WHERE :limit < 0 OR :limit > 0
                ON CONFLICT(user_id, month_year) DO UPDATE SET
                    document_count = document_usage.document_count + 1,
                    updated_at = excluded.updated_at
                WHERE :limit < 0 OR document_usage.document_count < :limit
                RETURNING document_count
                """,
                {"user_id": user_id, "month_year": month_year, "now": now, "limit": limit},
            ).fetchall()

        return rows[0]["document_count"] if rows else None

    # ------------------------------------------------------------------
    # Upload links
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_upload_link(row: sqlite3.Row) -> UploadLinkRecord:
        return UploadLinkRecord(
            id=row["id"],
            user_id=row["user_id"],
            link_code=row["link_code"],
            name=row["name"],
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            password_hash=row["password_hash"],
        )

    async def create_upload_link(
        self, user_id: str, link_code: str, password_hash: str, name: str | None
    ) -> UploadLink | None:
        """
        Create an upload link.

        Returns:
            UploadLink, or None if link_code is already taken
        """
        now = _now()
        link_id = str(uuid.uuid4())
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO upload_links (
                        id, user_id, link_code, password_hash, name, is_active,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (link_id, user_id, link_code, password_hash, name, now, now),
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(f"Upload link code collision: {link_code}")
                return None
            raise

        await self._log_audit(
            user_id=user_id,
            action="CREATE",
            resource_type="upload_link",
            resource_id=link_id,
        )
        return UploadLink(
            id=link_id,
            user_id=user_id,
            link_code=link_code,
            name=name,
            is_active=True,
            created_at=datetime.fromisoformat(now),
        )

    async def list_upload_links(self, user_id: str) -> list[UploadLink]:
        """Links owned by the user, newest first."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM upload_links
            WHERE user_id = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (user_id,),
        ).fetchall()
        return [self._row_to_upload_link(row).to_public() for row in rows]

    async def get_upload_link_by_code(self, link_code: str) -> UploadLinkRecord | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM upload_links WHERE link_code = ?", (link_code,)
        ).fetchone()
        return self._row_to_upload_link(row) if row else None

    async def set_upload_link_active(
        self, link_id: str, user_id: str, is_active: bool
    ) -> UploadLink | None:
        """
        Enable or disable a link owned by user_id.

        Returns:
            Updated link, or None if no such link belongs to the user
        """
        conn = self._get_connection()
        with conn:
            cursor = conn.execute(
                """
                UPDATE upload_links SET is_active = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (int(is_active), _now(), link_id, user_id),
            )
        if cursor.rowcount == 0:
            return None

        await self._log_audit(
            user_id=user_id,
            action="ENABLE" if is_active else "DISABLE",
            resource_type="upload_link",
            resource_id=link_id,
        )
        row = conn.execute("SELECT * FROM upload_links WHERE id = ?", (link_id,)).fetchone()
        return self._row_to_upload_link(row).to_public()

    async def update_upload_link_password_hash(self, link_id: str, password_hash: str) -> None:
        conn = self._get_connection()
        with conn:
            conn.execute(
                "UPDATE upload_links SET password_hash = ?, updated_at = ? WHERE id = ?",
                (password_hash, _now(), link_id),
            )
        await self._log_audit(
            action="REHASH",
            resource_type="upload_link",
            resource_id=link_id,
        )

    async def delete_upload_link(self, link_id: str, user_id: str) -> bool:
        """Hard-delete a link owned by user_id. Returns False if not found."""
        conn = self._get_connection()
        with conn:
            cursor = conn.execute(
                "DELETE FROM upload_links WHERE id = ? AND user_id = ?", (link_id, user_id)
            )
        if cursor.rowcount > 0:
            await self._log_audit(
                user_id=user_id,
                action="DELETE",
                resource_type="upload_link",
                resource_id=link_id,
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Gmail connections
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_gmail_connection(row: sqlite3.Row) -> GmailConnection:
        return GmailConnection(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=datetime.fromisoformat(row["token_expires_at"]),
            last_history_id=row["last_history_id"],
            last_sync_at=_parse_dt(row["last_sync_at"]),
            is_active=bool(row["is_active"]),
        )

    async def upsert_gmail_connection(
        self,
        user_id: str,
        email: str,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
    ) -> GmailConnection:
        """Store (or re-activate) the credentials of a connected mailbox."""
        now = _now()
        conn = self._get_connection()
        with conn:
            conn.execute(
                """
                INSERT INTO gmail_connections (
                    id, user_id, email, access_token, refresh_token, token_expires_at,
                    is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(user_id, email) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    token_expires_at = excluded.token_expires_at,
                    is_active = 1,
                    updated_at = excluded.updated_at
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    email,
                    access_token,
                    refresh_token,
                    _to_iso(token_expires_at),
                    now,
                    now,
                ),
            )
        row = conn.execute(
            "SELECT * FROM gmail_connections WHERE user_id = ? AND email = ?", (user_id, email)
        ).fetchone()
        connection = self._row_to_gmail_connection(row)

        await self._log_audit(
            user_id=user_id,
            action="CONNECT",
            resource_type="gmail_connection",
            resource_id=connection.id,
        )
        return connection

    async def get_gmail_connection(self, connection_id: str) -> GmailConnection | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM gmail_connections WHERE id = ?", (connection_id,)
        ).fetchone()
        return self._row_to_gmail_connection(row) if row else None

    async def list_active_gmail_connections(self) -> list[GmailConnection]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM gmail_connections WHERE is_active = 1 ORDER BY created_at ASC"
        ).fetchall()
        return [self._row_to_gmail_connection(row) for row in rows]

    async def update_gmail_access_token(
        self, connection_id: str, access_token: str, token_expires_at: datetime
    ) -> None:
        conn = self._get_connection()
        with conn:
            conn.execute(
                """
                UPDATE gmail_connections
                SET access_token = ?, token_expires_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (access_token, _to_iso(token_expires_at), _now(), connection_id),
            )

    async def update_gmail_history_id(self, connection_id: str, history_id: str) -> None:
        conn = self._get_connection()
        with conn:
            conn.execute(
                """
                UPDATE gmail_connections
                SET last_history_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (history_id, _now(), connection_id),
            )

    async def deactivate_gmail_connection(self, connection_id: str, reason: str) -> None:
        conn = self._get_connection()
        with conn:
            conn.execute(
                "UPDATE gmail_connections SET is_active = 0, updated_at = ? WHERE id = ?",
                (_now(), connection_id),
            )
        await self._log_audit(
            action="DEACTIVATE",
            resource_type="gmail_connection",
            resource_id=connection_id,
            details=json.dumps({"reason": reason}),
        )

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def record_billing_event(
        self, event_type: str, event_id: str | None, subject_id: str | None, outcome: str
    ) -> None:
        """Persist a received billing webhook event."""
        await self._log_audit(
            action="WEBHOOK",
            resource_type="billing_event",
            resource_id=subject_id,
            details=json.dumps({"type": event_type, "webhook_id": event_id, "outcome": outcome}),
        )

    async def list_audit_entries(
        self, resource_type: str | None = None, limit: int = 100
    ) -> list[dict]:
        """Most recent audit entries, newest first."""
        conn = self._get_connection()
        if resource_type:
            rows = conn.execute(
                """
                SELECT * FROM audit_log WHERE resource_type = ?
                ORDER BY id DESC LIMIT ?
                """,
                (resource_type, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(row) for row in rows]

    async def _log_audit(
        self,
        action: str,
        resource_type: str,
        user_id: str | None = None,
        resource_id: str | None = None,
        details: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        """
        Log audit event for compliance.

        Args:
            action: Action performed (CREATE, UPDATE, CANCEL, WEBHOOK, ...)
            resource_type: Type of resource (customer, subscription, upload_link, ...)
            user_id: User the resource belongs to, when known
            resource_id: ID of affected resource
            details: Additional details (JSON string)
            ip_address: IP address of request
        """
        conn = self._get_connection()
        with conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    timestamp, user_id, action, resource_type,
                    resource_id, details, ip_address
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (_now(), user_id, action, resource_type, resource_id, details, ip_address),
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
        from invoicely.config import get_settings

        settings = get_settings()
        db = BillingDatabase(
            db_path=settings.database.path,
            default_document_limit=settings.usage.default_document_limit,
            free_plan_product_id=settings.usage.free_plan_product_id,
        )
        await db.initialize()
        _db = db
    return _db


def close_billing_db() -> None:
    """Close and forget the global instance (application shutdown)."""
    global _db
    if _db is not None:
        _db.close()
        _db = None
