"""SQLite-backed subscription registry and delivery log.

Three tables:

- ``webhook_subscriptions``: admin-managed subscriptions.
- ``webhook_attempts``: one row per delivery attempt, insert-only.
- ``webhook_retry_claims``: at most one row per pending attempt. A row
  either claims the attempt for re-delivery or cancels it. Claims are
  taken with ``INSERT OR IGNORE`` on the primary key, so two scheduler
  workers (or a worker and a concurrent disablement) can never both win
  the same attempt.
"""

import asyncio
from collections.abc import Collection
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from resource_webhooks.config import settings
from resource_webhooks.webhooks.events import WebhookEventType
from resource_webhooks.webhooks.models import (
    DeliveryAttempt,
    Page,
    RetryClaimState,
    Subscription,
)

logger = structlog.get_logger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Effective next_retry_at: a cancelled or exhausted claim makes the row terminal
_ATTEMPT_COLUMNS = """
    a.id, a.delivery_id, a.subscription_id, a.tenant_id, a.event_type,
    a.resource_id, a.payload, a.status_code, a.response_body, a.error,
    a.success, a.retry_count, a.created_at,
    CASE WHEN c.state IN ('cancelled', 'exhausted') THEN NULL
         ELSE a.next_retry_at END AS next_retry_at
"""


def _to_db(value: datetime | None) -> str | None:
    """Fixed-width UTC text so that string comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def _casefold(value: str | None) -> str | None:
    """Unicode case folding for search; SQLite LOWER() only folds ASCII."""
    return value.casefold() if value is not None else None


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class WebhookStore:
    """SQLite-based storage for subscriptions and delivery attempts.

    Example:
        store = WebhookStore("./data/webhooks.db")
        await store.initialize()
        await store.insert_subscription(subscription)
        await store.append_attempt(attempt)
    """

    def __init__(self, db_path: str | None = None) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite file, or ``:memory:``.
                Defaults to ``WEBHOOK_DB_PATH``.
        """
        self._db_path = db_path or settings.WEBHOOK_DB_PATH
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._logger = logger.bind(component="webhook_store")

    @property
    def db_path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Open the connection and create tables."""
        if self._connection is not None:
            return

        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.create_function("casefold", 1, _casefold, deterministic=True)

        await self._connection.execute("PRAGMA busy_timeout = 5000")
        if self._db_path != ":memory:":
            await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._create_tables()
        self._logger.info("webhook_store_initialized", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS webhook_subscriptions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                name TEXT NOT NULL,
                url TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                event_type TEXT NOT NULL,
                resource_id TEXT,
                resource_type_id TEXT,
                include_sub_resources INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL,
                retry_delay_seconds INTEGER NOT NULL,
                signing_key TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_subscriptions_tenant
            ON webhook_subscriptions(tenant_id, enabled)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS webhook_attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                delivery_id TEXT NOT NULL,
                subscription_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                resource_id TEXT,
                payload TEXT NOT NULL,
                status_code INTEGER,
                response_body TEXT,
                error TEXT,
                success INTEGER NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                next_retry_at TEXT,
                created_at TEXT NOT NULL,
                CHECK (success = 0 OR next_retry_at IS NULL)
            )
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_attempts_subscription
            ON webhook_attempts(subscription_id, created_at DESC)
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_attempts_tenant
            ON webhook_attempts(tenant_id, created_at DESC)
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_attempts_pending
            ON webhook_attempts(next_retry_at) WHERE success = 0 AND next_retry_at IS NOT NULL
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_attempts_delivery
            ON webhook_attempts(delivery_id, retry_count)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS webhook_retry_claims (
                attempt_id INTEGER PRIMARY KEY,
                worker_id TEXT NOT NULL,
                state TEXT NOT NULL,
                claimed_at TEXT NOT NULL,
                resolved_at TEXT
            )
        """)

        await self._connection.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def insert_subscription(self, subscription: Subscription) -> Subscription:
        """Persist a new subscription.

        Args:
            subscription: Subscription carrying its signing key.

        Returns:
            The stored subscription.
        """
        assert self._connection is not None

        async with self._write_lock:
            await self._connection.execute(
                """
                INSERT INTO webhook_subscriptions
                (id, tenant_id, name, url, enabled, event_type, resource_id,
                 resource_type_id, include_sub_resources, max_retries,
                 retry_delay_seconds, signing_key, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription.id,
                    subscription.tenant_id,
                    subscription.name,
                    subscription.url,
                    int(subscription.enabled),
                    subscription.event_type.value,
                    subscription.resource_id,
                    subscription.resource_type_id,
                    int(subscription.include_sub_resources),
                    subscription.max_retries,
                    subscription.retry_delay_seconds,
                    subscription.signing_key,
                    _to_db(subscription.created_at),
                    _to_db(subscription.updated_at),
                ),
            )
            await self._connection.commit()

        self._logger.debug("subscription_saved", subscription_id=subscription.id)
        return subscription

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        """Overwrite a subscription's mutable fields. The signing key is never changed."""
        assert self._connection is not None

        async with self._write_lock:
            await self._connection.execute(
                """
                UPDATE webhook_subscriptions
                SET name = ?, url = ?, enabled = ?, event_type = ?, resource_id = ?,
                    resource_type_id = ?, include_sub_resources = ?, max_retries = ?,
                    retry_delay_seconds = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    subscription.name,
                    subscription.url,
                    int(subscription.enabled),
                    subscription.event_type.value,
                    subscription.resource_id,
                    subscription.resource_type_id,
                    int(subscription.include_sub_resources),
                    subscription.max_retries,
                    subscription.retry_delay_seconds,
                    _to_db(subscription.updated_at),
                    subscription.id,
                ),
            )
            await self._connection.commit()

        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        """Get a subscription by ID.

        Args:
            subscription_id: Subscription identifier.

        Returns:
            Subscription if found, None otherwise.
        """
        assert self._connection is not None

        cursor = await self._connection.execute(
            "SELECT * FROM webhook_subscriptions WHERE id = ?",
            (subscription_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_subscription(row) if row else None

    async def delete_subscription(self, subscription_id: str) -> bool:
        """Delete a subscription. Its attempts are kept for the tenant's log view.

        Returns:
            True if deleted, False if not found.
        """
        assert self._connection is not None

        async with self._write_lock:
            cursor = await self._connection.execute(
                "DELETE FROM webhook_subscriptions WHERE id = ?",
                (subscription_id,),
            )
            await self._connection.commit()

        return cursor.rowcount > 0

    async def list_subscriptions(
        self,
        *,
        tenant_ids: Collection[str] | None = None,
        enabled: bool | None = None,
    ) -> list[Subscription]:
        """List subscriptions.

        Args:
            tenant_ids: Restrict to these tenants (None = every tenant).
            enabled: Filter by enabled flag.

        Returns:
            Subscriptions ordered by creation time.
        """
        assert self._connection is not None

        if tenant_ids is not None and not tenant_ids:
            return []

        conditions: list[str] = []
        params: list[Any] = []

        if tenant_ids is not None:
            conditions.append(f"tenant_id IN ({', '.join('?' for _ in tenant_ids)})")
            params.extend(tenant_ids)
        if enabled is not None:
            conditions.append("enabled = ?")
            params.append(int(enabled))

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        cursor = await self._connection.execute(
            f"SELECT * FROM webhook_subscriptions WHERE {where_clause} ORDER BY created_at, id",
            params,
        )
        rows = await cursor.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    # ------------------------------------------------------------------
    # Delivery attempts
    # ------------------------------------------------------------------

    async def append_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        """Insert one attempt row.

        A retry time is only stored while the subscription exists and is
        enabled at insert time. The check runs inside the INSERT, so a
        disable that commits before the row exists leaves it with no retry.

        Args:
            attempt: Attempt without an id.

        Returns:
            Copy of the attempt carrying its row id and stored retry time.
        """
        assert self._connection is not None

        async with self._write_lock:
            cursor = await self._connection.execute(
                """
                INSERT INTO webhook_attempts
                (delivery_id, subscription_id, tenant_id, event_type, resource_id,
                 payload, status_code, response_body, error, success, retry_count,
                 next_retry_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                        CASE WHEN EXISTS (
                            SELECT 1 FROM webhook_subscriptions WHERE id = ? AND enabled = 1
                        ) THEN ? ELSE NULL END,
                        ?)
                """,
                (
                    attempt.delivery_id,
                    attempt.subscription_id,
                    attempt.tenant_id,
                    attempt.event_type.value,
                    attempt.resource_id,
                    attempt.payload,
                    attempt.status_code,
                    attempt.response_body,
                    attempt.error,
                    int(attempt.success),
                    attempt.retry_count,
                    attempt.subscription_id,
                    _to_db(attempt.next_retry_at),
                    _to_db(attempt.created_at),
                ),
            )
            attempt_id = cursor.lastrowid
            cursor = await self._connection.execute(
                "SELECT next_retry_at FROM webhook_attempts WHERE id = ?",
                (attempt_id,),
            )
            row = await cursor.fetchone()
            await self._connection.commit()

        stored = attempt.model_copy(
            update={"id": attempt_id, "next_retry_at": _from_db(row["next_retry_at"])}
        )
        if attempt.next_retry_at is not None and stored.next_retry_at is None:
            self._logger.info(
                "attempt_retry_dropped",
                attempt_id=stored.id,
                subscription_id=stored.subscription_id,
            )
        self._logger.debug(
            "attempt_logged",
            attempt_id=stored.id,
            delivery_id=stored.delivery_id,
            success=stored.success,
            retry_count=stored.retry_count,
        )
        return stored

    async def get_attempt(self, attempt_id: int) -> DeliveryAttempt | None:
        """Get an attempt by row id, with its effective retry time."""
        assert self._connection is not None

        cursor = await self._connection.execute(
            f"""
            SELECT {_ATTEMPT_COLUMNS}
            FROM webhook_attempts a
            LEFT JOIN webhook_retry_claims c ON c.attempt_id = a.id
            WHERE a.id = ?
            """,
            (attempt_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_attempt(row) if row else None

    async def list_delivery(self, delivery_id: str) -> list[DeliveryAttempt]:
        """All attempts of one logical delivery, in attempt order."""
        assert self._connection is not None

        cursor = await self._connection.execute(
            f"""
            SELECT {_ATTEMPT_COLUMNS}
            FROM webhook_attempts a
            LEFT JOIN webhook_retry_claims c ON c.attempt_id = a.id
            WHERE a.delivery_id = ?
            ORDER BY a.retry_count, a.id
            """,
            (delivery_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_attempt(row) for row in rows]

    async def list_attempts(
        self,
        *,
        subscription_ids: Collection[str] | None = None,
        tenant_ids: Collection[str] | None = None,
        success: bool | None = None,
        query: str | None = None,
        page: int = 0,
        size: int = 20,
    ) -> Page[DeliveryAttempt]:
        """List attempts newest first.

        Args:
            subscription_ids: Restrict to these subscriptions (None = any).
            tenant_ids: Restrict to these tenants (None = any).
            success: Filter by success flag.
            query: Case-insensitive substring matched against payload and response.
            page: 0-based page number.
            size: Page size.

        Returns:
            Requested page with the total match count.
        """
        assert self._connection is not None

        if (subscription_ids is not None and not subscription_ids) or (
            tenant_ids is not None and not tenant_ids
        ):
            return Page[DeliveryAttempt](items=[], total=0, page=page, size=size)

        conditions: list[str] = []
        params: list[Any] = []

        if subscription_ids is not None:
            conditions.append(f"a.subscription_id IN ({', '.join('?' for _ in subscription_ids)})")
            params.extend(subscription_ids)
        if tenant_ids is not None:
            conditions.append(f"a.tenant_id IN ({', '.join('?' for _ in tenant_ids)})")
            params.extend(tenant_ids)
        if success is not None:
            conditions.append("a.success = ?")
            params.append(int(success))
        if query:
            pattern = f"%{_escape_like(query.casefold())}%"
            conditions.append(
                "(casefold(a.payload) LIKE ? ESCAPE '\\' "
                "OR casefold(COALESCE(a.response_body, '')) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])

        where_clause = " AND ".join(conditions) if conditions else "1=1"

        cursor = await self._connection.execute(
            f"SELECT COUNT(*) FROM webhook_attempts a WHERE {where_clause}",
            params,
        )
        count_row = await cursor.fetchone()
        total = count_row[0] if count_row else 0

        cursor = await self._connection.execute(
            f"""
            SELECT {_ATTEMPT_COLUMNS}
            FROM webhook_attempts a
            LEFT JOIN webhook_retry_claims c ON c.attempt_id = a.id
            WHERE {where_clause}
            ORDER BY a.created_at DESC, a.id DESC
            LIMIT ? OFFSET ?
            """,
            [*params, size, page * size],
        )
        rows = await cursor.fetchall()

        return Page[DeliveryAttempt](
            items=[self._row_to_attempt(row) for row in rows],
            total=total,
            page=page,
            size=size,
        )

    # ------------------------------------------------------------------
    # Retry claims
    # ------------------------------------------------------------------

    async def find_due_retries(self, now: datetime, *, limit: int = 100) -> list[DeliveryAttempt]:
        """Find unclaimed failed attempts whose retry time has passed.

        Attempts of deleted or disabled subscriptions are never due.

        Args:
            now: Current time.
            limit: Maximum rows.

        Returns:
            Due attempts, oldest retry time first.
        """
        assert self._connection is not None

        cursor = await self._connection.execute(
            f"""
            SELECT {_ATTEMPT_COLUMNS}
            FROM webhook_attempts a
            JOIN webhook_subscriptions s ON s.id = a.subscription_id AND s.enabled = 1
            LEFT JOIN webhook_retry_claims c ON c.attempt_id = a.id
            WHERE a.success = 0
              AND a.next_retry_at IS NOT NULL
              AND a.next_retry_at <= ?
              AND c.attempt_id IS NULL
            ORDER BY a.next_retry_at, a.id
            LIMIT ?
            """,
            (_to_db(now), limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_attempt(row) for row in rows]

    async def claim_retry(self, attempt_id: int, worker_id: str, now: datetime) -> bool:
        """Atomically claim a pending attempt for re-delivery.

        Returns:
            True if this call won the claim.
        """
        assert self._connection is not None

        async with self._write_lock:
            cursor = await self._connection.execute(
                """
                INSERT OR IGNORE INTO webhook_retry_claims
                (attempt_id, worker_id, state, claimed_at)
                VALUES (?, ?, ?, ?)
                """,
                (attempt_id, worker_id, RetryClaimState.CLAIMED.value, _to_db(now)),
            )
            await self._connection.commit()

        return cursor.rowcount == 1

    async def resolve_claim(
        self,
        attempt_id: int,
        state: RetryClaimState,
        now: datetime,
    ) -> None:
        """Record what happened to a claimed attempt."""
        assert self._connection is not None

        async with self._write_lock:
            await self._connection.execute(
                """
                UPDATE webhook_retry_claims SET state = ?, resolved_at = ?
                WHERE attempt_id = ? AND state = ?
                """,
                (state.value, _to_db(now), attempt_id, RetryClaimState.CLAIMED.value),
            )
            await self._connection.commit()

    async def cancel_pending_retries(
        self,
        subscription_id: str,
        now: datetime,
        *,
        worker_id: str = "admin",
    ) -> int:
        """Make every unclaimed pending attempt of a subscription terminal.

        Returns:
            Number of attempts cancelled.
        """
        assert self._connection is not None

        async with self._write_lock:
            cursor = await self._connection.execute(
                """
                INSERT OR IGNORE INTO webhook_retry_claims
                (attempt_id, worker_id, state, claimed_at, resolved_at)
                SELECT a.id, ?, ?, ?, ?
                FROM webhook_attempts a
                WHERE a.subscription_id = ?
                  AND a.success = 0
                  AND a.next_retry_at IS NOT NULL
                """,
                (
                    worker_id,
                    RetryClaimState.CANCELLED.value,
                    _to_db(now),
                    _to_db(now),
                    subscription_id,
                ),
            )
            await self._connection.commit()

        cancelled = max(cursor.rowcount, 0)
        if cancelled:
            self._logger.info(
                "pending_retries_cancelled",
                subscription_id=subscription_id,
                count=cancelled,
            )
        return cancelled

    async def release_stale_claims(self, claimed_before: datetime, now: datetime) -> int:
        """Release claims whose worker never recorded an outcome.

        A stale claim whose successor attempt was already logged is marked
        sent instead of released, so the retry is not sent twice.

        Returns:
            Number of claims released.
        """
        assert self._connection is not None

        async with self._write_lock:
            await self._connection.execute(
                """
                UPDATE webhook_retry_claims SET state = ?, resolved_at = ?
                WHERE state = ? AND claimed_at < ?
                  AND EXISTS (
                    SELECT 1 FROM webhook_attempts prev
                    JOIN webhook_attempts nxt
                      ON nxt.delivery_id = prev.delivery_id
                     AND nxt.retry_count > prev.retry_count
                    WHERE prev.id = webhook_retry_claims.attempt_id
                  )
                """,
                (
                    RetryClaimState.SENT.value,
                    _to_db(now),
                    RetryClaimState.CLAIMED.value,
                    _to_db(claimed_before),
                ),
            )
            cursor = await self._connection.execute(
                "DELETE FROM webhook_retry_claims WHERE state = ? AND claimed_at < ?",
                (RetryClaimState.CLAIMED.value, _to_db(claimed_before)),
            )
            await self._connection.commit()

        released = max(cursor.rowcount, 0)
        if released:
            self._logger.warning("stale_retry_claims_released", count=released)
        return released

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_subscription(self, row: aiosqlite.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            url=row["url"],
            enabled=bool(row["enabled"]),
            event_type=WebhookEventType(row["event_type"]),
            resource_id=row["resource_id"],
            resource_type_id=row["resource_type_id"],
            include_sub_resources=bool(row["include_sub_resources"]),
            max_retries=row["max_retries"],
            retry_delay_seconds=row["retry_delay_seconds"],
            signing_key=row["signing_key"],
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    def _row_to_attempt(self, row: aiosqlite.Row) -> DeliveryAttempt:
        return DeliveryAttempt(
            id=row["id"],
            delivery_id=row["delivery_id"],
            subscription_id=row["subscription_id"],
            tenant_id=row["tenant_id"],
            event_type=WebhookEventType(row["event_type"]),
            resource_id=row["resource_id"],
            payload=row["payload"],
            status_code=row["status_code"],
            response_body=row["response_body"],
            error=row["error"],
            success=bool(row["success"]),
            retry_count=row["retry_count"],
            next_retry_at=_from_db(row["next_retry_at"]),
            created_at=_from_db(row["created_at"]),
        )
