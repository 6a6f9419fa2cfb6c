"""
Database Client - Supabase integration for subscriptions.

This module stores tracked accounts and chat subscriptions in Supabase.
When Supabase is not configured or unreachable the bot falls back to
``watcher.database_sqlite.SQLiteDatabase``, which has the same API.

Tables:
    tracked_accounts:
        - id: BIGINT identity (primary key)
        - name: Screen name as last seen
        - name_key: lower(name), unique
        - resolved_id: Numeric X user id (0 = unresolved)
        - created_at: Record creation time

    subscriptions:
        - chat_id: Telegram chat id
        - account_id: tracked_accounts.id (cascade delete)
        - keywords: Optional keyword filter
        - created_at: Record creation time

SQL Setup (run in Supabase SQL Editor):
    CREATE TABLE tracked_accounts (
        id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        name TEXT NOT NULL,
        name_key TEXT NOT NULL UNIQUE,
        resolved_id BIGINT NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT NOW()
    );

    CREATE TABLE subscriptions (
        chat_id BIGINT NOT NULL,
        account_id BIGINT NOT NULL REFERENCES tracked_accounts(id) ON DELETE CASCADE,
        keywords VARCHAR(256),
        created_at TIMESTAMP DEFAULT NOW(),
        PRIMARY KEY (chat_id, account_id)
    );

    CREATE INDEX IF NOT EXISTS idx_tracked_resolved ON tracked_accounts(resolved_id);
"""

import logging
from typing import Any, Optional

import httpx
from supabase import create_client, Client
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config import settings
from watcher.errors import StoreError
from watcher.models import Subscription, TrackedAccount
from watcher.store import SubscriptionStore

logger = logging.getLogger(__name__)


class Database(SubscriptionStore):
    """
    Supabase client for tracked accounts and subscriptions.

    Features:
    - Automatic connection recovery
    - Retry with exponential backoff on transport errors
    - Health monitoring
    """

    def __init__(
        self,
        url: str | None = None,
        key: str | None = None,
    ) -> None:
        """
        Initialize database connection.

        Args:
            url: Supabase project URL. Defaults to config.
            key: Supabase anon/service key. Defaults to config.
        """
        self._url = url or settings.supabase_url
        self._key = key or settings.supabase_key
        self.client: Optional[Client] = None
        self._is_connected = False

        self._connect()
        logger.info("Database client initialized")

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            url = self._url.rstrip("/")
            logger.info(f"Connecting to database at: {url}")
            self.client = create_client(url, self._key)
            self._is_connected = True
            logger.info("Database connection established")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            self._is_connected = False
            raise StoreError(f"Failed to connect to Supabase: {e}") from e

    async def _ensure_connection(self) -> None:
        """Ensure database connection is active, reconnect if needed."""
        if not self._is_connected or self.client is None:
            logger.warning("Database connection lost, attempting reconnect...")
            self._connect()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _run(self, query) -> Any:
        return query.execute()

    def _execute(self, name: str, query) -> Any:
        """Execute a PostgREST query, mapping failures to StoreError."""
        try:
            return self._run(query)
        except Exception as e:
            logger.error(f"Supabase {name} failed: {e}")
            raise StoreError(f"{name} failed: {e}") from e

    async def health_check(self) -> bool:
        """
        Check database connection health.

        Returns:
            True if database is accessible, False otherwise.
        """
        try:
            await self._ensure_connection()
            self._execute(
                "health_check",
                self.client.table("tracked_accounts").select("id", count="exact").limit(1),
            )
            logger.debug("Database health check: OK")
            return True
        except StoreError as e:
            logger.error(f"Database health check failed: {e}")
            self._is_connected = False
            return False

    # =========================================================================
    # Subscription Operations
    # =========================================================================

    def _find_account(self, name: str) -> Optional[dict]:
        result = self._execute(
            "find_account",
            self.client.table("tracked_accounts")
            .select("id, name, resolved_id")
            .eq("name_key", name.lower()),
        )
        return result.data[0] if result.data else None

    async def add_subscription(
        self,
        chat_id: int,
        name: str,
        keywords: Optional[str] = None,
    ) -> int:
        """
        Subscribe a chat to an account.

        Args:
            chat_id: Telegram chat id.
            name: Screen name without the leading "@".
            keywords: Optional keyword filter.

        Returns:
            The account's resolved id (0 when unresolved).
        """
        await self._ensure_connection()

        account = self._find_account(name)
        if account is None:
            try:
                result = self._execute(
                    "add_account",
                    self.client.table("tracked_accounts").insert({
                        "name": name,
                        "name_key": name.lower(),
                    }),
                )
                account = result.data[0]
            except StoreError as e:
                if "duplicate key" not in str(e) and "unique constraint" not in str(e):
                    raise
                logger.warning(f"Account @{name} created concurrently, re-reading")
                account = self._find_account(name)
                if account is None:
                    raise

        self._execute(
            "add_subscription",
            self.client.table("subscriptions").upsert(
                {
                    "chat_id": chat_id,
                    "account_id": account["id"],
                    "keywords": keywords or None,
                },
                on_conflict="chat_id,account_id",
            ),
        )

        logger.info(
            f"Chat {chat_id} subscribed to @{name} "
            f"(resolved_id={account['resolved_id']})"
        )
        return account["resolved_id"] or 0

    async def remove_subscription(self, chat_id: int, name: str) -> None:
        """Remove one subscription and prune the account if it has none left."""
        await self._ensure_connection()

        account = self._find_account(name)
        if account is None:
            return

        self._execute(
            "remove_subscription",
            self.client.table("subscriptions")
            .delete()
            .eq("chat_id", chat_id)
            .eq("account_id", account["id"]),
        )
        await self.prune_orphans()
        logger.info(f"Chat {chat_id} unsubscribed from @{name}")

    async def remove_all(self, chat_id: int) -> int:
        """Remove every subscription of a chat."""
        await self._ensure_connection()

        result = self._execute(
            "remove_all",
            self.client.table("subscriptions").delete().eq("chat_id", chat_id),
        )
        removed = len(result.data or [])
        await self.prune_orphans()

        logger.info(f"Cleared {removed} subscription(s) for chat {chat_id}")
        return removed

    async def list_for_chat(self, chat_id: int) -> list[Subscription]:
        """List a chat's subscriptions."""
        await self._ensure_connection()

        result = self._execute(
            "list_for_chat",
            self.client.table("subscriptions")
            .select("keywords, tracked_accounts(name, resolved_id)")
            .eq("chat_id", chat_id),
        )

        subscriptions = [
            Subscription(
                name=row["tracked_accounts"]["name"],
                resolved_id=row["tracked_accounts"]["resolved_id"] or 0,
                keywords=row.get("keywords"),
            )
            for row in result.data or []
            if row.get("tracked_accounts")
        ]
        return sorted(subscriptions, key=lambda s: s.name.lower())

    # =========================================================================
    # Resolution Operations
    # =========================================================================

    def _accounts_with_counts(self, unresolved_only: bool = False) -> list[dict]:
        query = (
            self.client.table("tracked_accounts")
            .select("id, name, resolved_id, subscriptions(count)")
            .neq("name", "")
        )
        if unresolved_only:
            query = query.eq("resolved_id", 0)
        return self._execute("accounts", query.order("id")).data or []

    @staticmethod
    def _count(row: dict) -> int:
        counts = row.get("subscriptions") or []
        return counts[0].get("count", 0) if counts else 0

    async def all_tracked_accounts(self, force_all: bool = False) -> list[TrackedAccount]:
        """Get accounts with a name that are unresolved (or all, if forced)."""
        await self._ensure_connection()

        return [
            TrackedAccount(
                id=row["id"],
                name=row["name"],
                resolved_id=row["resolved_id"] or 0,
                subscribers=self._count(row),
            )
            for row in self._accounts_with_counts(unresolved_only=not force_all)
        ]

    async def update_resolution(self, account_id: Any, resolved_id: int, name: str) -> None:
        """Persist a resolved id and name for one account."""
        await self._ensure_connection()

        self._execute(
            "update_resolution",
            self.client.table("tracked_accounts").update({
                "resolved_id": resolved_id,
                "name": name,
                "name_key": name.lower(),
            }).eq("id", account_id),
        )

    async def distinct_watched_resolved_ids(self) -> list[int]:
        """Resolved ids that at least one chat is subscribed to."""
        await self._ensure_connection()

        ids = {
            row["resolved_id"]
            for row in self._accounts_with_counts()
            if row["resolved_id"] and self._count(row) > 0
        }
        return sorted(ids)

    async def subscribers_for_resolved_id(
        self, resolved_id: int
    ) -> list[tuple[int, Optional[str]]]:
        """Chats subscribed to the account bound to ``resolved_id``."""
        await self._ensure_connection()

        result = self._execute(
            "subscribers_for_resolved_id",
            self.client.table("subscriptions")
            .select("chat_id, keywords, tracked_accounts!inner(resolved_id)")
            .eq("tracked_accounts.resolved_id", resolved_id),
        )
        return [(row["chat_id"], row.get("keywords")) for row in result.data or []]

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def prune_orphans(self) -> int:
        """Delete accounts that no chat follows anymore."""
        await self._ensure_connection()

        orphans = [row["id"] for row in self._accounts_with_counts() if self._count(row) == 0]
        if not orphans:
            return 0

        self._execute(
            "prune_orphans",
            self.client.table("tracked_accounts").delete().in_("id", orphans),
        )
        logger.info(f"Pruned {len(orphans)} orphaned account(s)")
        return len(orphans)

    async def reset(self) -> None:
        """Delete all data."""
        await self._ensure_connection()

        # PostgREST refuses unfiltered deletes
        self._execute(
            "reset_subscriptions",
            self.client.table("subscriptions").delete().gte("chat_id", -(2 ** 63)),
        )
        self._execute(
            "reset_accounts",
            self.client.table("tracked_accounts").delete().gte("id", 0),
        )
        logger.warning("All subscriptions and tracked accounts deleted")

    async def close(self) -> None:
        """Drop the client reference."""
        self.client = None
        self._is_connected = False
