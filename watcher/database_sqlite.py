"""
SQLite Database - Local fallback for Supabase.

This module provides a SQLite-based subscription store for local
development and testing, or as a fallback when Supabase is unavailable.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from watcher.errors import StoreError
from watcher.models import Subscription, TrackedAccount
from watcher.store import SubscriptionStore

logger = logging.getLogger(__name__)

# Default SQLite database path
DEFAULT_DB_PATH = Path("watcher.db")


class SQLiteDatabase(SubscriptionStore):
    """
    SQLite implementation of the subscription store.

    Provides the same API as the Supabase Database class for seamless fallback.
    Every method runs its statements without awaiting in between, so calls
    from different tasks never interleave on the shared connection.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH):
        """Initialize SQLite database."""
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._is_connected = False

        self._connect()
        self._create_tables()
        logger.info(f"SQLite database initialized: {db_path}")

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self._is_connected = True
            logger.info("SQLite connection established")
        except sqlite3.Error as e:
            logger.error(f"Failed to connect to SQLite: {e}")
            self._is_connected = False
            raise StoreError(f"Failed to connect to SQLite: {e}") from e

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tracked_accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL COLLATE NOCASE UNIQUE,
                resolved_id INTEGER NOT NULL DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS subscriptions (
                chat_id INTEGER NOT NULL,
                account_id INTEGER NOT NULL
                    REFERENCES tracked_accounts(id) ON DELETE CASCADE,
                keywords TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (chat_id, account_id)
            )
        """)

        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_tracked_resolved ON tracked_accounts(resolved_id)"
        )

        self.conn.commit()
        logger.info("SQLite tables created/verified")

    async def _ensure_connection(self) -> None:
        """Ensure database connection is active."""
        if not self._is_connected or self.conn is None:
            self._connect()

    @contextmanager
    def _operation(self, name: str) -> Iterator[sqlite3.Cursor]:
        """Run one store operation in a transaction, mapping errors to StoreError."""
        cursor = self.conn.cursor()
        try:
            yield cursor
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logger.error(f"SQLite {name} failed: {e}")
            raise StoreError(f"{name} failed: {e}") from e

    async def health_check(self) -> bool:
        """Check database connection health."""
        try:
            await self._ensure_connection()
            cursor = self.conn.cursor()
            cursor.execute("SELECT 1")
            return True
        except (sqlite3.Error, StoreError) as e:
            logger.error(f"SQLite health check failed: {e}")
            return False

    # =========================================================================
    # Subscription Operations
    # =========================================================================

    async def add_subscription(
        self,
        chat_id: int,
        name: str,
        keywords: Optional[str] = None,
    ) -> int:
        """Subscribe a chat to an account. Returns the account's resolved id."""
        await self._ensure_connection()

        with self._operation("add_subscription") as cursor:
            cursor.execute(
                "INSERT OR IGNORE INTO tracked_accounts (name) VALUES (?)", (name,)
            )
            cursor.execute(
                "SELECT id, resolved_id FROM tracked_accounts WHERE name = ?", (name,)
            )
            row = cursor.fetchone()
            cursor.execute("""
                INSERT INTO subscriptions (chat_id, account_id, keywords)
                VALUES (?, ?, ?)
                ON CONFLICT (chat_id, account_id) DO UPDATE SET keywords = excluded.keywords
            """, (chat_id, row["id"], keywords or None))

        logger.info(f"Chat {chat_id} subscribed to @{name} (resolved_id={row['resolved_id']})")
        return row["resolved_id"]

    async def remove_subscription(self, chat_id: int, name: str) -> None:
        """Remove one subscription and prune the account if it has none left."""
        await self._ensure_connection()

        with self._operation("remove_subscription") as cursor:
            cursor.execute("""
                DELETE FROM subscriptions WHERE chat_id = ? AND account_id IN (
                    SELECT id FROM tracked_accounts WHERE name = ?
                )
            """, (chat_id, name))
            removed = cursor.rowcount
            self._delete_orphans(cursor)

        logger.info(f"Chat {chat_id} unsubscribed from @{name} (removed={removed})")

    async def remove_all(self, chat_id: int) -> int:
        """Remove every subscription of a chat."""
        await self._ensure_connection()

        with self._operation("remove_all") as cursor:
            cursor.execute("DELETE FROM subscriptions WHERE chat_id = ?", (chat_id,))
            removed = cursor.rowcount
            self._delete_orphans(cursor)

        logger.info(f"Cleared {removed} subscription(s) for chat {chat_id}")
        return removed

    async def list_for_chat(self, chat_id: int) -> list[Subscription]:
        """List a chat's subscriptions."""
        await self._ensure_connection()

        with self._operation("list_for_chat") as cursor:
            cursor.execute("""
                SELECT a.name, a.resolved_id, s.keywords
                FROM subscriptions s JOIN tracked_accounts a ON a.id = s.account_id
                WHERE s.chat_id = ?
                ORDER BY a.name
            """, (chat_id,))
            rows = cursor.fetchall()

        return [
            Subscription(name=r["name"], resolved_id=r["resolved_id"], keywords=r["keywords"])
            for r in rows
        ]

    # =========================================================================
    # Resolution Operations
    # =========================================================================

    async def all_tracked_accounts(self, force_all: bool = False) -> list[TrackedAccount]:
        """Get accounts with a name that are unresolved (or all, if forced)."""
        await self._ensure_connection()

        with self._operation("all_tracked_accounts") as cursor:
            cursor.execute("""
                SELECT a.id, a.name, a.resolved_id, COUNT(s.chat_id) AS subscribers
                FROM tracked_accounts a
                LEFT JOIN subscriptions s ON s.account_id = a.id
                WHERE a.name != '' AND (? OR a.resolved_id = 0)
                GROUP BY a.id
                ORDER BY a.id
            """, (1 if force_all else 0,))
            rows = cursor.fetchall()

        return [
            TrackedAccount(
                id=r["id"],
                name=r["name"],
                resolved_id=r["resolved_id"],
                subscribers=r["subscribers"],
            )
            for r in rows
        ]

    async def update_resolution(self, account_id: Any, resolved_id: int, name: str) -> None:
        """Persist a resolved id and name for one account."""
        await self._ensure_connection()

        with self._operation("update_resolution") as cursor:
            cursor.execute(
                "UPDATE tracked_accounts SET resolved_id = ?, name = ? WHERE id = ?",
                (resolved_id, name, account_id),
            )

    async def distinct_watched_resolved_ids(self) -> list[int]:
        """Resolved ids that at least one chat is subscribed to."""
        await self._ensure_connection()

        with self._operation("distinct_watched_resolved_ids") as cursor:
            cursor.execute("""
                SELECT DISTINCT a.resolved_id
                FROM tracked_accounts a JOIN subscriptions s ON s.account_id = a.id
                WHERE a.resolved_id != 0
                ORDER BY a.resolved_id
            """)
            return [r[0] for r in cursor.fetchall()]

    async def subscribers_for_resolved_id(
        self, resolved_id: int
    ) -> list[tuple[int, Optional[str]]]:
        """Chats subscribed to the account bound to ``resolved_id``."""
        await self._ensure_connection()

        with self._operation("subscribers_for_resolved_id") as cursor:
            cursor.execute("""
                SELECT s.chat_id, s.keywords
                FROM subscriptions s JOIN tracked_accounts a ON a.id = s.account_id
                WHERE a.resolved_id = ?
                ORDER BY s.chat_id
            """, (resolved_id,))
            return [(r["chat_id"], r["keywords"]) for r in cursor.fetchall()]

    # =========================================================================
    # Maintenance
    # =========================================================================

    def _delete_orphans(self, cursor: sqlite3.Cursor) -> int:
        cursor.execute("""
            DELETE FROM tracked_accounts
            WHERE id NOT IN (SELECT DISTINCT account_id FROM subscriptions)
        """)
        return cursor.rowcount

    async def prune_orphans(self) -> int:
        """Delete accounts that no chat follows anymore."""
        await self._ensure_connection()

        with self._operation("prune_orphans") as cursor:
            pruned = self._delete_orphans(cursor)

        if pruned:
            logger.info(f"Pruned {pruned} orphaned account(s)")
        return pruned

    async def reset(self) -> None:
        """Delete all data."""
        await self._ensure_connection()

        with self._operation("reset") as cursor:
            cursor.execute("DELETE FROM subscriptions")
            cursor.execute("DELETE FROM tracked_accounts")

        logger.warning("All subscriptions and tracked accounts deleted")

    async def close(self) -> None:
        """Close the connection."""
        if self.conn is not None:
            self.conn.close()
            self.conn = None
        self._is_connected = False
