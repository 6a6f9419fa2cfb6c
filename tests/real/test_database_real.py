"""
Real Functionality Tests - Subscription Store.

Tests actual store operations against an in-memory SQLite database.
This verifies the SQL and the subscription semantics without Supabase.

Test cases:
- Add and list subscriptions
- Case-insensitive account names
- Keyword filters are replaced on re-add
- Remove one / remove all (idempotent)
- Orphaned accounts are pruned
- Watched ids and subscriber lookups
- Resolution and rename round trips through the resolver
- Health check and reset

Mocks: X API client
Real: All store operations, SQL queries, name resolution
"""

import pytest

from watcher.resolver import NameResolver

pytestmark = [pytest.mark.real, pytest.mark.asyncio]


class TestSubscriptions:
    async def test_add_and_list(self, sqlite_db):
        assert await sqlite_db.add_subscription(555, "alice") == 0
        await sqlite_db.add_subscription(555, "bob", "sports,-breaking")

        subs = await sqlite_db.list_for_chat(555)

        assert [(s.name, s.resolved_id, s.keywords) for s in subs] == [
            ("alice", 0, None),
            ("bob", 0, "sports,-breaking"),
        ]
        assert await sqlite_db.list_for_chat(999) == []

    async def test_names_are_case_insensitive(self, sqlite_db):
        await sqlite_db.add_subscription(1, "Alice")
        await sqlite_db.add_subscription(2, "alice")

        accounts = await sqlite_db.all_tracked_accounts()

        assert len(accounts) == 1
        assert accounts[0].name == "Alice"
        assert accounts[0].subscribers == 2

    async def test_re_add_replaces_keywords(self, sqlite_db):
        await sqlite_db.add_subscription(1, "alice", "sports")
        await sqlite_db.add_subscription(1, "ALICE", None)

        subs = await sqlite_db.list_for_chat(1)

        assert len(subs) == 1
        assert subs[0].keywords is None

    async def test_add_returns_resolved_id(self, sqlite_db):
        await sqlite_db.add_subscription(1, "alice")
        account = (await sqlite_db.all_tracked_accounts())[0]
        await sqlite_db.update_resolution(account.id, 1001, "alice")

        assert await sqlite_db.add_subscription(2, "alice") == 1001

    async def test_remove_one(self, sqlite_db):
        await sqlite_db.add_subscription(1, "alice")
        await sqlite_db.add_subscription(1, "bob")

        await sqlite_db.remove_subscription(1, "ALICE")

        assert [s.name for s in await sqlite_db.list_for_chat(1)] == ["bob"]
        # alice has no subscribers left and is gone
        assert [a.name for a in await sqlite_db.all_tracked_accounts(True)] == ["bob"]

    async def test_remove_all_is_idempotent(self, sqlite_db):
        await sqlite_db.add_subscription(1, "alice")
        await sqlite_db.add_subscription(1, "bob")
        await sqlite_db.add_subscription(2, "bob")

        assert await sqlite_db.remove_all(1) == 2
        assert await sqlite_db.remove_all(1) == 0

        assert await sqlite_db.list_for_chat(1) == []
        assert [s.name for s in await sqlite_db.list_for_chat(2)] == ["bob"]

    async def test_prune_orphans(self, sqlite_db):
        await sqlite_db.add_subscription(1, "alice")
        sqlite_db.conn.execute("INSERT INTO tracked_accounts (name) VALUES ('ghost')")
        sqlite_db.conn.commit()

        assert await sqlite_db.prune_orphans() == 1
        assert await sqlite_db.prune_orphans() == 0
        assert [a.name for a in await sqlite_db.all_tracked_accounts()] == ["alice"]


class TestLookups:
    async def test_watched_ids_and_subscribers(self, sqlite_db):
        await sqlite_db.add_subscription(1, "alice", "sports")
        await sqlite_db.add_subscription(2, "alice")
        await sqlite_db.add_subscription(2, "pending_name")
        alice = next(a for a in await sqlite_db.all_tracked_accounts() if a.name == "alice")
        await sqlite_db.update_resolution(alice.id, 1001, "alice")

        assert await sqlite_db.distinct_watched_resolved_ids() == [1001]
        assert await sqlite_db.subscribers_for_resolved_id(1001) == [(1, "sports"), (2, None)]
        assert await sqlite_db.subscribers_for_resolved_id(42) == []

    async def test_unresolved_filter(self, sqlite_db):
        await sqlite_db.add_subscription(1, "alice")
        await sqlite_db.add_subscription(1, "bob")
        bob = next(a for a in await sqlite_db.all_tracked_accounts() if a.name == "bob")
        await sqlite_db.update_resolution(bob.id, 2002, "bob")

        assert [a.name for a in await sqlite_db.all_tracked_accounts()] == ["alice"]
        assert [a.name for a in await sqlite_db.all_tracked_accounts(True)] == ["alice", "bob"]


class TestResolution:
    async def test_resolve_round_trip(self, sqlite_db, mock_twitter):
        await sqlite_db.add_subscription(555, "example")
        mock_twitter.lookup_users.return_value = [(42, "Example")]

        written = await NameResolver(sqlite_db, mock_twitter).resolve()

        assert written == 1
        subs = await sqlite_db.list_for_chat(555)
        assert (subs[0].name, subs[0].resolved_id) == ("Example", 42)
        assert await sqlite_db.distinct_watched_resolved_ids() == [42]

    async def test_rename_round_trip(self, sqlite_db, mock_twitter):
        await sqlite_db.add_subscription(555, "old")
        account = (await sqlite_db.all_tracked_accounts())[0]
        await sqlite_db.update_resolution(account.id, 99, "old")
        mock_twitter.lookup_ids.return_value = [(99, "new")]

        await NameResolver(sqlite_db, mock_twitter).resolve(force_all=True)

        subs = await sqlite_db.list_for_chat(555)
        assert (subs[0].name, subs[0].resolved_id) == ("new", 99)
        assert await sqlite_db.subscribers_for_resolved_id(99) == [(555, None)]


class TestMaintenance:
    async def test_health_check(self, sqlite_db):
        assert await sqlite_db.health_check() is True

    async def test_reset(self, sqlite_db):
        await sqlite_db.add_subscription(1, "alice")

        await sqlite_db.reset()

        assert await sqlite_db.list_for_chat(1) == []
        assert await sqlite_db.all_tracked_accounts(True) == []

    async def test_reconnects_after_close(self, tmp_path):
        from watcher.database_sqlite import SQLiteDatabase

        db = SQLiteDatabase(tmp_path / "watcher.db")
        await db.add_subscription(1, "alice")
        await db.close()

        assert [s.name for s in await db.list_for_chat(1)] == ["alice"]
        await db.close()
