"""
Pytest fixtures and configuration.

This module provides shared fixtures for all tests:
- Settings defaults so no real credentials are needed
- In-memory SQLite subscription store
- Mock store / X API client
- A fake stream session manager for coordinator tests
- Telegram update builders

Usage:
    def test_something(sqlite_db, mock_store):
        # fixtures are automatically injected
        pass
"""

import asyncio
import itertools
import os
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

# Settings are read at import time
os.environ.setdefault("TWITTER_BEARER_TOKEN", "test-bearer")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:test-token")

from watcher.database_sqlite import SQLiteDatabase  # noqa: E402
from watcher.errors import StreamOpenError  # noqa: E402
from watcher.models import FilterSpec, MessageKind, Post, StreamMessage  # noqa: E402


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "real: mark test as a real functionality test (not mock-based)"
    )
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring multiple components"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (>1s execution time)"
    )


# =============================================================================
# Helpers
# =============================================================================

async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def make_post(
    post_id: str = "1",
    text: str = "hello world",
    author_id: int = 1001,
    username: str = "alice",
    **kwargs,
) -> Post:
    return Post(id=post_id, text=text, author_id=author_id, author_username=username, **kwargs)


def post_message(**kwargs) -> StreamMessage:
    return StreamMessage(kind=MessageKind.POST, post=make_post(**kwargs))


# =============================================================================
# Store Fixtures
# =============================================================================

@pytest.fixture
def sqlite_db():
    """Provide an in-memory SQLite subscription store."""
    db = SQLiteDatabase(":memory:")
    yield db
    if db.conn is not None:
        db.conn.close()


@pytest.fixture
def mock_store():
    """Provide mock subscription store."""
    store = AsyncMock()
    store.add_subscription.return_value = 0
    store.remove_all.return_value = 0
    store.list_for_chat.return_value = []
    store.all_tracked_accounts.return_value = []
    store.distinct_watched_resolved_ids.return_value = []
    store.subscribers_for_resolved_id.return_value = []
    return store


@pytest.fixture
def mock_twitter():
    """Provide mock X API client."""
    client = AsyncMock()
    client.lookup_users.return_value = []
    client.lookup_ids.return_value = []
    return client


# =============================================================================
# Stream Session Fakes
# =============================================================================

class FakeSession:
    """Stands in for StreamSession: a message queue and a closed flag."""

    def __init__(self, spec: FilterSpec, session_id: int):
        self.id = session_id
        self.spec = spec
        self.messages: asyncio.Queue = asyncio.Queue()
        self.closed = False


class FakeSessionManager:
    """Records build/open/close calls made by the coordinator."""

    def __init__(self, ids=(1001,), fail_open: bool = False):
        self.ids = list(ids)
        self.fail_open = fail_open
        self.builds: list[tuple[bool, bool]] = []
        self.opened: list[FakeSession] = []
        self.closed: list[FakeSession] = []
        self._ids = itertools.count(1)

    async def build_filter(self, resolve_first=False, resolve_all=False):
        self.builds.append((resolve_first, resolve_all))
        if not self.ids:
            return None
        return FilterSpec(rules=[f"from:{i}" for i in self.ids], user_ids=list(self.ids))

    async def open_session(self, spec):
        if self.fail_open:
            raise StreamOpenError("Stream connect failed: HTTP 401", status_code=401)
        # Exactly one open session at a time
        assert all(s.closed for s in self.opened)
        session = FakeSession(spec, next(self._ids))
        self.opened.append(session)
        return session

    async def close_session(self, session):
        if session is None:
            return
        session.closed = True
        self.closed.append(session)


@pytest.fixture
def session_manager():
    return FakeSessionManager()


# =============================================================================
# Telegram Fixtures
# =============================================================================

def make_update(chat_id: int = 555, username: str = "tester", text: str = ""):
    """Build a minimal Telegram Update mock."""
    update = MagicMock()
    update.effective_chat.id = chat_id
    update.effective_user.username = username
    update.message.text = text
    update.message.reply_text = AsyncMock()
    return update


def make_context(*args: str):
    context = MagicMock()
    context.args = list(args)
    return context


def replied(update) -> str:
    """Text of the last reply sent for ``update``."""
    return update.message.reply_text.call_args[0][0]
