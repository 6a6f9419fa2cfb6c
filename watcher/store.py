"""
Subscription Store - Abstract interface for persisted subscriptions.

Both the Supabase client and the SQLite fallback implement this interface
so the resolver, the stream builder and the command handlers never care
which backend is active.

Model:
    ┌─────────────────────────────────────────────────────────────┐
    │  tracked_accounts (id, name, resolved_id)                   │
    │         ▲ 1                                                 │
    │         │                                                   │
    │         │ n                                                 │
    │  subscriptions (chat_id, account_id, keywords)              │
    │                                                             │
    │  - name is unique case-insensitively                        │
    │  - (chat_id, account_id) is unique                          │
    │  - accounts without subscriptions are pruned                │
    └─────────────────────────────────────────────────────────────┘

All methods raise ``StoreError`` on backend failure.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from watcher.models import Subscription, TrackedAccount

# Keyword filters longer than this are rejected by the command parser
MAX_KEYWORDS_LENGTH = 256


class SubscriptionStore(ABC):
    """Abstract base class for subscription stores."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the backend is reachable."""

    @abstractmethod
    async def add_subscription(
        self,
        chat_id: int,
        name: str,
        keywords: Optional[str] = None,
    ) -> int:
        """
        Subscribe a chat to an account, creating the account if needed.

        Re-adding an existing subscription replaces its keyword filter.

        Returns:
            The account's resolved id (0 when still unresolved).
        """

    @abstractmethod
    async def remove_subscription(self, chat_id: int, name: str) -> None:
        """Remove one subscription. Missing subscriptions are ignored."""

    @abstractmethod
    async def remove_all(self, chat_id: int) -> int:
        """Remove every subscription of a chat. Returns the number removed."""

    @abstractmethod
    async def list_for_chat(self, chat_id: int) -> list[Subscription]:
        """List a chat's subscriptions ordered by name."""

    @abstractmethod
    async def all_tracked_accounts(self, force_all: bool = False) -> list[TrackedAccount]:
        """
        Get accounts that need resolving.

        Args:
            force_all: Return every named account, not only unresolved ones.
        """

    @abstractmethod
    async def update_resolution(self, account_id: Any, resolved_id: int, name: str) -> None:
        """Persist a resolved id and (possibly renamed) name."""

    @abstractmethod
    async def distinct_watched_resolved_ids(self) -> list[int]:
        """Resolved ids with at least one subscriber, ascending."""

    @abstractmethod
    async def subscribers_for_resolved_id(
        self, resolved_id: int
    ) -> list[tuple[int, Optional[str]]]:
        """Return ``(chat_id, keywords)`` for every subscriber of an account."""

    @abstractmethod
    async def prune_orphans(self) -> int:
        """Delete accounts with no subscribers. Returns the number deleted."""

    @abstractmethod
    async def reset(self) -> None:
        """Delete all subscriptions and accounts."""

    @abstractmethod
    async def close(self) -> None:
        """Release the backend connection."""
