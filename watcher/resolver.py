"""
Name Resolver - Screen name to numeric id reconciliation.

The filtered stream follows accounts by numeric id, but chats subscribe by
screen name. The resolver binds stored names to ids and notices renames.

Flow:
    ┌─────────────────────────────────────────────────────────────┐
    │  1. Read accounts (unresolved only, or all when forced)     │
    │  2. Look up names in batches of <= 100                      │
    │     (forced runs also look up bound ids, to catch renames)  │
    │  3. Build resolved id -> returned name                      │
    │  4. Per account:                                            │
    │     name matches (case-insensitive) -> bind id              │
    │     bound id returned with other name -> rename             │
    │  5. Write changed accounts back, one failure never aborts   │
    │     the remaining writes                                    │
    └─────────────────────────────────────────────────────────────┘
"""

import logging
from typing import TYPE_CHECKING

import httpx

from watcher.errors import StoreError, UpstreamError
from watcher.models import TrackedAccount
from watcher.twitter_client import LOOKUP_BATCH_SIZE

if TYPE_CHECKING:
    from watcher.store import SubscriptionStore
    from watcher.twitter_client import TwitterClient

logger = logging.getLogger(__name__)


def batched(items: list, size: int = LOOKUP_BATCH_SIZE) -> list[list]:
    """Split a list into consecutive chunks of at most ``size`` items."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class NameResolver:
    """Binds tracked account names to X user ids."""

    def __init__(self, store: "SubscriptionStore", twitter: "TwitterClient") -> None:
        self.store = store
        self.twitter = twitter

    async def _lookup(self, accounts: list[TrackedAccount], force_all: bool) -> dict[int, str]:
        """Return resolved id -> current screen name for everything found."""
        results: dict[int, str] = {}

        def merge(found: list[tuple[int, str]]) -> None:
            for user_id, name in found:
                previous = results.get(user_id)
                if previous is not None and previous.lower() != name.lower():
                    logger.warning(
                        f"Duplicate ID {user_id} returned for @{previous} and @{name}"
                    )
                results[user_id] = name

        for batch in batched([a.name for a in accounts]):
            try:
                merge(await self.twitter.lookup_users(batch))
            except (UpstreamError, httpx.HTTPError) as e:
                logger.error(f"Error resolving {len(batch)} name(s): {e}")

        if force_all:
            bound = sorted({a.resolved_id for a in accounts if a.is_resolved})
            for batch in batched(bound):
                try:
                    merge(await self.twitter.lookup_ids(batch))
                except (UpstreamError, httpx.HTTPError) as e:
                    logger.error(f"Error refreshing {len(batch)} id(s): {e}")

        return results

    @staticmethod
    def reconcile(accounts: list[TrackedAccount], results: dict[int, str]) -> list[TrackedAccount]:
        """
        Apply lookup results to the stored accounts.

        Args:
            accounts: Stored accounts (mutated in place).
            results: Resolved id -> returned screen name.

        Returns:
            The accounts whose id or name changed.
        """
        changed = []
        for account in accounts:
            original_id = account.resolved_id
            for user_id, name in results.items():
                if name.lower() == account.name.lower():
                    account.resolved_id = user_id
                    logger.debug(f"@{account.name} resolved to ID {user_id}")
                elif account.resolved_id == user_id:
                    account.new_name = name
                    logger.warning(
                        f"Found new name for ID {user_id}: @{account.name} => @{name}"
                    )
            if account.resolved_id != original_id or account.new_name:
                changed.append(account)
        return changed

    async def resolve(self, force_all: bool = False) -> int:
        """
        Resolve unresolved (or, if forced, all) tracked accounts.

        Args:
            force_all: Re-resolve accounts that already have an id.

        Returns:
            Number of accounts written back.
        """
        logger.debug(f"Starting name resolve (force_all={force_all})...")
        try:
            accounts = await self.store.all_tracked_accounts(force_all)
        except StoreError as e:
            logger.error(f"Error reading tracked accounts: {e}")
            return 0

        if not accounts:
            logger.debug("No tracked accounts to resolve")
            return 0

        logger.debug(f"Resolving {len(accounts)} tracked account(s)...")
        results = await self._lookup(accounts, force_all)
        changed = self.reconcile(accounts, results)

        written = 0
        for account in changed:
            name = account.new_name or account.name
            try:
                await self.store.update_resolution(account.id, account.resolved_id, name)
                written += 1
            except StoreError as e:
                logger.error(f"Error updating @{account.name}: {e}")

        unresolved = sum(1 for a in accounts if not a.is_resolved)
        logger.info(
            f"Resolve complete: {written}/{len(changed)} updated, {unresolved} unresolved"
        )
        return written
