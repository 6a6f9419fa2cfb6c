"""
Stream Session Manager - Filter building and stream connections.

A session is one live filtered stream connection plus the reader task that
turns its lines into ``StreamMessage`` objects on a bounded queue.

Lifecycle:
    ┌─────────────────────────────────────────────────────────────┐
    │  build_filter()   store ids -> "from:" rules (<= 510 chars) │
    │        ↓                                                    │
    │  open_session()   sync rules, connect, start reader         │
    │        ↓                                                    │
    │  reader task      line -> StreamMessage -> queue            │
    │                   EOF / transport error -> DISCONNECT       │
    │        ↓                                                    │
    │  close_session()  cancel reader, close response, drain      │
    └─────────────────────────────────────────────────────────────┘

Only the reload coordinator calls ``open_session`` and ``close_session``.
"""

import asyncio
import itertools
import logging
from typing import TYPE_CHECKING, Optional

import httpx

from watcher.classifier import parse_line
from watcher.errors import StoreError, StreamOpenError, UpstreamError
from watcher.models import FilterSpec, MessageKind, StreamMessage

if TYPE_CHECKING:
    from watcher.resolver import NameResolver
    from watcher.store import SubscriptionStore
    from watcher.twitter_client import TwitterClient

logger = logging.getLogger(__name__)

# Maximum length of one filtered stream rule value
MAX_RULE_LENGTH = 510
# Capacity of each session's message queue
SESSION_QUEUE_SIZE = 256

_session_ids = itertools.count(1)


def build_rules(user_ids: list[int], language: str = "") -> list[str]:
    """
    Group ``from:`` terms into rules no longer than ``MAX_RULE_LENGTH``.

    Replies, retweets and quotes are excluded at the rule level.

    Args:
        user_ids: Resolved ids to follow.
        language: Optional ``lang:`` operator value.

    Returns:
        Rule values, in id order.
    """
    suffix = _rule_suffix(language)

    def render(terms: list[str]) -> str:
        return "(" + " OR ".join(terms) + ")" + suffix

    rules: list[str] = []
    current: list[str] = []
    for user_id in user_ids:
        term = f"from:{user_id}"
        if current and len(render(current + [term])) > MAX_RULE_LENGTH:
            rules.append(render(current))
            current = []
        current.append(term)
    if current:
        rules.append(render(current))
    return rules


def _rule_suffix(language: str) -> str:
    suffix = " -is:retweet -is:reply -is:quote"
    if language:
        suffix += f" lang:{language}"
    return suffix


def build_keyword_rule(keywords: list[str], language: str = "") -> str:
    """
    Build the rule matching posts that mention any of ``keywords``.

    Multi-word keywords become exact phrases. Returns an empty string when
    there are no keywords.
    """
    terms = []
    for keyword in keywords:
        keyword = keyword.replace('"', "").strip()
        if not keyword:
            continue
        terms.append(f'"{keyword}"' if " " in keyword else keyword)
    if not terms:
        return ""
    return "(" + " OR ".join(terms) + ")" + _rule_suffix(language)


class StreamSession:
    """One live filtered stream connection."""

    def __init__(
        self,
        spec: FilterSpec,
        response: httpx.Response,
        queue_size: int = SESSION_QUEUE_SIZE,
    ) -> None:
        self.id = next(_session_ids)
        self.spec = spec
        self.messages: asyncio.Queue[StreamMessage] = asyncio.Queue(maxsize=queue_size)
        self._response = response
        self._reader: Optional[asyncio.Task] = None
        self.closed = False

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read(), name=f"stream_reader_{self.id}")

    async def _read(self) -> None:
        """Read lines until the connection ends, then report a disconnect."""
        detail = "stream closed by server"
        try:
            async for line in self._response.aiter_lines():
                message = parse_line(line)
                if message is not None:
                    await self.messages.put(message)
        except httpx.HTTPError as e:
            detail = f"transport error: {e!r}"
        await self.messages.put(StreamMessage(kind=MessageKind.DISCONNECT, detail=detail))

    async def close(self) -> None:
        """Stop the reader, close the connection and drop queued messages."""
        if self.closed:
            return
        self.closed = True

        if self._reader and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass

        try:
            await self._response.aclose()
        except httpx.HTTPError as e:
            logger.debug(f"Session {self.id} close error (ignored): {e}")

        dropped = 0
        while not self.messages.empty():
            self.messages.get_nowait()
            dropped += 1
        logger.debug(f"Session {self.id} closed ({dropped} queued message(s) dropped)")


class StreamSessionManager:
    """Builds filters from the store and opens stream sessions."""

    def __init__(
        self,
        store: "SubscriptionStore",
        twitter: "TwitterClient",
        resolver: "NameResolver",
        language: str = "",
        queue_size: int = SESSION_QUEUE_SIZE,
        mentions_keywords: Optional[list[str]] = None,
    ) -> None:
        self.store = store
        self.twitter = twitter
        self.resolver = resolver
        self.language = language
        self.mentions_rule = build_keyword_rule(mentions_keywords or [], language)
        self.queue_size = queue_size

    async def build_filter(
        self,
        resolve_first: bool = False,
        resolve_all: bool = False,
    ) -> Optional[FilterSpec]:
        """
        Build the stream filter from the subscribed, resolved accounts
        and the mentions keyword rule.

        Args:
            resolve_first: Run the name resolver before reading ids.
            resolve_all: Make the resolver re-resolve every account.

        Returns:
            FilterSpec, or None when there is nothing to follow (no stream
            must be opened in that case).
        """
        if resolve_first:
            await self.resolver.resolve(resolve_all)

        try:
            user_ids = await self.store.distinct_watched_resolved_ids()
        except StoreError as e:
            logger.error(f"Error reading followed ids: {e}")
            return None

        rules = build_rules(user_ids, self.language)
        if self.mentions_rule:
            rules.append(self.mentions_rule)
        if not rules:
            logger.info("No resolved accounts are followed, stream stays closed")
            return None

        logger.debug(f"Built {len(rules)} rule(s) for {len(user_ids)} account(s)")
        return FilterSpec(rules=rules, user_ids=user_ids)

    async def open_session(self, spec: FilterSpec) -> StreamSession:
        """
        Open a stream session for ``spec``.

        Raises:
            StreamOpenError: Rules could not be applied or the stream
                refused the connection after retries.
        """
        try:
            await self.twitter.sync_rules(spec.rules)
            response = await self.twitter.open_stream()
        except StreamOpenError:
            raise
        except (UpstreamError, httpx.HTTPError) as e:
            raise StreamOpenError(f"Could not open stream: {e}") from e

        session = StreamSession(spec, response, self.queue_size)
        session.start()
        logger.info(
            f"Stream session {session.id} open: "
            f"{len(spec.user_ids)} account(s), {len(spec.rules)} rule(s)"
        )
        return session

    async def close_session(self, session: Optional[StreamSession]) -> None:
        """Close a session. Safe to call with None."""
        if session is None:
            return
        await session.close()
