"""
Delivery Dispatcher - Fan-out and the Telegram sender loop.

Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │                       FAN-OUT TASK                          │
    ├─────────────────────────────────────────────────────────────┤
    │  post     → subscribers of the author's id                  │
    │             → keyword filter → outbound queue               │
    │             → mentions chat when a mention keyword matches  │
    ├─────────────────────────────────────────────────────────────┤
    │                       SENDER TASK                           │
    ├─────────────────────────────────────────────────────────────┤
    │  outbound → send to Telegram                                │
    │             failure: tries -= 1, sleep backoff, requeue     │
    │             tries == 0: drop and log                        │
    └─────────────────────────────────────────────────────────────┘

Both tasks are cancelled as soon as the stop event is set, so a full
outbound queue never delays shutdown.

Keyword filters:
    "sports,news"      forwarded if any term appears in the text
    "sports,-breaking" never forwarded when "breaking" appears
    "-spam"            forwarded unless "spam" appears

Configuration:
    SEND_TRIES: Attempts per message (default: 2)
    SEND_BACKOFF: Seconds to wait after a failed send (default: 5)
    MENTIONS_CHAT: Chat receiving posts that match MENTIONS_KEYWORDS
"""

import asyncio
import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Sequence

from telegram.error import TelegramError

from watcher.errors import StoreError
from watcher.models import OutboundMessage, Post

if TYPE_CHECKING:
    from watcher.store import SubscriptionStore

logger = logging.getLogger(__name__)

# Capacity of the outbound message queue
OUTBOUND_QUEUE_SIZE = 256
# Number of recently forwarded post ids remembered
SEEN_CACHE_SIZE = 2048

SendFunc = Callable[[int, str], Awaitable[None]]


def keyword_match(text: str, keywords: Optional[str]) -> bool:
    """
    Check a post against a subscriber keyword filter.

    Args:
        text: Post text.
        keywords: Comma separated terms; "-" prefixed terms exclude.

    Returns:
        True if the subscriber should receive the post.
    """
    if not keywords or not keywords.strip():
        return True

    lowered = text.lower()
    terms = [t.strip().lower() for t in keywords.split(",") if t.strip()]
    excludes = [t[1:] for t in terms if t.startswith("-") and len(t) > 1]
    includes = [t for t in terms if not t.startswith("-")]

    if any(term in lowered for term in excludes):
        return False
    if not includes:
        return True
    return any(term in lowered for term in includes)


def mentions_match(text: str, keywords: Sequence[str]) -> bool:
    """True if any mention keyword appears in the text, ignoring case."""
    lowered = text.lower()
    return any(k.lower() in lowered for k in keywords if k)


def format_post_message(post: Post, text: str) -> str:
    """Build the Telegram text for a forwarded post."""
    screen_name = post.author_username or str(post.author_id)
    return (
        f"New Tweet from @{screen_name}!\n\n"
        f"{text}\n\n"
        f"https://twitter.com/{screen_name}/status/{post.id}"
    )


class Dispatcher:
    """
    Fans classified posts out to subscribers and delivers them.

    The fan-out task is the only consumer of the post queue and the sender
    task the only consumer of the outbound queue. Failed sends re-enter the
    back of the outbound queue without waiting for space.
    """

    def __init__(
        self,
        store: "SubscriptionStore",
        send: SendFunc,
        posts: asyncio.Queue,
        stop_event: asyncio.Event,
        tries: int = 2,
        backoff: float = 5.0,
        queue_size: int = OUTBOUND_QUEUE_SIZE,
        mentions_chat: int = 0,
        mentions_keywords: Sequence[str] = (),
    ) -> None:
        self.store = store
        self.send = send
        self.posts = posts
        self.stop_event = stop_event
        self.tries = tries
        self.backoff = backoff
        self.mentions_chat = mentions_chat
        self.mentions_keywords = list(mentions_keywords)
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize=queue_size)
        self._seen: OrderedDict[str, None] = OrderedDict()

        self.sent = 0
        self.dropped = 0

    def _remember(self, post_id: str) -> bool:
        """Return False if the post was already forwarded."""
        if post_id in self._seen:
            return False
        self._seen[post_id] = None
        if len(self._seen) > SEEN_CACHE_SIZE:
            self._seen.popitem(last=False)
        return True

    async def dispatch(self, post: Post, text: str) -> int:
        """
        Queue a post for every matching subscriber and the mentions chat.

        Returns:
            Number of messages queued.
        """
        if not self._remember(post.id):
            logger.debug(f"Post {post.id} already forwarded, skipping")
            return 0

        try:
            subscribers = await self.store.subscribers_for_resolved_id(post.author_id)
        except StoreError as e:
            logger.error(f"Error reading subscribers for {post.author_id}: {e}")
            subscribers = []

        message = format_post_message(post, text)
        queued = 0
        notified: set[int] = set()
        for chat_id, keywords in subscribers:
            if chat_id in notified:
                continue
            if not keyword_match(text, keywords):
                logger.debug(f"Post {post.id} filtered for chat {chat_id}")
                continue
            notified.add(chat_id)
            await self.outbound.put(OutboundMessage(chat_id=chat_id, text=message, tries=self.tries))
            queued += 1

        if (
            self.mentions_chat
            and self.mentions_chat not in notified
            and mentions_match(text, self.mentions_keywords)
        ):
            logger.info(f"Post {post.id} matches a mention keyword")
            await self.outbound.put(
                OutboundMessage(chat_id=self.mentions_chat, text=message, tries=self.tries)
            )
            queued += 1

        logger.debug(f"Post {post.id} from @{post.author_username} queued for {queued} chat(s)")
        return queued

    async def _deliver(self, message: OutboundMessage) -> None:
        try:
            await self.send(message.chat_id, message.text)
            self.sent += 1
            return
        except TelegramError as e:
            message.tries -= 1
            logger.warning(f"Error sending Telegram message to {message.chat_id}: {e}")

        if message.tries <= 0:
            self.dropped += 1
            logger.error(
                f"Removing Telegram message to {message.chat_id}: send failed too many times"
            )
            return

        await asyncio.sleep(self.backoff)
        try:
            self.outbound.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(f"Outbound queue full, dropping message to {message.chat_id}")

    async def _fan_out_loop(self) -> None:
        while True:
            post, text = await self.posts.get()
            await self.dispatch(post, text)

    async def _send_loop(self) -> None:
        while True:
            message = await self.outbound.get()
            await self._deliver(message)

    async def run(self) -> None:
        """Run the fan-out and sender tasks. Returns once the stop event is set."""
        logger.info(f"Sender started (tries: {self.tries}, backoff: {self.backoff}s)")
        stop_waiter = asyncio.create_task(self.stop_event.wait(), name="sender_stop")
        fan_out = asyncio.create_task(self._fan_out_loop(), name="sender_fan_out")
        sender = asyncio.create_task(self._send_loop(), name="sender_send")

        try:
            done, _ = await asyncio.wait(
                {stop_waiter, fan_out, sender},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                if task is not stop_waiter:
                    # Loops only end by raising
                    task.result()
        finally:
            pending = [t for t in (stop_waiter, fan_out, sender) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)
            logger.info(f"Sender stopped (sent: {self.sent}, dropped: {self.dropped})")
