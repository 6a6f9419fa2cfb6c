"""
Event Classifier - Stream message parsing and post filtering.

Every line read from the filtered stream becomes a tagged ``StreamMessage``;
posts are then classified to decide whether they are forwarded.

Classification order:
    1. Empty body                           -> skip
    2. Starts with "@" or is a reply        -> skip
    3. Retweet or quote                     -> skip
    4. Otherwise: text with t.co links expanded

Skips are expected and frequent, so they are only logged at DEBUG.
"""

import json
import logging
from enum import Enum
from typing import Optional

from watcher.models import MessageKind, Post, StreamMessage

logger = logging.getLogger(__name__)


class SkipReason(Enum):
    """Why a post is not forwarded."""
    EMPTY = "empty"
    REPLY = "reply"
    RETWEET = "retweet"
    QUOTE = "quote"


_DISCONNECT_TITLES = {"operational-disconnect", "operational disconnect"}
_RATE_LIMIT_TITLES = {"ConnectionException", "TooManyConnections", "rate-limit"}


def parse_message(raw: dict) -> StreamMessage:
    """
    Turn one decoded stream object into a tagged message.

    Args:
        raw: JSON object read from the stream.

    Returns:
        StreamMessage with an exhaustive ``kind``.
    """
    data = raw.get("data")
    if data:
        if not isinstance(data, dict):
            return StreamMessage(kind=MessageKind.UNKNOWN, detail=json.dumps(raw)[:200], raw=raw)
        return StreamMessage(kind=MessageKind.POST, post=Post.from_payload(raw), raw=raw)

    errors = raw.get("errors") or []
    if isinstance(errors, list) and errors:
        error = errors[0] if isinstance(errors[0], dict) else {"detail": str(errors[0])}
        title = error.get("title") or ""
        detail = error.get("detail") or error.get("message") or title
        problem = (error.get("type") or "").rsplit("/", 1)[-1]

        if title in _DISCONNECT_TITLES or problem == "operational-disconnect":
            return StreamMessage(kind=MessageKind.DISCONNECT, detail=detail, raw=raw)
        if title in _RATE_LIMIT_TITLES or problem in _RATE_LIMIT_TITLES:
            return StreamMessage(kind=MessageKind.RATE_LIMIT, detail=detail, raw=raw)
        return StreamMessage(kind=MessageKind.NOTICE, detail=detail, raw=raw)

    return StreamMessage(kind=MessageKind.UNKNOWN, detail=json.dumps(raw)[:200], raw=raw)


def parse_line(line: str) -> Optional[StreamMessage]:
    """Parse one raw stream line. Keep-alive blank lines return None."""
    line = line.strip()
    if not line:
        return None
    try:
        raw = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"Unparseable stream line: {line[:100]}")
        return StreamMessage(kind=MessageKind.UNKNOWN, detail=line[:200])
    if not isinstance(raw, dict):
        return StreamMessage(kind=MessageKind.UNKNOWN, detail=line[:200])
    return parse_message(raw)


def expand_urls(text: str, urls: dict[str, str]) -> str:
    """Replace t.co short links with their expanded form."""
    for short, expanded in urls.items():
        text = text.replace(short, expanded)
    return text


def classify(post: Post) -> tuple[str, Optional[SkipReason]]:
    """
    Decide whether a post is forwarded.

    Args:
        post: Post read from the stream.

    Returns:
        (canonical text, None) for forwarded posts,
        ("", reason) for skipped ones.
    """
    text = (post.text or "").strip()

    if not text:
        reason = SkipReason.EMPTY
    elif text.startswith("@") or post.in_reply_to_user_id or "replied_to" in post.referenced_types:
        reason = SkipReason.REPLY
    elif "retweeted" in post.referenced_types or text.startswith("RT @"):
        reason = SkipReason.RETWEET
    elif "quoted" in post.referenced_types:
        reason = SkipReason.QUOTE
    else:
        return expand_urls(text, post.urls), None

    logger.debug(f"Skipping post {post.id} from {post.author_id}: {reason.value}")
    return "", reason
