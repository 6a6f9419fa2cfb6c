"""
Data structures shared by the store, the stream and the dispatcher.

The X API v2 payload is normalised into ``Post`` as soon as it leaves the
stream so that classification and delivery never touch raw JSON.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional


class ReloadLevel(IntEnum):
    """Urgency of a stream rebuild request. Higher levels include lower ones."""
    CURRENT = 0       # rebuild from the ids already resolved
    RESOLVE_NEW = 1   # resolve unresolved names first
    RESOLVE_ALL = 2   # re-resolve every tracked name first


class CoordinatorState(Enum):
    """States of the reload coordinator."""
    IDLE = "idle"                 # no session open
    STREAMING = "streaming"       # session open, no drop window
    DROPPING = "dropping"         # inside a drop window
    TERMINATING = "terminating"   # terminal


class MessageKind(Enum):
    """Kinds of messages read from the filtered stream."""
    POST = "post"
    NOTICE = "notice"
    DISCONNECT = "disconnect"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


@dataclass
class TrackedAccount:
    """One followed X account as stored in the subscription store."""
    id: Any
    name: str
    resolved_id: int = 0
    subscribers: int = 0
    # Set by the resolver when the account was renamed upstream
    new_name: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_id != 0


@dataclass
class Subscription:
    """A chat's association with one tracked account."""
    name: str
    resolved_id: int = 0
    keywords: Optional[str] = None


@dataclass
class FilterSpec:
    """Filtered stream rule set built from the resolved account ids."""
    rules: list[str]
    user_ids: list[int] = field(default_factory=list)


@dataclass
class Post:
    """
    A post delivered by the filtered stream.

    Built from the v2 JSON payload, with the author expansion joined in.
    """
    id: str
    text: str
    author_id: int = 0
    author_username: str = ""
    in_reply_to_user_id: str = ""
    referenced_types: list[str] = field(default_factory=list)
    # short url -> expanded url
    urls: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "Post":
        """
        Create a Post from a filtered stream JSON object.

        Args:
            payload: Decoded stream line with ``data`` and ``includes`` keys.

        Returns:
            Normalised Post.
        """
        data = _mapping(payload.get("data"))
        author_id = str(data.get("author_id") or "")

        username = ""
        for user in _mapping(payload.get("includes")).get("users") or []:
            if isinstance(user, dict) and str(user.get("id")) == author_id:
                username = user.get("username") or ""
                break

        urls = {}
        for entity in _mapping(data.get("entities")).get("urls") or []:
            if not isinstance(entity, dict):
                continue
            short = entity.get("url")
            expanded = entity.get("expanded_url")
            if short and expanded:
                urls[short] = expanded

        text = data.get("text")
        return cls(
            id=str(data.get("id") or ""),
            text=text if isinstance(text, str) else "",
            author_id=int(author_id) if author_id.isdigit() else 0,
            author_username=username,
            in_reply_to_user_id=str(data.get("in_reply_to_user_id") or ""),
            referenced_types=[
                r.get("type", "") for r in data.get("referenced_tweets") or []
                if isinstance(r, dict)
            ],
            urls=urls,
        )


def _mapping(value: Any) -> dict:
    """Treat a missing or malformed JSON object as empty."""
    return value if isinstance(value, dict) else {}


@dataclass
class StreamMessage:
    """Tagged stream message. ``post`` is only set for ``MessageKind.POST``."""
    kind: MessageKind
    post: Optional[Post] = None
    detail: str = ""
    raw: Optional[dict] = field(default=None, repr=False)


@dataclass
class OutboundMessage:
    """A Telegram message waiting in the send queue."""
    chat_id: int
    text: str
    tries: int = 2
