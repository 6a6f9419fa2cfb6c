"""
Centralized configuration for Twitter Watcher.

This module uses Pydantic Settings to load and validate environment variables.
All bridge configuration is centralized here to avoid scattered config files.

Usage:
    from config import settings
    print(settings.drop_window)

Environment Variables:
    Run ``twitter-watcher --dump`` to print a .env with all options.
"""

import logging

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def split_list(value: str) -> list[str]:
    """Split a comma separated setting into its non-empty entries."""
    return [v.strip().lstrip("@") for v in value.split(",") if v.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # =========================================================================
    # X/Twitter API (v2, app-only bearer token)
    # =========================================================================
    twitter_bearer_token: str = ""
    twitter_api_url: str = "https://api.twitter.com/2"
    stream_language: str = "en"  # empty disables the lang: rule operator

    # =========================================================================
    # Telegram
    # =========================================================================
    telegram_bot_token: str = ""
    # Comma separated Telegram usernames; blocked wins over allowed
    allowed_users: str = ""
    blocked_users: str = ""

    # =========================================================================
    # Supabase (primary store, SQLite is used when unset or unreachable)
    # =========================================================================
    supabase_url: str = ""
    supabase_key: str = ""
    sqlite_path: str = "watcher.db"

    # =========================================================================
    # Stream / Reload timing (seconds)
    # =========================================================================
    resolve_interval: int = 21600  # 6h scheduled resolve-all
    drop_window: float = 60.0
    stream_pause: float = 5.0

    # =========================================================================
    # Delivery
    # =========================================================================
    send_tries: int = 2
    send_backoff: float = 5.0

    # =========================================================================
    # Mentions (posts matching any keyword go to one receiver chat)
    # =========================================================================
    mentions_chat: int = 0  # 0 disables mentions
    mentions_keywords: str = ""  # comma separated, e.g. "@acme,acme corp"

    # =========================================================================
    # Logging
    # =========================================================================
    log_level: str = "INFO"
    log_file: str = ""

    @property
    def allowed_list(self) -> list[str]:
        return split_list(self.allowed_users)

    @property
    def blocked_list(self) -> list[str]:
        return split_list(self.blocked_users)

    @property
    def mentions_list(self) -> list[str]:
        return [k.strip() for k in self.mentions_keywords.split(",") if k.strip()]


DEFAULT_ENV_TEMPLATE = """\
# Twitter Watcher configuration
TWITTER_BEARER_TOKEN=
TWITTER_API_URL=https://api.twitter.com/2
STREAM_LANGUAGE=en

TELEGRAM_BOT_TOKEN=
ALLOWED_USERS=
BLOCKED_USERS=

SUPABASE_URL=
SUPABASE_KEY=
SQLITE_PATH=watcher.db

RESOLVE_INTERVAL=21600
DROP_WINDOW=60
STREAM_PAUSE=5

SEND_TRIES=2
SEND_BACKOFF=5

MENTIONS_CHAT=0
MENTIONS_KEYWORDS=

LOG_LEVEL=INFO
LOG_FILE=
"""


# Singleton instance for global settings
settings = Settings()
