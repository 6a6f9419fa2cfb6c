"""
Twitter Watcher - X/Twitter filtered stream to Telegram bridge.

The bridge follows a set of X/Twitter accounts through the v2 filtered
stream and forwards their new posts to the Telegram chats subscribed to
them. Chats manage their own follow list with bot commands.

Architecture:
    Reload coordination with a debounce window:
    1. Commands and timers only *request* a stream rebuild
    2. The coordinator owns the single live stream session and
       collapses bursts of requests into one rebuild per window

Modules:
    bot: Orchestrator, signal handling and CLI entry point
    coordinator: Reload/debounce state machine owning the stream session
    stream_session: Filter rule building and stream connections
    resolver: Username -> numeric id resolution and rename detection
    classifier: Stream message parsing and post classification
    dispatcher: Keyword filtering, fan-out and the Telegram sender loop
    commands: Command text parsing, handle validation, access control
    telegram_client: Telegram bot commands and outbound messages
    twitter_client: X API v2 HTTP client
    database: Supabase subscription store
    database_sqlite: SQLite subscription store (fallback)

Entry Point:
    python -m watcher.bot
"""

__version__ = "0.1.0"
