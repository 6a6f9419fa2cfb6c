"""
Main orchestrator for Twitter Watcher.

This module wires all components together and manages the worker tasks.

Responsibilities:
    1. Validate configuration, open the subscription store and check
       the X API credentials
    2. Start the reload coordinator, the sender and the resolve timer
    3. Run Telegram polling for subscription commands
    4. Stop everything on SIGINT/SIGTERM or a fatal stream error

Tasks:
    ┌─────────────────────────────────────────────────────────────┐
    │  coordinator   owns the stream session, debounces reloads   │
    │  sender        fan-out + Telegram delivery with retries     │
    │  resolver      reload(2) every RESOLVE_INTERVAL seconds     │
    │  telegram      command handlers → store → reload(0|1)       │
    │                                                             │
    │  All tasks watch one stop event. Setting it is idempotent   │
    │  and allowed from anywhere (signals, fatal stream errors).  │
    └─────────────────────────────────────────────────────────────┘

Entry Point:
    python -m watcher.bot [--dump] [--clear-all]
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import httpx
from telegram.error import TelegramError

from config import settings, DEFAULT_ENV_TEMPLATE
from watcher import __version__
from watcher.coordinator import ReloadCoordinator
from watcher.database_sqlite import SQLiteDatabase
from watcher.dispatcher import Dispatcher
from watcher.errors import ConfigError, StoreError, UpstreamError
from watcher.models import ReloadLevel
from watcher.resolver import NameResolver
from watcher.store import SubscriptionStore
from watcher.stream_session import (
    MAX_RULE_LENGTH,
    SESSION_QUEUE_SIZE,
    StreamSessionManager,
    build_keyword_rule,
)
from watcher.telegram_client import TelegramClient
from watcher.twitter_client import TwitterClient

logger = logging.getLogger(__name__)

# Capacity of the classified post queue between coordinator and sender
POST_QUEUE_SIZE = 256
# Seconds to wait for a task to finish before cancelling it
SHUTDOWN_TIMEOUT = 10.0


def configure_logging(level: str = "INFO", log_file: str = "") -> None:
    """Configure root logging, optionally also writing to a file."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    # Suppress noisy HTTP logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.WARNING)


class TwitterWatcherBot:
    """
    Main orchestrator that ties all components together.

    This class handles:
    - Component initialization
    - Worker task lifecycle
    - Graceful, idempotent shutdown
    """

    def __init__(self, twitter_transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        """
        Initialize the bot with empty component references.

        Args:
            twitter_transport: Optional httpx transport for the X API client.
        """
        self._twitter_transport = twitter_transport
        self.db: Optional[SubscriptionStore] = None
        self.twitter: Optional[TwitterClient] = None
        self.telegram: Optional[TelegramClient] = None
        self.coordinator: Optional[ReloadCoordinator] = None
        self.dispatcher: Optional[Dispatcher] = None

        self.stop_event = asyncio.Event()
        self.posts: asyncio.Queue = asyncio.Queue(maxsize=POST_QUEUE_SIZE)
        self.fatal_error: Optional[BaseException] = None

        self._tasks: list[asyncio.Task] = []
        self._stopped = False

    def _validate_config(self) -> None:
        """
        Validate required configuration at startup.

        Raises:
            ConfigError: If required configuration is missing or invalid.
        """
        required_settings = [
            ("TWITTER_BEARER_TOKEN", settings.twitter_bearer_token),
            ("TELEGRAM_BOT_TOKEN", settings.telegram_bot_token),
        ]
        missing = [name for name, value in required_settings if not value]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

        if settings.drop_window <= 0 or settings.stream_pause < 0:
            raise ConfigError("DROP_WINDOW must be positive and STREAM_PAUSE non-negative")
        if settings.send_tries < 1:
            raise ConfigError("SEND_TRIES must be at least 1")

        mentions = settings.mentions_list
        if bool(settings.mentions_chat) != bool(mentions):
            raise ConfigError("MENTIONS_CHAT and MENTIONS_KEYWORDS must be set together")
        if len(build_keyword_rule(mentions, settings.stream_language)) > MAX_RULE_LENGTH:
            raise ConfigError(f"MENTIONS_KEYWORDS do not fit in one {MAX_RULE_LENGTH} character rule")

        logger.info("Configuration validation passed")

    async def _open_store(self) -> SubscriptionStore:
        """Open Supabase if configured and healthy, SQLite otherwise."""
        if settings.supabase_url and settings.supabase_key:
            try:
                from watcher.database import Database
                db = Database()
                if not await db.health_check():
                    raise StoreError("Supabase health check failed")
                logger.info("Database initialized (Supabase)")
                return db
            except StoreError as e:
                logger.warning(f"Supabase unavailable ({e}), falling back to SQLite")

        db = SQLiteDatabase(settings.sqlite_path)
        logger.info("Database initialized (SQLite)")
        return db

    async def _verify_credentials(self) -> None:
        """
        Make one authenticated X API call before anything is streamed.

        Raises:
            ConfigError: The bearer token was rejected (HTTP 401/403).
        """
        try:
            rules = await self.twitter.get_rules()
        except UpstreamError as e:
            if e.status_code in (401, 403):
                raise ConfigError(f"X API rejected TWITTER_BEARER_TOKEN: {e}") from e
            logger.warning(f"Could not verify X API credentials: {e}")
            return
        except httpx.HTTPError as e:
            logger.warning(f"Could not verify X API credentials: {e!r}")
            return
        logger.info(f"X API credentials verified ({len(rules)} active rule(s))")

    async def initialize(self, clear_all: bool = False) -> bool:
        """
        Initialize all bot components.

        Args:
            clear_all: Delete all stored subscriptions before starting.

        Returns:
            True if all components initialized successfully, False otherwise.
        """
        logger.info("Initializing components...")

        try:
            # 0. Validate configuration first (fail fast)
            self._validate_config()

            # 1. Subscription store
            self.db = await self._open_store()
            if clear_all:
                await self.db.reset()
            await self.db.prune_orphans()

            # 2. X API, resolver and stream sessions
            self.twitter = TwitterClient(
                bearer_token=settings.twitter_bearer_token,
                base_url=settings.twitter_api_url,
                transport=self._twitter_transport,
            )
            await self._verify_credentials()
            sessions = StreamSessionManager(
                store=self.db,
                twitter=self.twitter,
                resolver=NameResolver(self.db, self.twitter),
                language=settings.stream_language,
                queue_size=SESSION_QUEUE_SIZE,
                mentions_keywords=settings.mentions_list,
            )

            # 3. Telegram
            self.telegram = TelegramClient()
            await self.telegram.initialize()
            self.telegram.set_database(self.db)

            # 4. Coordinator and sender
            self.coordinator = ReloadCoordinator(
                sessions=sessions,
                posts=self.posts,
                stop_event=self.stop_event,
                drop_window=settings.drop_window,
                stream_pause=settings.stream_pause,
            )
            self.dispatcher = Dispatcher(
                store=self.db,
                send=self.telegram.send_message,
                posts=self.posts,
                stop_event=self.stop_event,
                tries=settings.send_tries,
                backoff=settings.send_backoff,
                mentions_chat=settings.mentions_chat,
                mentions_keywords=settings.mentions_list,
            )
            self.telegram.on_reload(self.coordinator.request_reload)

            logger.info("All components initialized successfully")
            return True

        except (ConfigError, StoreError) as e:
            logger.error(f"Failed to initialize components: {e}")
            self.fatal_error = e
            return False

    async def _resolve_ticker(self, interval: float) -> None:
        """Request a resolve-all rebuild every ``interval`` seconds."""
        logger.info(f"Resolve timer started (interval: {interval}s)")
        while not self.stop_event.is_set():
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                logger.debug("Scheduled resolve-all reload")
                await self.coordinator.request_reload(ReloadLevel.RESOLVE_ALL)

    def request_stop(self, reason: str = "Manual shutdown") -> None:
        """Ask every task to stop. Safe to call repeatedly and from any task."""
        if not self.stop_event.is_set():
            logger.info(f"Stop requested ({reason})")
            self.stop_event.set()

    def _on_task_done(self, task: asyncio.Task) -> None:
        """A worker that exits early takes the whole process down."""
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Task {task.get_name()} crashed: {task.exception()!r}")
        self.request_stop(f"{task.get_name()} exited")

    async def start(self) -> None:
        """
        Start all worker tasks and block until a stop is requested.

        This method:
        1. Starts the reload coordinator (initial resolve-all rebuild)
        2. Starts the sender
        3. Starts the resolve timer
        4. Starts Telegram polling
        """
        logger.info("Starting bot...")

        self._tasks = [
            asyncio.create_task(self.coordinator.run(ReloadLevel.RESOLVE_ALL), name="coordinator"),
            asyncio.create_task(self.dispatcher.run(), name="sender"),
            asyncio.create_task(self._resolve_ticker(settings.resolve_interval), name="resolve_timer"),
        ]
        for task in self._tasks:
            task.add_done_callback(self._on_task_done)

        # Start Telegram polling (PTB v20+ compatible - manual start)
        try:
            await self.telegram.app.initialize()
            await self.telegram.app.start()
            await self.telegram.app.updater.start_polling(drop_pending_updates=True)
            logger.info("Telegram polling active")
        except TelegramError as e:
            logger.error(f"Failed to start Telegram polling: {e}")
            self.fatal_error = e
            self.request_stop("Telegram unavailable")

        await self.stop_event.wait()

    async def stop(self) -> None:
        """Gracefully stop the bot and all tasks."""
        if self._stopped:
            return
        self._stopped = True
        self.request_stop()

        for task in self._tasks:
            try:
                await asyncio.wait_for(task, timeout=SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Task {task.get_name()} did not stop in time, cancelled")
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Task {task.get_name()} failed: {e}")
                self.fatal_error = self.fatal_error or e

        if self.coordinator and self.coordinator.fatal_error:
            self.fatal_error = self.coordinator.fatal_error

        # Stop Telegram (PTB v20+ proper shutdown sequence)
        if self.telegram and self.telegram.app:
            try:
                if self.telegram.app.updater and self.telegram.app.updater.running:
                    await self.telegram.app.updater.stop()
                if self.telegram.app.running:
                    await self.telegram.app.stop()
                    await self.telegram.app.shutdown()
            except TelegramError as e:
                logger.debug(f"Telegram stop error (ignored): {e}")

        if self.twitter:
            await self.twitter.close()
        if self.db:
            await self.db.close()

        logger.info("Bot stopped")

    @property
    def exit_code(self) -> int:
        return 1 if self.fatal_error else 0


async def run(clear_all: bool = False) -> int:
    """
    Run the bridge until stopped.

    Returns:
        Process exit code.
    """
    logger.info("=" * 60)
    logger.info(f"Starting Twitter Watcher v{__version__}")
    logger.info(f"Drop window: {settings.drop_window}s, resolve interval: {settings.resolve_interval}s")
    logger.info("=" * 60)

    bot = TwitterWatcherBot()

    if not await bot.initialize(clear_all=clear_all):
        logger.error("Failed to initialize bot - exiting")
        await bot.stop()
        return bot.exit_code

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bot.request_stop, "Signal received (SIGINT/SIGTERM)")
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await bot.start()
    except asyncio.CancelledError:
        logger.info("Bot cancelled")
    finally:
        await bot.stop()

    logger.info("Bot shutdown complete")
    return bot.exit_code


def main(argv: list[str] | None = None) -> int:
    """Command line entry point."""
    parser = argparse.ArgumentParser(
        prog="twitter-watcher",
        description="Forward X/Twitter posts to Telegram subscribers",
    )
    parser.add_argument(
        "-d", "--dump", action="store_true",
        help="print a default .env configuration and exit",
    )
    parser.add_argument(
        "--clear-all", action="store_true",
        help="delete all stored subscriptions before starting",
    )
    args = parser.parse_args(argv)

    if args.dump:
        print(DEFAULT_ENV_TEMPLATE)
        return 0

    configure_logging(settings.log_level, settings.log_file)
    return asyncio.run(run(clear_all=args.clear_all))


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
