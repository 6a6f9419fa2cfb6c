"""
Telegram Client - Subscription commands and outbound messages.

This module handles all Telegram interactions:
- Managing each chat's follow list through bot commands
- Sending forwarded posts (called by the dispatcher's sender loop)

Bot Commands:
    /start, /help - Show usage
    /list - Show the chat's followed accounts
    /add @a,@b [keywords] - Follow accounts, optionally with a keyword filter
    /remove @a,@b - Stop following accounts
    /remove all, /remove clear, /clear - Stop following everything
    /confirm (or a plain "confirm" reply) - Confirm a pending clear

Reload Flow:
    ┌─────────────────────────────────────────────────────────────┐
    │  /add    → store → reload(1) if any name is unresolved,     │
    │                    reload(0) otherwise                      │
    │  /remove → store → reload(0)                                │
    │  /clear  → "confirm" → store → reload(0)                    │
    └─────────────────────────────────────────────────────────────┘

Configuration:
    TELEGRAM_BOT_TOKEN: Bot token from @BotFather
    ALLOWED_USERS / BLOCKED_USERS: Optional username access lists
"""

import logging
from typing import Awaitable, Callable, Optional

from telegram import Update
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from config import settings
from watcher import commands
from watcher.errors import StoreError
from watcher.models import ReloadLevel
from watcher.store import SubscriptionStore

logger = logging.getLogger(__name__)

ReloadCallback = Callable[[int], Awaitable[None]]


class TelegramClient:
    """
    Handles Telegram bot interactions for subscription management.

    The pending clear confirmations are owned by this object and only
    touched from its handlers.
    """

    def __init__(
        self,
        token: str | None = None,
        allowed: list[str] | None = None,
        blocked: list[str] | None = None,
    ) -> None:
        """
        Initialize the Telegram client.

        Args:
            token: Bot token. Defaults to config value.
            allowed: Allowed usernames. Defaults to config value.
            blocked: Blocked usernames. Defaults to config value.
        """
        self.token = token or settings.telegram_bot_token
        self.allowed = allowed if allowed is not None else settings.allowed_list
        self.blocked = blocked if blocked is not None else settings.blocked_list
        self.app: Optional[Application] = None

        # Injected via set_database / on_reload
        self._db: Optional[SubscriptionStore] = None
        self._on_reload: Optional[ReloadCallback] = None

        self.pending = commands.PendingConfirmations()

    def set_database(self, db: SubscriptionStore) -> None:
        """Inject the subscription store used by the commands."""
        self._db = db

    def on_reload(self, callback: ReloadCallback) -> None:
        """Register the coroutine that receives stream reload requests."""
        self._on_reload = callback

    async def initialize(self) -> None:
        """Initialize the Telegram bot application."""
        self.app = Application.builder().token(self.token).build()

        self.app.add_handler(CommandHandler(["start", "help"], self._cmd_help))
        self.app.add_handler(CommandHandler("list", self._cmd_list))
        self.app.add_handler(CommandHandler("add", self._cmd_add))
        self.app.add_handler(CommandHandler("remove", self._cmd_remove))
        self.app.add_handler(CommandHandler("clear", self._cmd_clear))
        self.app.add_handler(CommandHandler("confirm", self._cmd_confirm))
        self.app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_text))
        self.app.add_handler(MessageHandler(filters.COMMAND, self._cmd_unknown))
        self.app.add_error_handler(self._error_handler)

        logger.info("Telegram client initialized")

    async def send_message(self, chat_id: int, text: str) -> None:
        """
        Send a message to a chat.

        Raises:
            telegram.error.TelegramError: The Bot API rejected the message.
        """
        await self.app.bot.send_message(chat_id=chat_id, text=text)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _authorized(self, update: Update) -> bool:
        user = update.effective_user
        username = user.username if user else None
        if commands.can_use(username, self.allowed, self.blocked):
            return True
        logger.debug(f"Denied command from @{username} in chat {update.effective_chat.id}")
        await update.message.reply_text(commands.DENIED)
        return False

    async def _request_reload(self, level: int) -> None:
        if self._on_reload is None:
            logger.warning("No reload callback registered, stream not rebuilt")
            return
        await self._on_reload(level)

    async def _clear(self, update: Update, chat_id: int) -> None:
        try:
            await self._db.remove_all(chat_id)
        except StoreError as e:
            logger.error(f"Error clearing subscriptions for chat {chat_id}: {e}")
            await update.message.reply_text(commands.ERROR)
            return
        await self._request_reload(ReloadLevel.CURRENT)
        await update.message.reply_text(commands.CLEARED)

    # =========================================================================
    # Commands
    # =========================================================================

    async def _cmd_help(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /start and /help."""
        self.pending.discard(update.effective_chat.id)
        if not await self._authorized(update):
            return
        await update.message.reply_text(
            "I forward new Tweets from the accounts you follow.\n\n" + commands.USAGE
        )

    async def _cmd_list(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /list - show followed accounts."""
        chat_id = update.effective_chat.id
        self.pending.discard(chat_id)
        if not await self._authorized(update):
            return

        try:
            subscriptions = await self._db.list_for_chat(chat_id)
        except StoreError as e:
            logger.error(f"Error listing subscriptions for chat {chat_id}: {e}")
            await update.message.reply_text(commands.ERROR)
            return

        await update.message.reply_text(commands.format_list(subscriptions))

    async def _cmd_add(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /add @a,@b [keywords] - follow accounts."""
        chat_id = update.effective_chat.id
        self.pending.discard(chat_id)
        if not await self._authorized(update):
            return

        try:
            names, keywords = commands.split_names(" ".join(context.args or []))
        except commands.InputError as e:
            await update.message.reply_text(str(e))
            return

        unresolved = False
        added = 0
        try:
            for name in names:
                if await self._db.add_subscription(chat_id, name, keywords) == 0:
                    unresolved = True
                added += 1
        except StoreError as e:
            logger.error(f"Error adding subscription for chat {chat_id}: {e}")
            await update.message.reply_text(commands.ERROR)
            return
        finally:
            if added:
                await self._request_reload(
                    ReloadLevel.RESOLVE_NEW if unresolved else ReloadLevel.CURRENT
                )

        await update.message.reply_text(commands.SUCCESS)

    async def _cmd_remove(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /remove @a,@b | all | clear - stop following accounts."""
        chat_id = update.effective_chat.id
        self.pending.discard(chat_id)
        if not await self._authorized(update):
            return

        args = " ".join(context.args or [])
        if commands.is_clear_request(args):
            self.pending.request(chat_id)
            await update.message.reply_text(commands.CONFIRM_PROMPT)
            return

        try:
            names, _ = commands.split_names(args)
        except commands.InputError as e:
            await update.message.reply_text(str(e))
            return

        removed = 0
        try:
            for name in names:
                await self._db.remove_subscription(chat_id, name)
                removed += 1
        except StoreError as e:
            logger.error(f"Error removing subscription for chat {chat_id}: {e}")
            await update.message.reply_text(commands.ERROR)
            return
        finally:
            if removed:
                await self._request_reload(ReloadLevel.CURRENT)

        await update.message.reply_text(commands.SUCCESS)

    async def _cmd_clear(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /clear - same as /remove all."""
        chat_id = update.effective_chat.id
        if not await self._authorized(update):
            self.pending.discard(chat_id)
            return
        self.pending.request(chat_id)
        await update.message.reply_text(commands.CONFIRM_PROMPT)

    async def _cmd_confirm(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Handle /confirm - run a pending clear."""
        chat_id = update.effective_chat.id
        if not await self._authorized(update):
            self.pending.discard(chat_id)
            return
        if not self.pending.consume(chat_id):
            await update.message.reply_text(commands.NOTHING_TO_CONFIRM)
            return
        await self._clear(update, chat_id)

    async def _handle_text(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Plain text: "confirm" answers a pending clear, anything else is invalid."""
        if (update.message.text or "").strip().lower() == commands.CONFIRM_WORD:
            await self._cmd_confirm(update, context)
            return
        self.pending.discard(update.effective_chat.id)
        if await self._authorized(update):
            await update.message.reply_text(commands.INVALID)

    async def _cmd_unknown(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        self.pending.discard(update.effective_chat.id)
        if await self._authorized(update):
            await update.message.reply_text(commands.INVALID)

    async def _error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Log errors raised while handling an update."""
        logger.error(
            msg="Exception while handling an update:",
            exc_info=context.error
        )
