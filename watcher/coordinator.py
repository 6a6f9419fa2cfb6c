"""
Reload Coordinator - Debounced stream rebuild state machine.

The coordinator is the only owner of the live stream session. Everything
else (commands, the resolve timer, disconnect recovery) asks for a rebuild
by putting a ``ReloadLevel`` on its queue.

States:
    IDLE: no session, no drop window
    STREAMING: session open, no drop window
    DROPPING: a rebuild happened less than ``drop_window`` seconds ago
    TERMINATING: shutting down (terminal)

Transitions:
    ┌─────────────────────────────────────────────────────────────┐
    │  IDLE/STREAMING + reload(L)                                 │
    │      → close session → build filter → open session          │
    │      → DROPPING (pending = -1, timer restarted)             │
    │  DROPPING + reload(L)    → pending = max(pending, L)        │
    │  DROPPING + tick                                            │
    │      pending >= 0 → rebuild at pending (new window)         │
    │      pending <  0 → STREAMING (session) / IDLE (none)       │
    │  disconnect → close session, reload(0) after stream_pause   │
    │  open failure → fatal, process stop requested               │
    │  stop (any state) → close session → TERMINATING             │
    └─────────────────────────────────────────────────────────────┘

At most one rebuild runs per drop window, however many requests arrive,
and a deferred request is never lost: the tick that ends the window turns
the highest pending level into exactly one rebuild.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from watcher.classifier import classify
from watcher.errors import StreamOpenError
from watcher.models import CoordinatorState, MessageKind, ReloadLevel, StreamMessage

if TYPE_CHECKING:
    from watcher.stream_session import StreamSession, StreamSessionManager

logger = logging.getLogger(__name__)

# Capacity of the reload request queue
RELOAD_QUEUE_SIZE = 64


class ReloadCoordinator:
    """
    Serializes stream rebuilds behind a debounce window.

    Args:
        sessions: Builds filters and opens/closes stream sessions.
        posts: Queue of ``(post, text)`` pairs consumed by the dispatcher.
        stop_event: Process-wide cancellation signal.
        drop_window: Debounce window in seconds.
        stream_pause: Delay before reconnecting after a disconnect.
    """

    def __init__(
        self,
        sessions: "StreamSessionManager",
        posts: asyncio.Queue,
        stop_event: asyncio.Event,
        drop_window: float = 60.0,
        stream_pause: float = 5.0,
        queue_size: int = RELOAD_QUEUE_SIZE,
    ) -> None:
        self.sessions = sessions
        self.posts = posts
        self.stop_event = stop_event
        self.drop_window = drop_window
        self.stream_pause = stream_pause

        self.reloads: asyncio.Queue[int] = asyncio.Queue(maxsize=queue_size)
        self.state = CoordinatorState.IDLE
        self.session: Optional["StreamSession"] = None
        self.dropped = -1
        self.rebuilds = 0
        self.fatal_error: Optional[BaseException] = None

        self._timer: Optional[asyncio.Task] = None
        self._message_waiter: Optional[asyncio.Task] = None
        self._message_session: Optional["StreamSession"] = None
        self._retry_tasks: set[asyncio.Task] = set()

    # =========================================================================
    # Public API
    # =========================================================================

    async def request_reload(self, level: int) -> None:
        """Ask for a stream rebuild at ``level`` (see ``ReloadLevel``)."""
        await self.reloads.put(int(level))

    async def run(self, initial_level: Optional[int] = ReloadLevel.RESOLVE_ALL) -> None:
        """
        Coordinator loop. Returns once the stop event is set.

        Args:
            initial_level: Level of the startup rebuild, or None to start
                idle and wait for the first request.
        """
        logger.info(
            f"Reload coordinator started (drop window {self.drop_window}s, "
            f"reconnect pause {self.stream_pause}s)"
        )
        reload_waiter: Optional[asyncio.Task] = None
        stop_waiter = asyncio.create_task(self.stop_event.wait(), name="coordinator_stop")

        try:
            if initial_level is not None:
                await self._rebuild(int(initial_level))

            while not self.stop_event.is_set():
                if reload_waiter is None:
                    reload_waiter = asyncio.create_task(self.reloads.get(), name="coordinator_reload")
                self._ensure_message_waiter()

                waiters = {stop_waiter, reload_waiter}
                if self._timer is not None:
                    waiters.add(self._timer)
                if self._message_waiter is not None:
                    waiters.add(self._message_waiter)

                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

                if stop_waiter in done:
                    break

                if self._timer is not None and self._timer in done:
                    self._timer = None
                    await self._on_tick()

                if self._message_waiter is not None and self._message_waiter in done:
                    waiter, session = self._message_waiter, self._message_session
                    self._message_waiter = self._message_session = None
                    if session is self.session:
                        await self._on_message(waiter.result())
                    else:
                        logger.debug("Ignoring message from a closed session")

                if reload_waiter in done:
                    level = reload_waiter.result()
                    reload_waiter = None
                    await self._on_reload(level)
        finally:
            self.state = CoordinatorState.TERMINATING
            pending = [stop_waiter, reload_waiter, self._timer, *self._retry_tasks]
            for task in pending:
                if task is not None and not task.done():
                    task.cancel()
            self._timer = None
            await self._close_session()
            logger.info("Reload coordinator stopped")

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _rebuild(self, level: int) -> None:
        """Close the session, rebuild the filter and open a new session."""
        self.rebuilds += 1
        logger.info(f"Rebuilding stream (level {level})")
        await self._close_session()

        spec = await self.sessions.build_filter(level > 0, level > 1)
        if spec is not None:
            try:
                self.session = await self.sessions.open_session(spec)
            except StreamOpenError as e:
                self._fail(e)
                return

        self.dropped = -1
        self.state = CoordinatorState.DROPPING
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.create_task(asyncio.sleep(self.drop_window), name="drop_timer")

    async def _on_reload(self, level: int) -> None:
        if self.state == CoordinatorState.DROPPING:
            self.dropped = max(self.dropped, level)
            logger.debug(
                f"Reload level {level} deferred until the drop window ends "
                f"(pending level {self.dropped})"
            )
            return
        await self._rebuild(level)

    async def _on_tick(self) -> None:
        if self.dropped >= 0:
            await self._rebuild(self.dropped)
            return
        self.state = CoordinatorState.STREAMING if self.session else CoordinatorState.IDLE
        logger.debug(f"Drop window ended, state {self.state.value}")

    async def _on_message(self, message: StreamMessage) -> None:
        kind = message.kind
        if kind is MessageKind.POST:
            text, reason = classify(message.post)
            if reason is None:
                await self.posts.put((message.post, text))
        elif kind is MessageKind.DISCONNECT:
            await self._on_fault(message.detail)
        elif kind is MessageKind.RATE_LIMIT:
            logger.warning(f"Stream rate limit notice: {message.detail}")
        elif kind is MessageKind.NOTICE:
            logger.warning(f"Stream notice: {message.detail}")
        elif kind is MessageKind.UNKNOWN:
            logger.debug(f"Unknown stream message: {message.detail}")
        else:
            raise ValueError(f"Unhandled stream message kind: {kind}")

    async def _on_fault(self, detail: str) -> None:
        session_id = self.session.id if self.session else "-"
        logger.warning(
            f"Stream session {session_id} disconnected ({detail}), "
            f"reconnecting in {self.stream_pause}s"
        )
        await self._close_session()
        if self.state != CoordinatorState.DROPPING:
            self.state = CoordinatorState.IDLE

        task = asyncio.create_task(self._delayed_reload(), name="stream_reconnect")
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _delayed_reload(self) -> None:
        await asyncio.sleep(self.stream_pause)
        await self.request_reload(ReloadLevel.CURRENT)

    def _fail(self, error: BaseException) -> None:
        """Record a fatal error and request process shutdown."""
        logger.error(f"Fatal stream error, shutting down: {error}")
        self.fatal_error = error
        self.stop_event.set()

    # =========================================================================
    # Session helpers
    # =========================================================================

    def _ensure_message_waiter(self) -> None:
        if self.session is None or self._message_waiter is not None:
            return
        self._message_session = self.session
        self._message_waiter = asyncio.create_task(
            self.session.messages.get(), name=f"session_{self.session.id}_messages"
        )

    async def _close_session(self) -> None:
        if self._message_waiter is not None:
            self._message_waiter.cancel()
            self._message_waiter = self._message_session = None
        session, self.session = self.session, None
        await self.sessions.close_session(session)
