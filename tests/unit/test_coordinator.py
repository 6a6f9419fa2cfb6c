"""
Unit tests for the reload coordinator state machine.

These tests drive the coordinator with FakeSessionManager and short
windows so that the debounce behaviour is observable in well under a
second.
"""

import asyncio

import pytest

from tests.conftest import FakeSessionManager, post_message, wait_until
from watcher.coordinator import ReloadCoordinator
from watcher.errors import StreamOpenError
from watcher.models import CoordinatorState, MessageKind, ReloadLevel, StreamMessage


def make_coordinator(manager, drop_window=0.1, stream_pause=0.05):
    return ReloadCoordinator(
        sessions=manager,
        posts=asyncio.Queue(),
        stop_event=asyncio.Event(),
        drop_window=drop_window,
        stream_pause=stream_pause,
    )


async def stop(coordinator, task):
    coordinator.stop_event.set()
    await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
class TestDebounce:
    async def test_requests_in_one_window_collapse_to_highest_level(self, session_manager):
        coordinator = make_coordinator(session_manager)
        for level in (0, 2, 1, 0):
            await coordinator.request_reload(level)

        task = asyncio.create_task(coordinator.run(initial_level=None))
        await wait_until(
            lambda: len(session_manager.builds) == 2
            and coordinator.state is CoordinatorState.STREAMING
        )
        await stop(coordinator, task)

        # First request rebuilds at once, the rest become one rebuild at level 2
        assert session_manager.builds == [(False, False), (True, True)]
        assert coordinator.rebuilds == 2

    async def test_quiet_window_ends_in_streaming(self, session_manager):
        coordinator = make_coordinator(session_manager)
        task = asyncio.create_task(coordinator.run())

        await wait_until(lambda: coordinator.state is CoordinatorState.STREAMING)
        await stop(coordinator, task)

        assert session_manager.builds == [(True, True)]
        assert coordinator.dropped == -1

    async def test_request_while_dropping_is_deferred(self, session_manager):
        coordinator = make_coordinator(session_manager, drop_window=0.3)
        task = asyncio.create_task(coordinator.run(initial_level=ReloadLevel.CURRENT))
        await wait_until(lambda: coordinator.state is CoordinatorState.DROPPING)

        await coordinator.request_reload(ReloadLevel.RESOLVE_NEW)
        await wait_until(lambda: coordinator.dropped == ReloadLevel.RESOLVE_NEW)
        assert len(session_manager.builds) == 1

        await wait_until(lambda: len(session_manager.builds) == 2)
        await stop(coordinator, task)
        assert session_manager.builds[1] == (True, False)

    async def test_no_accounts_goes_idle(self):
        manager = FakeSessionManager(ids=())
        coordinator = make_coordinator(manager)
        task = asyncio.create_task(coordinator.run())

        await wait_until(lambda: coordinator.state is CoordinatorState.IDLE and manager.builds)
        await stop(coordinator, task)

        assert manager.opened == []
        assert coordinator.session is None


@pytest.mark.asyncio
class TestSessionMessages:
    async def test_posts_forwarded_and_replies_dropped(self, session_manager):
        coordinator = make_coordinator(session_manager)
        task = asyncio.create_task(coordinator.run())
        await wait_until(lambda: coordinator.session is not None)

        session = coordinator.session
        await session.messages.put(post_message(post_id="1", text="@bob thanks"))
        await session.messages.put(post_message(post_id="2", text="big news"))
        await wait_until(lambda: coordinator.posts.qsize() == 1)
        await stop(coordinator, task)

        post, text = coordinator.posts.get_nowait()
        assert post.id == "2"
        assert text == "big news"

    async def test_disconnect_reconnects_after_pause(self, session_manager):
        coordinator = make_coordinator(session_manager, drop_window=0.05, stream_pause=0.05)
        task = asyncio.create_task(coordinator.run())
        await wait_until(lambda: coordinator.state is CoordinatorState.STREAMING)

        first = coordinator.session
        await first.messages.put(StreamMessage(kind=MessageKind.DISCONNECT, detail="end of stream"))
        await wait_until(lambda: len(session_manager.opened) == 2)
        await stop(coordinator, task)

        assert first.closed
        # Reconnect reuses the current ids
        assert session_manager.builds[1] == (False, False)

    async def test_disconnect_while_dropping_waits_for_tick(self, session_manager):
        coordinator = make_coordinator(session_manager, drop_window=0.3, stream_pause=0.02)
        task = asyncio.create_task(coordinator.run())
        await wait_until(lambda: coordinator.session is not None)
        assert coordinator.state is CoordinatorState.DROPPING

        first = coordinator.session
        await first.messages.put(StreamMessage(kind=MessageKind.DISCONNECT, detail="end of stream"))

        # The reconnect request is folded into the open drop window
        await wait_until(lambda: coordinator.dropped == ReloadLevel.CURRENT)
        assert first.closed
        assert coordinator.session is None
        assert coordinator.state is CoordinatorState.DROPPING
        assert len(session_manager.builds) == 1

        await wait_until(lambda: len(session_manager.builds) == 2)
        await asyncio.sleep(0.1)
        await stop(coordinator, task)

        assert session_manager.builds == [(True, True), (False, False)]
        assert len(session_manager.opened) == 2

    async def test_notices_do_not_rebuild(self, session_manager):
        coordinator = make_coordinator(session_manager)
        task = asyncio.create_task(coordinator.run())
        await wait_until(lambda: coordinator.state is CoordinatorState.STREAMING)

        session = coordinator.session
        await session.messages.put(StreamMessage(kind=MessageKind.RATE_LIMIT, detail="slow down"))
        await session.messages.put(StreamMessage(kind=MessageKind.UNKNOWN, detail="?"))
        await wait_until(session.messages.empty)
        await asyncio.sleep(0.05)
        await stop(coordinator, task)

        assert len(session_manager.builds) == 1


@pytest.mark.asyncio
class TestShutdown:
    async def test_open_failure_is_fatal(self):
        manager = FakeSessionManager(fail_open=True)
        coordinator = make_coordinator(manager)

        await asyncio.wait_for(coordinator.run(), timeout=1)

        assert isinstance(coordinator.fatal_error, StreamOpenError)
        assert coordinator.stop_event.is_set()
        assert coordinator.state is CoordinatorState.TERMINATING

    async def test_stop_closes_session(self, session_manager):
        coordinator = make_coordinator(session_manager)
        task = asyncio.create_task(coordinator.run())
        await wait_until(lambda: coordinator.session is not None)

        await stop(coordinator, task)

        assert coordinator.state is CoordinatorState.TERMINATING
        assert coordinator.session is None
        assert all(session.closed for session in session_manager.opened)
        assert coordinator.fatal_error is None
