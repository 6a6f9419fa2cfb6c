"""
Unit tests for the Telegram command handlers.

Handlers are called directly with mocked Update/Context objects; the
store is an AsyncMock and reload requests are recorded in a list.
"""

import pytest

from tests.conftest import make_context, make_update, replied
from watcher import commands
from watcher.errors import StoreError
from watcher.models import ReloadLevel, Subscription
from watcher.telegram_client import TelegramClient


@pytest.fixture
def reloads():
    return []


@pytest.fixture
def client(mock_store, reloads):
    async def record(level):
        reloads.append(level)

    tg = TelegramClient(token="123:abc", allowed=[], blocked=["mallory"])
    tg.set_database(mock_store)
    tg.on_reload(record)
    return tg


@pytest.mark.asyncio
class TestAdd:
    async def test_unresolved_name_requests_resolve(self, client, mock_store, reloads):
        mock_store.add_subscription.return_value = 0
        update = make_update()

        await client._cmd_add(update, make_context("@alice"))

        mock_store.add_subscription.assert_awaited_once_with(555, "alice", None)
        assert reloads == [ReloadLevel.RESOLVE_NEW]
        assert replied(update) == commands.SUCCESS

    async def test_resolved_names_request_current(self, client, mock_store, reloads):
        mock_store.add_subscription.return_value = 1001

        await client._cmd_add(make_update(), make_context("@alice,@bob", "sports"))

        assert mock_store.add_subscription.await_count == 2
        assert mock_store.add_subscription.await_args_list[1].args == (555, "bob", "sports")
        assert reloads == [ReloadLevel.CURRENT]

    async def test_invalid_name_is_reported(self, client, mock_store, reloads):
        update = make_update()

        await client._cmd_add(update, make_context("@alice,bad-name"))

        assert '"bad-name"' in replied(update)
        mock_store.add_subscription.assert_not_awaited()
        assert reloads == []

    async def test_store_error(self, client, mock_store, reloads):
        mock_store.add_subscription.side_effect = StoreError("down")
        update = make_update()

        await client._cmd_add(update, make_context("@alice"))

        assert replied(update) == commands.ERROR
        assert reloads == []

    async def test_partial_add_still_reloads(self, client, mock_store, reloads):
        mock_store.add_subscription.side_effect = [1001, StoreError("down")]
        update = make_update()

        await client._cmd_add(update, make_context("@alice,@bob"))

        assert replied(update) == commands.ERROR
        assert reloads == [ReloadLevel.CURRENT]

    async def test_blocked_user_denied(self, client, mock_store, reloads):
        update = make_update(username="Mallory")

        await client._cmd_add(update, make_context("@alice"))

        assert replied(update) == commands.DENIED
        mock_store.add_subscription.assert_not_awaited()


@pytest.mark.asyncio
class TestRemove:
    async def test_remove_names(self, client, mock_store, reloads):
        update = make_update()

        await client._cmd_remove(update, make_context("@alice"))

        mock_store.remove_subscription.assert_awaited_once_with(555, "alice")
        assert reloads == [ReloadLevel.CURRENT]
        assert replied(update) == commands.SUCCESS

    async def test_remove_all_needs_confirmation(self, client, mock_store, reloads):
        update = make_update()
        await client._cmd_remove(update, make_context("all"))

        assert replied(update) == commands.CONFIRM_PROMPT
        mock_store.remove_all.assert_not_awaited()

        confirm = make_update(text="Confirm")
        await client._handle_text(confirm, make_context())

        mock_store.remove_all.assert_awaited_once_with(555)
        assert reloads == [ReloadLevel.CURRENT]
        assert replied(confirm) == commands.CLEARED

    async def test_confirm_command(self, client, mock_store):
        await client._cmd_clear(make_update(), make_context())
        await client._cmd_confirm(make_update(), make_context())
        mock_store.remove_all.assert_awaited_once_with(555)

    async def test_confirm_without_pending(self, client, mock_store, reloads):
        update = make_update(text="confirm")

        await client._handle_text(update, make_context())

        assert replied(update) == commands.NOTHING_TO_CONFIRM
        mock_store.remove_all.assert_not_awaited()
        assert reloads == []

    async def test_other_command_cancels_pending(self, client, mock_store):
        await client._cmd_remove(make_update(), make_context("clear"))
        await client._cmd_list(make_update(), make_context())

        update = make_update(text="confirm")
        await client._handle_text(update, make_context())

        assert replied(update) == commands.NOTHING_TO_CONFIRM
        mock_store.remove_all.assert_not_awaited()

    async def test_pending_is_per_chat(self, client, mock_store):
        await client._cmd_clear(make_update(chat_id=1), make_context())

        other = make_update(chat_id=2, text="confirm")
        await client._handle_text(other, make_context())

        assert replied(other) == commands.NOTHING_TO_CONFIRM
        assert 1 in client.pending

    async def test_clear_store_error(self, client, mock_store, reloads):
        mock_store.remove_all.side_effect = StoreError("down")
        await client._cmd_clear(make_update(), make_context())

        update = make_update(text="confirm")
        await client._handle_text(update, make_context())

        assert replied(update) == commands.ERROR
        assert reloads == []


@pytest.mark.asyncio
class TestList:
    async def test_list(self, client, mock_store):
        mock_store.list_for_chat.return_value = [Subscription(name="alice", resolved_id=1001)]
        update = make_update()

        await client._cmd_list(update, make_context())

        assert "@alice" in replied(update)

    async def test_list_store_error(self, client, mock_store):
        mock_store.list_for_chat.side_effect = StoreError("down")
        update = make_update()

        await client._cmd_list(update, make_context())

        assert replied(update) == commands.ERROR


@pytest.mark.asyncio
async def test_free_text_is_invalid(client):
    update = make_update(text="hello bot")
    await client._handle_text(update, make_context())
    assert replied(update) == commands.INVALID


@pytest.mark.asyncio
async def test_allow_list_restricts_commands(mock_store):
    tg = TelegramClient(token="123:abc", allowed=["alice"], blocked=[])
    tg.set_database(mock_store)

    update = make_update(username="bob")
    await tg._cmd_list(update, make_context())

    assert replied(update) == commands.DENIED
    mock_store.list_for_chat.assert_not_awaited()
