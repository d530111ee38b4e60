"""Tests for ConversationSyncService: snapshots, new-message detection, deletes, search."""

import asyncio
from unittest.mock import patch

import pytest

from chatsync.constants.collections import Collection
from chatsync.core.listener_registry import ListenerKey
from chatsync.exceptions import RemoteStoreError
from chatsync.schemas.events import ConnectionState
from tests.fixtures.chat_fixtures import make_user, send_as
from tests.fixtures.store_fixtures import drain


async def _seeded(chat_store, faker):
    """Two users and a conversation that already has one message from the other user."""
    me = await make_user(chat_store, faker)
    other = await make_user(chat_store, faker, display_name="Olivia Other")
    conversation = await chat_store.create_conversation([me.id, other.id])
    await send_as(chat_store, conversation, other.id, "earlier")
    return me, other, conversation


@pytest.mark.asyncio
async def test_initial_snapshot_loads_without_notifying(conversation_service, chat_store, notifier, faker):
    me, other, conversation = await _seeded(chat_store, faker)
    events = []
    conversation_service.on_new_message(events.append)

    conversation_service.start_listening(me.id)
    await drain()

    assert [c.id for c in conversation_service.conversations] == [conversation.id]
    assert conversation_service.connection_state == ConnectionState.LIVE
    assert not conversation_service.is_initial_snapshot
    assert conversation_service.display_name(conversation) == "Olivia Other"
    assert events == []
    assert notifier.delivered == []


@pytest.mark.asyncio
async def test_new_message_from_other_user_notifies(conversation_service, chat_store, notifier, faker):
    me, other, conversation = await _seeded(chat_store, faker)
    events = []
    conversation_service.on_new_message(events.append)
    conversation_service.start_listening(me.id)
    await drain()

    await send_as(chat_store, conversation, other.id, "are you there?")
    await drain()

    [event] = events
    assert event.conversation_id == conversation.id
    assert event.sender_id == other.id
    assert event.preview == "are you there?"
    [shown] = notifier.delivered
    assert shown.title == "Olivia Other"
    assert shown.body == "are you there?"


@pytest.mark.asyncio
async def test_own_message_does_not_notify(conversation_service, chat_store, faker):
    me, other, conversation = await _seeded(chat_store, faker)
    events = []
    conversation_service.on_new_message(events.append)
    conversation_service.start_listening(me.id)
    await drain()

    await send_as(chat_store, conversation, me.id, "my own words")
    await drain()

    assert events == []


@pytest.mark.asyncio
async def test_first_message_of_a_new_conversation_is_not_reported(conversation_service, chat_store, faker):
    me = await make_user(chat_store, faker)
    other = await make_user(chat_store, faker)
    conversation_service.start_listening(me.id)
    await drain()
    events = []
    conversation_service.on_new_message(events.append)

    conversation = await chat_store.create_conversation([me.id, other.id])
    await drain()
    await send_as(chat_store, conversation, other.id, "hi")
    await drain()

    assert events == []
    assert conversation_service.last_message_timestamps[conversation.id] is not None


@pytest.mark.asyncio
async def test_focused_conversation_is_suppressed_until_app_inactive(
    conversation_service, chat_store, notifier, faker
):
    me, other, conversation = await _seeded(chat_store, faker)
    conversation_service.start_listening(me.id)
    await drain()
    await conversation_service.select_conversation(conversation)
    await drain()

    await send_as(chat_store, conversation, other.id, "while focused")
    await drain()
    assert notifier.delivered == []

    conversation_service.app_active = False
    await send_as(chat_store, conversation, other.id, "while away")
    await drain()
    assert [n.body for n in notifier.delivered] == ["while away"]


@pytest.mark.asyncio
async def test_start_listening_twice_keeps_one_subscription(conversation_service, memory_store, registry, faker, chat_store):
    me = await make_user(chat_store, faker)

    conversation_service.start_listening(me.id)
    conversation_service.start_listening(me.id)
    await drain()

    assert memory_store.active_subscription_count(Collection.CONVERSATIONS) == 1
    assert registry.has_listener(ListenerKey.conversations(me.id))


@pytest.mark.asyncio
async def test_stop_listening_cancels_subscription_and_notifications(
    conversation_service, memory_store, registry, dispatcher, chat_store, faker
):
    me, other, conversation = await _seeded(chat_store, faker)
    conversation_service.start_listening(me.id)
    await drain()

    with patch.object(dispatcher, "cancel_pending", wraps=dispatcher.cancel_pending) as spy:
        conversation_service.stop_listening()
    await drain()

    spy.assert_called_once()
    assert not conversation_service.is_listening
    assert registry.active_count == 0
    assert memory_store.active_subscription_count(Collection.CONVERSATIONS) == 0
    assert conversation_service.connection_state == ConnectionState.IDLE
    assert conversation_service.last_message_timestamps == {}


@pytest.mark.asyncio
async def test_subscription_failure_disconnects_and_restart_recovers(
    conversation_service, memory_store, chat_store, faker
):
    me, other, conversation = await _seeded(chat_store, faker)
    conversation_service.start_listening(me.id)
    await drain()

    memory_store.fail_subscriptions(Collection.CONVERSATIONS, RuntimeError("permission denied"))
    await drain()

    assert conversation_service.connection_state == ConnectionState.DISCONNECTED
    assert conversation_service.error_message
    assert not conversation_service.is_listening
    assert memory_store.active_subscription_count(Collection.CONVERSATIONS) == 0

    conversation_service.start_listening(me.id)
    await drain()

    assert conversation_service.connection_state == ConnectionState.LIVE
    assert [c.id for c in conversation_service.conversations] == [conversation.id]


@pytest.mark.asyncio
async def test_deleting_conversation_stays_hidden_while_delete_is_in_flight(
    conversation_service, chat_store, faker
):
    me, other, conversation = await _seeded(chat_store, faker)
    conversation_service.start_listening(me.id)
    await drain()

    gate = asyncio.Event()
    original = chat_store.delete_conversation

    async def slow_delete(conversation_id):
        await gate.wait()
        await original(conversation_id)

    with patch.object(chat_store, "delete_conversation", side_effect=slow_delete):
        pending = asyncio.create_task(conversation_service.delete_conversation(conversation))
        await drain()
        assert conversation_service.conversations == []

        # A snapshot that still contains the conversation must not resurrect it.
        await send_as(chat_store, conversation, other.id, "late message")
        await drain()
        assert conversation_service.conversations == []
        assert conversation.id in conversation_service.deleting_ids

        gate.set()
        result = await pending
    await drain()

    assert result.ok
    assert conversation_service.conversations == []
    assert conversation_service.deleting_ids == set()
    assert await chat_store.get_conversation(conversation.id) is None


@pytest.mark.asyncio
async def test_failed_delete_restores_conversation(conversation_service, chat_store, faker):
    me, other, conversation = await _seeded(chat_store, faker)
    conversation_service.start_listening(me.id)
    await drain()
    await conversation_service.select_conversation(conversation)

    with patch.object(chat_store, "delete_conversation", side_effect=RemoteStoreError()):
        result = await conversation_service.delete_conversation(conversation)
    await drain()

    assert not result.ok
    assert result.error.retryable
    assert conversation_service.error_message == result.error.message
    assert [c.id for c in conversation_service.conversations] == [conversation.id]
    assert conversation_service.deleting_ids == set()
    assert conversation_service.selected_conversation is None


@pytest.mark.asyncio
async def test_badge_reflects_total_unread(conversation_service, chat_store, notifier, faker):
    me, other, conversation = await _seeded(chat_store, faker)
    await send_as(chat_store, conversation, other.id, "second")

    conversation_service.start_listening(me.id)
    await drain()

    assert conversation_service.total_unread == 2
    assert notifier.badge == 2

    await conversation_service.select_conversation(conversation)
    await drain()
    assert conversation_service.total_unread == 0
    assert notifier.badge == 0


@pytest.mark.asyncio
async def test_open_conversation_fetches_when_not_in_list(conversation_service, chat_store, faker):
    me, other, conversation = await _seeded(chat_store, faker)
    conversation_service.current_user_id = me.id

    result = await conversation_service.open_conversation(conversation.id)

    assert result.ok
    assert conversation_service.selected_conversation.id == conversation.id
    assert other.id in conversation_service.users
    assert (await chat_store.get_conversation(conversation.id)).unread_count_for(me.id) == 0

    missing = await conversation_service.open_conversation("does-not-exist")
    assert not missing.ok
    assert missing.error.message == "Could not open conversation"


@pytest.mark.asyncio
async def test_start_conversation_selects_and_clears_search(conversation_service, chat_store, faker):
    me = await make_user(chat_store, faker)
    other = await make_user(chat_store, faker)
    conversation_service.current_user_id = me.id
    conversation_service.search_query = "someone"

    result = await conversation_service.start_conversation(other)

    assert result.ok
    assert conversation_service.selected_conversation.participants == sorted([me.id, other.id])
    assert conversation_service.search_query == ""
    assert conversation_service.users[other.id] == other

    again = await conversation_service.start_conversation(other)
    assert again.value.id == result.value.id


@pytest.mark.asyncio
async def test_create_conversation_needs_two_participants(conversation_service):
    result = await conversation_service.create_conversation(["solo", "solo"])
    assert not result.ok


@pytest.mark.asyncio
async def test_search_is_debounced_to_last_query(conversation_service, chat_store, faker):
    me = await make_user(chat_store, faker, display_name="Me", email="me@example.com")
    alice = await make_user(chat_store, faker, display_name="Alice", email="alice@example.com")
    await make_user(chat_store, faker, display_name="Albert", email="albert@example.com")
    conversation_service.current_user_id = me.id

    with patch.object(chat_store, "search_users", wraps=chat_store.search_users) as spy:
        for query in ("a", "al", "ali"):
            conversation_service.set_search_query(query)
            await asyncio.sleep(0)
        await asyncio.sleep(0.05)

    spy.assert_awaited_once_with("ali", me.id)
    assert [u.id for u in conversation_service.search_results] == [alice.id]
    assert not conversation_service.is_searching

    conversation_service.set_search_query("  ")
    assert conversation_service.search_results == []


@pytest.mark.asyncio
async def test_fetch_all_users_excludes_current_user(conversation_service, chat_store, faker):
    me = await make_user(chat_store, faker)
    other = await make_user(chat_store, faker)
    conversation_service.current_user_id = me.id

    result = await conversation_service.fetch_all_users()

    assert [u.id for u in result.value] == [other.id]


@pytest.mark.asyncio
async def test_reset_clears_user_state(conversation_service, chat_store, faker):
    me, other, conversation = await _seeded(chat_store, faker)
    conversation_service.start_listening(me.id)
    await drain()

    conversation_service.reset()

    assert conversation_service.current_user_id is None
    assert conversation_service.conversations == []
    assert conversation_service.users == {}
    assert conversation_service.total_unread == 0
