"""
ConversationSyncService: the signed-in user's conversation list.

One live subscription per user, consumed by a single task on the event loop.
Each snapshot is filtered against the delete tombstones, diffed against the
previous last-message timestamps to find genuinely new messages, and
published. Deletes are optimistic and roll back on failure.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set

from chatsync.adapters.store.base import Document, Subscription
from chatsync.config import Settings, get_settings
from chatsync.core.listener_registry import ListenerHandle, ListenerKey, ListenerRegistry
from chatsync.core.saga import Saga
from chatsync.exceptions import (
    ChatSyncError,
    DocumentNotFoundError,
    InvalidInputError,
    NotAuthorizedError,
    SubscriptionError,
    as_chat_error,
)
from chatsync.infra.logging_config import get_logger
from chatsync.schemas.conversation import Conversation, canonical_participants
from chatsync.schemas.events import ConnectionState, NewMessageEvent, OperationResult
from chatsync.schemas.user import User
from chatsync.services.chat_store_service import ChatStoreService, decode
from chatsync.services.notification_dispatcher import NotificationDispatcher
from chatsync.utils.debounce import Debouncer

logger = get_logger("conversation_sync")

UNKNOWN_DISPLAY_NAME = "Unknown"

NewMessageListener = Callable[[NewMessageEvent], None]


class ConversationSyncService:
    def __init__(
        self,
        chat_store: ChatStoreService,
        registry: ListenerRegistry,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.chat_store = chat_store
        self.registry = registry
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

        self.current_user_id: Optional[str] = None
        self.conversations: List[Conversation] = []
        self.users: Dict[str, User] = {}
        self.all_users: List[User] = []
        self.selected_conversation: Optional[Conversation] = None
        self.app_active = True
        self.connection_state = ConnectionState.IDLE
        self.error_message: Optional[str] = None
        self.is_loading = False

        self.search_query = ""
        self.search_results: List[User] = []
        self.is_searching = False

        self.deleting_ids: Set[str] = set()
        self.last_message_timestamps: Dict[str, datetime] = {}
        self.is_initial_snapshot = True

        self._handle: Optional[ListenerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._user_tasks: Set[asyncio.Task] = set()
        self._search = Debouncer(self.settings.search_debounce_seconds, name="user-search")
        self._listeners: List[NewMessageListener] = []

    # ------------------------------------------------------------------
    # Live subscription
    # ------------------------------------------------------------------

    @property
    def is_listening(self) -> bool:
        return self.registry.is_active(self._handle)

    def start_listening(self, user_id: str) -> None:
        if self.current_user_id == user_id and self.is_listening:
            logger.debug("Conversation listener already active for %s", user_id)
            return
        if self.current_user_id not in (None, user_id):
            self.reset()

        self.current_user_id = user_id
        self.is_initial_snapshot = True
        subscription = self.chat_store.listen_conversations(user_id)
        task = asyncio.get_running_loop().create_task(
            self._consume(subscription), name=f"conversations-{user_id}"
        )
        self._task = task
        self._handle = self.registry.register(
            ListenerKey.conversations(user_id), subscription.cancel
        )
        logger.info("Listening to conversations for %s", user_id)

    def stop_listening(self) -> None:
        self.registry.cancel(self._handle)
        self._handle = None
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None
        for task in list(self._user_tasks):
            task.cancel()
        self._user_tasks.clear()
        if self.dispatcher is not None:
            self.dispatcher.cancel_pending()
        self.last_message_timestamps.clear()
        self.is_initial_snapshot = True
        self.connection_state = ConnectionState.IDLE

    def reset(self) -> None:
        """Drop everything tied to the signed-in user (sign-out)."""
        self.stop_listening()
        self._search.cancel()
        self.current_user_id = None
        self.conversations = []
        self.users = {}
        self.all_users = []
        self.selected_conversation = None
        self.search_query = ""
        self.search_results = []
        self.is_searching = False
        self.deleting_ids.clear()
        self.error_message = None

    async def _consume(self, subscription: Subscription) -> None:
        try:
            async for documents in subscription:
                self.connection_state = ConnectionState.LIVE
                self.apply_snapshot(documents)
        except SubscriptionError as e:
            logger.warning("Conversation subscription failed: %s", e)
            self.connection_state = ConnectionState.DISCONNECTED
            self.error_message = e.message
            self.registry.cancel(self._handle)
            self._handle = None

    def apply_snapshot(self, documents: Sequence[Document]) -> None:
        raw = decode(Conversation, documents)
        present = {c.id for c in raw}
        visible = [c for c in raw if c.id not in self.deleting_ids]
        self.deleting_ids &= present

        previous = dict(self.last_message_timestamps)
        for conversation in visible:
            if conversation.id and conversation.last_message_at is not None:
                self.last_message_timestamps[conversation.id] = conversation.last_message_at

        if not self.is_initial_snapshot:
            self._detect_new_messages(visible, previous)

        self.conversations = visible
        if self.selected_conversation is not None:
            self.selected_conversation = next(
                (c for c in visible if c.id == self.selected_conversation.id),
                self.selected_conversation,
            )
        self._resolve_users_later(visible)
        self.is_initial_snapshot = False
        self._push_badge()

    def is_focused(self, conversation_id: str) -> bool:
        selected = self.selected_conversation
        return self.app_active and selected is not None and selected.id == conversation_id

    def _detect_new_messages(
        self, conversations: Sequence[Conversation], previous: Dict[str, datetime]
    ) -> None:
        for conversation in conversations:
            new_ts = conversation.last_message_at
            sender_id = conversation.last_message_sender_id
            if conversation.id is None or new_ts is None or sender_id is None:
                continue
            if sender_id == self.current_user_id:
                continue
            old_ts = previous.get(conversation.id)
            # Conversations first seen in this snapshot may carry old messages.
            if old_ts is None or new_ts <= old_ts:
                continue
            if self.is_focused(conversation.id):
                logger.debug("Suppressing notification for focused %s", conversation.id)
                continue
            self._emit(
                NewMessageEvent(
                    conversation_id=conversation.id,
                    sender_id=sender_id,
                    preview=conversation.last_message,
                    timestamp=new_ts,
                )
            )

    def on_new_message(self, listener: NewMessageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, event: NewMessageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("New-message listener failed")
        if self.dispatcher is not None:
            self.dispatcher.dispatch(event, self.users)

    @property
    def total_unread(self) -> int:
        if self.current_user_id is None:
            return 0
        return sum(c.unread_count_for(self.current_user_id) for c in self.conversations)

    def _push_badge(self) -> None:
        if self.dispatcher is None:
            return
        task = asyncio.get_running_loop().create_task(
            self.dispatcher.update_badge(self.total_unread)
        )
        self._track(task)

    # ------------------------------------------------------------------
    # Participant profiles
    # ------------------------------------------------------------------

    def _track(self, task: asyncio.Task) -> None:
        self._user_tasks.add(task)
        task.add_done_callback(self._user_tasks.discard)

    def _resolve_users_later(self, conversations: Sequence[Conversation]) -> None:
        missing = self._unknown_participants(conversations)
        if missing:
            self._track(asyncio.get_running_loop().create_task(self.fetch_participant_users(missing)))

    def _unknown_participants(self, conversations: Sequence[Conversation]) -> List[str]:
        ids = {p for c in conversations for p in c.participants}
        return sorted(i for i in ids if i not in self.users)

    async def fetch_participant_users(self, user_ids: Sequence[str]) -> None:
        try:
            found = await self.chat_store.get_users(user_ids)
        except ChatSyncError as e:
            logger.warning("Batch user fetch failed, falling back to single reads: %s", e)
            found = []
            for user_id in user_ids:
                try:
                    user = await self.chat_store.get_user(user_id)
                except ChatSyncError:
                    logger.debug("User %s could not be fetched", user_id)
                    continue
                if user is not None:
                    found.append(user)
        for user in found:
            if user.id:
                self.users[user.id] = user

    def other_user(self, conversation: Conversation) -> Optional[User]:
        if self.current_user_id is None:
            return None
        other_id = conversation.other_participant_id(self.current_user_id)
        return self.users.get(other_id) if other_id else None

    def display_name(self, conversation: Conversation) -> str:
        user = self.other_user(conversation)
        return user.display_name if user is not None else UNKNOWN_DISPLAY_NAME

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _fail(self, exc: BaseException) -> OperationResult:
        error = as_chat_error(exc)
        self.error_message = error.message
        return OperationResult.failure(error)

    async def create_conversation(self, participant_ids: Sequence[str]) -> OperationResult[Conversation]:
        participants = canonical_participants(list(participant_ids))
        if len(participants) < 2:
            return self._fail(InvalidInputError("A conversation needs at least two participants."))
        try:
            conversation = await self.chat_store.create_conversation(participants)
        except ChatSyncError as e:
            return self._fail(e)
        return OperationResult.success(conversation)

    async def start_conversation(self, user: User) -> OperationResult[Conversation]:
        if self.current_user_id is None:
            return self._fail(NotAuthorizedError("Sign in to start a conversation."))
        if not user.id:
            return self._fail(InvalidInputError("Unknown user."))
        self.is_loading = True
        try:
            result = await self.create_conversation([self.current_user_id, user.id])
        finally:
            self.is_loading = False
        if result.ok:
            self.users[user.id] = user
            self.selected_conversation = result.value
            self.search_query = ""
            self.search_results = []
        return result

    async def select_conversation(self, conversation: Conversation) -> OperationResult[None]:
        self.selected_conversation = conversation
        if self.current_user_id is None or conversation.id is None:
            return OperationResult.success()
        return await self.mark_read(conversation.id, self.current_user_id)

    async def open_conversation(self, conversation_id: str) -> OperationResult[Conversation]:
        """Select a conversation by id, fetching it when it is not in the local list."""
        conversation = next((c for c in self.conversations if c.id == conversation_id), None)
        if conversation is None:
            try:
                conversation = await self.chat_store.get_conversation(conversation_id)
            except ChatSyncError as e:
                logger.error("Failed to fetch conversation %s: %s", conversation_id, e)
                return self._fail(e)
            if conversation is None:
                return self._fail(DocumentNotFoundError("Could not open conversation"))
            missing = self._unknown_participants([conversation])
            if missing:
                await self.fetch_participant_users(missing)
        await self.select_conversation(conversation)
        return OperationResult.success(conversation)

    async def mark_read(self, conversation_id: str, user_id: str) -> OperationResult[None]:
        try:
            await self.chat_store.mark_read(conversation_id, user_id)
        except ChatSyncError as e:
            logger.warning("mark_read failed for %s: %s", conversation_id, e)
            return OperationResult.failure(e)
        return OperationResult.success()

    async def delete_conversation(self, conversation: Conversation) -> OperationResult[None]:
        conversation_id = conversation.id
        if not conversation_id:
            return self._fail(InvalidInputError("Conversation has no id."))

        async def hide() -> None:
            self.deleting_ids.add(conversation_id)
            if self.selected_conversation is not None and self.selected_conversation.id == conversation_id:
                self.selected_conversation = None
            self.conversations = [c for c in self.conversations if c.id != conversation_id]

        async def unhide() -> None:
            self.deleting_ids.discard(conversation_id)
            await self.refresh()

        saga = (
            Saga(f"delete-conversation-{conversation_id}")
            .step("hide", hide, unhide)
            .step("cascade_delete", lambda: self.chat_store.delete_conversation(conversation_id))
        )
        try:
            await saga.run()
        except ChatSyncError as e:
            return self._fail(e)
        return OperationResult.success()

    async def refresh(self) -> OperationResult[List[Conversation]]:
        if self.current_user_id is None:
            return OperationResult.success([])
        try:
            fetched = await self.chat_store.get_conversations(self.current_user_id)
        except ChatSyncError as e:
            return self._fail(e)
        self.conversations = [c for c in fetched if c.id not in self.deleting_ids]
        return OperationResult.success(self.conversations)

    async def fetch_all_users(self) -> OperationResult[List[User]]:
        try:
            users = await self.chat_store.get_all_users()
        except ChatSyncError as e:
            return self._fail(ChatSyncError(f"Failed to load users: {e.message}"))
        self.all_users = [u for u in users if u.id != self.current_user_id]
        return OperationResult.success(self.all_users)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_users(self, query: str, excluding_id: Optional[str] = None) -> OperationResult[List[User]]:
        try:
            users = await self.chat_store.search_users(query, excluding_id or self.current_user_id)
        except ChatSyncError as e:
            logger.debug("Search failed: %s", e)
            return OperationResult.failure(e)
        return OperationResult.success(users)

    def set_search_query(self, query: str) -> None:
        """Debounced search; a newer query cancels the pending or running one."""
        self.search_query = query
        if not query.strip():
            self._search.cancel()
            self.search_results = []
            self.is_searching = False
            return
        self._search.schedule(lambda: self._run_search(query))

    async def _run_search(self, query: str) -> None:
        self.is_searching = True
        try:
            result = await self.search_users(query)
        finally:
            if self.search_query == query:
                self.is_searching = False
        if result.ok and self.search_query == query:
            self.search_results = result.value or []
