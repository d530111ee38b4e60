"""ChatRuntime: builds the collaborators and routes auth and notification events between them."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set

from chatsync.adapters.identity.base import IdentityProvider
from chatsync.adapters.identity.firebase_rest import FirebaseRestIdentityProvider
from chatsync.adapters.identity.memory import InMemoryIdentityProvider
from chatsync.adapters.store.base import RemoteStore
from chatsync.adapters.store.firestore_rest import FirestoreRestStore
from chatsync.adapters.store.memory import InMemoryRemoteStore
from chatsync.config import Settings, get_settings
from chatsync.core.listener_registry import ListenerRegistry
from chatsync.infra.logging_config import LoggingConfig, get_logger
from chatsync.services.auth_service import AuthService
from chatsync.services.chat_store_service import ChatStoreService
from chatsync.services.conversation_sync_service import ConversationSyncService
from chatsync.services.invitation_service import InvitationService
from chatsync.services.message_sync_service import MessageSyncService
from chatsync.services.notification_dispatcher import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
)
from chatsync.services.session_storage import SessionStorage

logger = get_logger("runtime")


class ChatRuntime:
    def __init__(
        self,
        store: RemoteStore,
        identity: IdentityProvider,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        storage: Optional[SessionStorage] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.identity = identity
        self.registry = ListenerRegistry()
        self.chat_store = ChatStoreService(store, self.settings)
        self.dispatcher = NotificationDispatcher(
            notifier or LoggingNotifier(),
            user_lookup=self.chat_store.get_user,
            settings=self.settings,
        )
        self.conversations = ConversationSyncService(
            self.chat_store, self.registry, self.dispatcher, self.settings
        )
        self.invitations = InvitationService(store, self.registry, self.chat_store, self.settings)
        self.auth = AuthService(
            identity, self.chat_store, self.invitations, self.registry, storage, self.settings
        )
        self.chats: Dict[str, MessageSyncService] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.auth.on_auth_state_change(self._on_auth_state)
        self.dispatcher.on_activation(self._on_activation)

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, notifier: Optional[Notifier] = None
    ) -> "ChatRuntime":
        """
        Default wiring: Firebase REST identity when an API key is configured and
        the Firestore REST store when a project id is, otherwise in-memory.
        """
        settings = settings or get_settings()
        LoggingConfig(settings.log_level)
        if settings.firebase_api_key:
            identity: IdentityProvider = FirebaseRestIdentityProvider(settings)
        else:
            identity = InMemoryIdentityProvider(settings.minimum_password_length)
        store: RemoteStore
        if settings.firebase_project_id:
            store = FirestoreRestStore(settings)
        else:
            store = InMemoryRemoteStore(max_batch_size=settings.batch_delete_limit)
        runtime = cls(store, identity, notifier, settings)
        if isinstance(store, FirestoreRestStore):
            store.token_provider = runtime.auth.get_id_token
        return runtime

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Auth state
    # ------------------------------------------------------------------

    def _on_auth_state(self, user_id: Optional[str]) -> None:
        if user_id is None:
            logger.info("Signed out; stopping sync")
            for chat in list(self.chats.values()):
                self._spawn(chat.stop_listening())
            self.chats.clear()
            self.conversations.reset()
            self.dispatcher.cancel_pending()
            return
        logger.info("Signed in as %s; starting sync", user_id)
        self.conversations.start_listening(user_id)
        self._spawn(self.conversations.fetch_all_users())
        if self.dispatcher.pending_conversation_id:
            self._spawn(self.route_pending_target())

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    def open_chat(self, conversation_id: str) -> MessageSyncService:
        chat = self.chats.get(conversation_id)
        if chat is None:
            if self.auth.current_user_id is None:
                raise RuntimeError("Cannot open a chat while signed out")
            chat = MessageSyncService(
                self.chat_store, self.registry, self.auth.current_user_id, self.settings
            )
            self.chats[conversation_id] = chat
        chat.start_listening(conversation_id)
        return chat

    async def close_chat(self, conversation_id: str) -> None:
        chat = self.chats.pop(conversation_id, None)
        if chat is not None:
            await chat.stop_listening()

    # ------------------------------------------------------------------
    # Notification activation
    # ------------------------------------------------------------------

    def _on_activation(self, conversation_id: str) -> None:
        if self.auth.current_user_id is not None:
            self._spawn(self.route_pending_target())

    async def route_pending_target(self) -> Optional[MessageSyncService]:
        """Open the conversation a notification pointed at, if any is pending."""
        if self.auth.current_user_id is None:
            return None
        target = self.dispatcher.take_pending_target()
        if target is None:
            return None
        result = await self.conversations.open_conversation(target)
        if not result.ok:
            logger.warning("Could not open %s from notification: %s", target, result.error)
            return None
        return self.open_chat(target)

    async def shutdown(self) -> None:
        for conversation_id in list(self.chats):
            await self.close_chat(conversation_id)
        self.conversations.reset()
        self.dispatcher.cancel_pending()
        self.registry.cancel_all()
        for task in list(self._tasks):
            task.cancel()
