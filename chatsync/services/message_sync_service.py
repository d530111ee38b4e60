"""
MessageSyncService: the timeline of one open conversation.

The view is the union of three sources, deduplicated by message id and sorted
by timestamp: pages of older history fetched on demand, the live tail of the
newest messages, and messages sent from this client that the tail has not
echoed back yet. A second subscription on the conversation document tracks
who else is typing.

State moves IDLE -> LISTENING -> (LOADING_OLDER -> LISTENING)* -> STOPPED.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence, Set

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
from chatsync.schemas.conversation import Conversation
from chatsync.schemas.events import ConnectionState, OperationResult, SyncState
from chatsync.schemas.message import MEDIA_TYPES, Message, MessageType
from chatsync.services.chat_store_service import ChatStoreService, decode
from chatsync.utils.debounce import Debouncer
from chatsync.utils.display_hints import DisplayHints, display_hints
from chatsync.utils.text import classify_message_type, trimmed, with_emoji

logger = get_logger("message_sync")


class MessageSyncService:
    def __init__(
        self,
        chat_store: ChatStoreService,
        registry: ListenerRegistry,
        current_user_id: str,
        settings: Optional[Settings] = None,
    ) -> None:
        self.chat_store = chat_store
        self.registry = registry
        self.current_user_id = current_user_id
        self.settings = settings or get_settings()

        self.conversation_id: Optional[str] = None
        self.conversation: Optional[Conversation] = None
        self.state = SyncState.IDLE
        self.connection_state = ConnectionState.IDLE
        self.error_message: Optional[str] = None

        self.older_messages: List[Message] = []
        self.listener_messages: List[Message] = []
        self.pending_messages: Dict[str, Message] = {}
        self.messages: List[Message] = []
        self.has_more_older = True

        self.typing_user_ids: List[str] = []
        self.message_text = ""
        self.reply_to: Optional[Message] = None
        self.is_sending = False

        self._handles: List[ListenerHandle] = []
        self._tasks: List[asyncio.Task] = []
        self._cleanup_tasks: Set[asyncio.Task] = set()
        self._is_typing = False
        self._typing_debounce = Debouncer(self.settings.typing_debounce_seconds, name="typing")
        self._typing_clear = Debouncer(self.settings.typing_auto_clear_seconds, name="typing-clear")

    @property
    def is_loading_older(self) -> bool:
        return self.state == SyncState.LOADING_OLDER

    @property
    def other_user_is_typing(self) -> bool:
        return bool(self.typing_user_ids)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def start_listening(self, conversation_id: str, tail_limit: Optional[int] = None) -> None:
        if (
            self.conversation_id == conversation_id
            and self.state in (SyncState.LISTENING, SyncState.LOADING_OLDER)
            and self.connection_state != ConnectionState.DISCONNECTED
        ):
            logger.debug("Already listening to %s", conversation_id)
            return
        if self.state in (SyncState.LISTENING, SyncState.LOADING_OLDER):
            self._detach()
            previous = self.conversation_id
            if previous is not None and previous != conversation_id:
                self._spawn_typing_clear(previous)

        self._clear_buffers()
        self.conversation_id = conversation_id
        self.state = SyncState.LISTENING
        self.connection_state = ConnectionState.IDLE

        tail = self.chat_store.listen_messages(
            conversation_id, tail_limit or self.settings.message_page_size
        )
        self._attach(ListenerKey.messages(conversation_id), tail, self._apply_tail)
        doc = self.chat_store.listen_conversation(conversation_id)
        self._attach(ListenerKey.typing(conversation_id), doc, self._apply_conversation)
        logger.info("Listening to messages of %s", conversation_id)

    def _attach(self, key: ListenerKey, subscription: Subscription, apply) -> None:
        task = asyncio.get_running_loop().create_task(
            self._consume(subscription, apply), name=f"{key.type}-{key.identifier}"
        )
        self._tasks.append(task)
        self._handles.append(self.registry.register(key, subscription.cancel))

    async def _consume(self, subscription: Subscription, apply) -> None:
        try:
            async for documents in subscription:
                self.connection_state = ConnectionState.LIVE
                apply(documents)
        except SubscriptionError as e:
            logger.warning("Message subscription failed: %s", e)
            self.connection_state = ConnectionState.DISCONNECTED
            self.error_message = e.message
            self._cancel_handles()

    def _apply_tail(self, documents: Sequence[Document]) -> None:
        tail = list(reversed(decode(Message, documents)))
        if tail and self.listener_messages:
            # Messages pushed out of the tail window by newer ones move into history.
            kept = {m.id for m in tail}
            oldest = tail[0].timestamp
            departed = [
                m for m in self.listener_messages if m.id not in kept and m.timestamp <= oldest
            ]
            if departed:
                self.older_messages = self.older_messages + departed
        self.listener_messages = tail
        for message in self.listener_messages:
            self.pending_messages.pop(message.id, None)
        self._merge()

    def _apply_conversation(self, documents: Sequence[Document]) -> None:
        found = decode(Conversation, documents)
        self.conversation = found[0] if found else None
        self.typing_user_ids = (
            self.conversation.typing_others(self.current_user_id) if self.conversation else []
        )

    def _merge(self) -> None:
        merged: Dict[str, Message] = {}
        for message in self.older_messages:
            merged[message.id] = message
        for message in self.listener_messages:
            merged[message.id] = message
        for message_id, message in self.pending_messages.items():
            merged.setdefault(message_id, message)
        self.messages = sorted(merged.values(), key=lambda m: m.timestamp)

    def _cancel_handles(self) -> None:
        for handle in self._handles:
            self.registry.cancel(handle)
        self._handles = []

    def _detach(self) -> None:
        self._cancel_handles()
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []
        self._typing_debounce.cancel()
        self._typing_clear.cancel()

    def _spawn_typing_clear(self, conversation_id: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._write_typing(conversation_id, False, force=True),
            name=f"typing-clear-{conversation_id}",
        )
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    def _clear_buffers(self) -> None:
        self.older_messages = []
        self.listener_messages = []
        self.pending_messages = {}
        self.messages = []
        self.has_more_older = True
        self.typing_user_ids = []
        self.conversation = None

    async def stop_listening(self) -> None:
        """Cancel both subscriptions, clear buffers and our typing flag."""
        if self.state in (SyncState.IDLE, SyncState.STOPPED):
            return
        self._detach()
        conversation_id = self.conversation_id
        self._clear_buffers()
        self.state = SyncState.STOPPED
        self.connection_state = ConnectionState.IDLE
        if conversation_id is not None:
            await self._write_typing(conversation_id, False, force=True)
        logger.info("Stopped listening to %s", conversation_id)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def load_older_messages(self) -> OperationResult[List[Message]]:
        if self.state != SyncState.LISTENING or not self.has_more_older:
            return OperationResult.success([])
        if not self.messages or self.conversation_id is None:
            return OperationResult.success([])

        conversation_id = self.conversation_id
        oldest = self.messages[0].timestamp
        self.state = SyncState.LOADING_OLDER
        try:
            older = await self.chat_store.get_older_messages(
                conversation_id, oldest, self.settings.message_page_size
            )
        except ChatSyncError as e:
            self.error_message = "Failed to load older messages"
            return OperationResult.failure(e)
        finally:
            if self.state == SyncState.LOADING_OLDER:
                self.state = SyncState.LISTENING

        if self.state != SyncState.LISTENING or self.conversation_id != conversation_id:
            return OperationResult.success([])
        if not older:
            self.has_more_older = False
        else:
            self.older_messages = older + self.older_messages
            self._merge()
        return OperationResult.success(older)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def set_reply_to(self, message: Optional[Message]) -> None:
        self.reply_to = message

    async def send_text(
        self, content: Optional[str] = None, reply_to: Optional[Message] = None
    ) -> OperationResult[Message]:
        """Send `content` (default: the current draft). The draft is restored on failure."""
        draft = self.message_text if content is None else content
        text = with_emoji(trimmed(draft))
        if not text:
            return OperationResult.failure(InvalidInputError("Message is empty."))
        limit = self.settings.max_message_length
        if len(text) > limit:
            return self._fail(InvalidInputError(f"Message is too long (max {limit} characters)"))

        reply_to = reply_to or self.reply_to
        message = self._new_message(
            content=text,
            type=classify_message_type(text, self.settings.max_emoji_message_length),
            reply_to_id=reply_to.id if reply_to else None,
            reply_to_content=reply_to.summary_text if reply_to else None,
            reply_to_sender_id=reply_to.sender_id if reply_to else None,
        )
        if message is None:
            return self._fail(NotAuthorizedError("No open conversation."))

        self.message_text = ""
        self.reply_to = None
        result = await self._send(message)
        if not result.ok:
            self.message_text = draft
            self.reply_to = reply_to
            return result
        self._typing_debounce.cancel()
        await self._set_typing(False)
        return result

    async def send_media(self, kind: MessageType, ref: str, caption: str = "") -> OperationResult[Message]:
        if kind not in MEDIA_TYPES:
            return self._fail(InvalidInputError(f"{kind} is not a media message type."))
        if not ref:
            return self._fail(InvalidInputError("Media reference is required."))
        message = self._new_message(
            content=caption or ref,
            type=kind,
            gif_url=ref if kind == MessageType.GIF else None,
            sticker_name=ref if kind == MessageType.STICKER else None,
        )
        if message is None:
            return self._fail(NotAuthorizedError("No open conversation."))
        return await self._send(message)

    async def send_gif(self, url: str, title: str = "") -> OperationResult[Message]:
        return await self.send_media(MessageType.GIF, url, caption=title)

    async def send_sticker(self, name: str) -> OperationResult[Message]:
        return await self.send_media(MessageType.STICKER, name, caption=name)

    def _new_message(self, **fields) -> Optional[Message]:
        if self.conversation_id is None:
            return None
        return Message(
            id=self.chat_store.new_id(),
            conversation_id=self.conversation_id,
            sender_id=self.current_user_id,
            **fields,
        )

    async def _participants(self, conversation_id: str) -> List[str]:
        if self.conversation is not None and self.conversation.id == conversation_id:
            return self.conversation.participants
        conversation = await self.chat_store.get_conversation(conversation_id)
        if conversation is None:
            raise DocumentNotFoundError("This conversation no longer exists.")
        self.conversation = conversation
        return conversation.participants

    async def _send(self, message: Message) -> OperationResult[Message]:
        async def show() -> None:
            self.pending_messages[message.id] = message
            self._merge()

        async def unshow() -> None:
            self.pending_messages.pop(message.id, None)
            self._merge()

        async def write() -> Message:
            return await self.chat_store.create_message(message)

        async def unwrite() -> None:
            await self.chat_store.delete_message(message.conversation_id, message.id)

        async def summarize() -> None:
            participants = await self._participants(message.conversation_id)
            await self.chat_store.update_last_message(message, participants)

        saga = (
            Saga(f"send-{message.id}")
            .step("show", show, unshow)
            .step("write", write, unwrite)
            .step("summarize", summarize)
        )
        self.is_sending = True
        try:
            results = await saga.run()
        except ChatSyncError as e:
            return self._fail(e)
        finally:
            self.is_sending = False
        return OperationResult.success(results["write"])

    def _fail(self, exc: BaseException) -> OperationResult:
        error = as_chat_error(exc)
        self.error_message = error.message
        return OperationResult.failure(error)

    # ------------------------------------------------------------------
    # Typing
    # ------------------------------------------------------------------

    def on_text_changed(self, text: str) -> None:
        """Record the draft; at most one typing write per debounce window."""
        self.message_text = text
        if self.state not in (SyncState.LISTENING, SyncState.LOADING_OLDER):
            return
        is_typing = bool(text.strip())
        self._typing_debounce.schedule(lambda: self._set_typing(is_typing))

    async def _set_typing(self, is_typing: bool) -> None:
        if self.conversation_id is None:
            return
        self._typing_clear.cancel()
        await self._write_typing(self.conversation_id, is_typing)
        if is_typing:
            conversation_id = self.conversation_id
            self._typing_clear.schedule(lambda: self._write_typing(conversation_id, False))

    async def _write_typing(self, conversation_id: str, is_typing: bool, force: bool = False) -> None:
        if not force and is_typing == self._is_typing and not is_typing:
            return
        try:
            await self.chat_store.set_typing_status(conversation_id, self.current_user_id, is_typing)
            self._is_typing = is_typing
        except ChatSyncError as e:
            logger.debug("Typing status write failed: %s", e)

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def is_from_current_user(self, message: Message) -> bool:
        return message.sender_id == self.current_user_id

    def display_hints(self) -> List[DisplayHints]:
        return display_hints(self.messages, self.settings.timestamp_display_threshold_seconds)
