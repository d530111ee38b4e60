"""
ChatStoreService: typed facade over the remote document store.

Users, conversations, the messages subcollection and typing/read fields. All
reads decode documents into schema models and skip documents that no longer
match the schema instead of failing the whole batch.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Type, TypeVar

from pydantic import ValidationError

from chatsync.adapters.store.base import (
    DOCUMENT_ID,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    Document,
    FieldFilter,
    Increment,
    OrderBy,
    RemoteStore,
    Subscription,
)
from chatsync.config import Settings, get_settings
from chatsync.constants.collections import Collection, messages_path
from chatsync.exceptions import InvalidInputError
from chatsync.infra.logging_config import get_logger
from chatsync.schemas.base import DocumentModel
from chatsync.schemas.conversation import Conversation, canonical_participants
from chatsync.schemas.message import Message
from chatsync.schemas.user import User

logger = get_logger("chat_store")

M = TypeVar("M", bound=DocumentModel)


def decode(model: Type[M], documents: Iterable[Document]) -> List[M]:
    """Decode documents into `model`, dropping the ones that fail validation."""
    decoded: List[M] = []
    for doc in documents:
        try:
            decoded.append(model.from_document(doc))
        except ValidationError as e:
            logger.warning("Skipping malformed %s %s: %s", model.__name__, doc.id, e)
    return decoded


def decode_one(model: Type[M], document: Optional[Document]) -> Optional[M]:
    if document is None:
        return None
    found = decode(model, [document])
    return found[0] if found else None


class ChatStoreService:
    def __init__(self, store: RemoteStore, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    def new_id(self) -> str:
        return self.store.new_id()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[User]:
        return decode_one(User, await self.store.get(Collection.USERS, user_id))

    async def get_users(self, user_ids: Sequence[str]) -> List[User]:
        """Fetch users by id, chunked to the backend's `in` query limit."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        chunk = self.settings.users_in_query_limit
        users: List[User] = []
        for start in range(0, len(ids), chunk):
            batch = ids[start : start + chunk]
            docs = await self.store.query(
                Collection.USERS,
                [FieldFilter(DOCUMENT_ID, "in", batch)],
                limit=len(batch),
            )
            found = decode(User, docs)
            users.extend(found)
            missing = set(batch) - {u.id for u in found}
            for user_id in missing:
                # Documents written without an indexable id still resolve by key.
                user = await self.get_user(user_id)
                if user is not None:
                    users.append(user)
        return users

    async def get_all_users(self, limit: Optional[int] = None) -> List[User]:
        docs = await self.store.query(
            Collection.USERS, limit=limit or self.settings.user_search_limit
        )
        return decode(User, docs)

    async def search_users(self, query: str, excluding_id: Optional[str]) -> List[User]:
        """
        Case-insensitive substring match over display name and email.

        This scans the whole users collection on every call; fine for a small
        invite-only directory, not for a large one.
        """
        needle = query.strip().lower()
        if not needle:
            return []
        users = decode(User, await self.store.query(Collection.USERS))
        matches = [
            u
            for u in users
            if u.id != excluding_id
            and (needle in u.display_name.lower() or needle in u.email.lower())
        ]
        matches.sort(key=lambda u: u.display_name.lower())
        return matches[: self.settings.user_search_limit]

    async def is_first_user(self) -> bool:
        return not await self.store.query(Collection.USERS, limit=1)

    async def create_user(self, user: User) -> None:
        if not user.id:
            raise InvalidInputError("User id is required")
        await self.store.create(Collection.USERS, user.to_document(), doc_id=user.id)

    async def delete_user(self, user_id: str) -> None:
        await self.store.delete(Collection.USERS, user_id)

    async def update_user(self, user_id: str, fields: dict) -> None:
        await self.store.update(Collection.USERS, user_id, fields)

    async def update_display_name(self, user_id: str, display_name: str) -> None:
        await self.update_user(user_id, {"displayName": display_name})

    async def update_user_avatar(self, user_id: str, avatar_data: Optional[str]) -> None:
        await self.update_user(user_id, {"avatarData": avatar_data})

    async def set_online_status(self, user_id: str, is_online: bool) -> None:
        fields: dict = {"isOnline": is_online}
        if not is_online:
            fields["lastSeen"] = SERVER_TIMESTAMP
        await self.update_user(user_id, fields)

    async def set_can_invite(self, user_id: str, can_invite: bool) -> None:
        await self.update_user(user_id, {"canInvite": can_invite})

    def listen_user(self, user_id: str) -> Subscription:
        return self.store.subscribe(Collection.USERS, [FieldFilter(DOCUMENT_ID, "==", user_id)])

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return decode_one(
            Conversation, await self.store.get(Collection.CONVERSATIONS, conversation_id)
        )

    async def find_conversation(self, participant_ids: Sequence[str]) -> Optional[Conversation]:
        participants = canonical_participants(list(participant_ids))
        docs = await self.store.query(
            Collection.CONVERSATIONS,
            [FieldFilter("participants", "==", participants)],
            limit=1,
        )
        found = decode(Conversation, docs)
        return found[0] if found else None

    async def create_conversation(self, participant_ids: Sequence[str]) -> Conversation:
        """Return the conversation for this participant set, creating it if needed.

        Find-then-insert is not atomic; two clients racing can both insert.
        """
        participants = canonical_participants(list(participant_ids))
        existing = await self.find_conversation(participants)
        if existing is not None:
            return existing
        conversation = Conversation(
            participants=participants,
            unread_count={p: 0 for p in participants},
        )
        conversation.id = await self.store.create(
            Collection.CONVERSATIONS, conversation.to_document()
        )
        logger.info("Created conversation %s for %s", conversation.id, participants)
        return conversation

    async def get_conversations(self, user_id: str) -> List[Conversation]:
        docs = await self.store.query(
            Collection.CONVERSATIONS,
            [FieldFilter("participants", "array_contains", user_id)],
            order_by=OrderBy("lastMessageAt", descending=True),
        )
        return decode(Conversation, docs)

    def listen_conversations(self, user_id: str) -> Subscription:
        return self.store.subscribe(
            Collection.CONVERSATIONS,
            [FieldFilter("participants", "array_contains", user_id)],
            order_by=OrderBy("lastMessageAt", descending=True),
        )

    def listen_conversation(self, conversation_id: str) -> Subscription:
        return self.store.subscribe(
            Collection.CONVERSATIONS, [FieldFilter(DOCUMENT_ID, "==", conversation_id)]
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete every message in bounded batches, then the conversation itself."""
        path = messages_path(conversation_id)
        limit = min(self.settings.batch_delete_limit, self.store.max_batch_size)
        while True:
            docs = await self.store.query(path, limit=limit)
            if not docs:
                break
            await self.store.batch_delete(path, [d.id for d in docs])
            if len(docs) < limit:
                break
        await self.store.delete(Collection.CONVERSATIONS, conversation_id)
        logger.info("Deleted conversation %s", conversation_id)

    async def update_last_message(self, message: Message, participants: Sequence[str]) -> None:
        fields: dict = {
            "lastMessage": message.summary_text,
            "lastMessageAt": SERVER_TIMESTAMP,
            "lastMessageSenderId": message.sender_id,
        }
        for participant in participants:
            if participant != message.sender_id:
                fields[f"unreadCount.{participant}"] = Increment(1)
        await self.store.update(Collection.CONVERSATIONS, message.conversation_id, fields)

    async def set_typing_status(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        transform = ArrayUnion(user_id) if is_typing else ArrayRemove(user_id)
        await self.store.update(Collection.CONVERSATIONS, conversation_id, {"typingUsers": transform})

    async def mark_read(self, conversation_id: str, user_id: str) -> None:
        await self.store.update(
            Collection.CONVERSATIONS, conversation_id, {f"unreadCount.{user_id}": 0}
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def create_message(self, message: Message) -> Message:
        """Write the message document under its client-generated id."""
        message_id = message.id or self.new_id()
        await self.store.create(
            messages_path(message.conversation_id), message.to_document(), doc_id=message_id
        )
        return message.model_copy(update={"id": message_id})

    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        await self.store.delete(messages_path(conversation_id), message_id)

    async def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        docs = await self.store.query(
            messages_path(conversation_id),
            order_by=OrderBy("timestamp", descending=True),
            limit=limit or self.settings.message_page_size,
        )
        return list(reversed(decode(Message, docs)))

    async def get_older_messages(
        self, conversation_id: str, before: datetime, limit: Optional[int] = None
    ) -> List[Message]:
        """Page of messages strictly older than `before`, ascending."""
        docs = await self.store.query(
            messages_path(conversation_id),
            [FieldFilter("timestamp", "<", before)],
            order_by=OrderBy("timestamp", descending=True),
            limit=limit or self.settings.message_page_size,
        )
        return list(reversed(decode(Message, docs)))

    def listen_messages(self, conversation_id: str, limit: Optional[int] = None) -> Subscription:
        """Live tail: the newest `limit` messages, delivered newest first."""
        return self.store.subscribe(
            messages_path(conversation_id),
            order_by=OrderBy("timestamp", descending=True),
            limit=limit or self.settings.message_page_size,
        )
