from chatsync.schemas.conversation import Conversation
from chatsync.schemas.events import (
    ConnectionState,
    NewMessageEvent,
    Notification,
    OperationResult,
    SyncState,
)
from chatsync.schemas.invitation import Invitation
from chatsync.schemas.message import Message, MessageType
from chatsync.schemas.user import User

__all__ = [
    "ConnectionState",
    "Conversation",
    "Invitation",
    "Message",
    "MessageType",
    "NewMessageEvent",
    "Notification",
    "OperationResult",
    "SyncState",
    "User",
]
