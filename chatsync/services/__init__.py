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

__all__ = [
    "AuthService",
    "ChatStoreService",
    "ConversationSyncService",
    "InvitationService",
    "LoggingNotifier",
    "MessageSyncService",
    "NotificationDispatcher",
    "Notifier",
    "SessionStorage",
]
