"""Remote collection names and listener key types."""

from enum import StrEnum


class Collection(StrEnum):
    """Top-level collections in the document store."""

    USERS = "users"
    CONVERSATIONS = "conversations"
    INVITATIONS = "invitations"


MESSAGES_SUBCOLLECTION = "messages"


def messages_path(conversation_id: str) -> str:
    """Collection path of the messages subcollection for one conversation."""
    return f"{Collection.CONVERSATIONS}/{conversation_id}/{MESSAGES_SUBCOLLECTION}"


class ListenerType(StrEnum):
    """Kinds of live subscriptions tracked by the listener registry."""

    CONVERSATIONS = "conversations"
    MESSAGES = "messages"
    TYPING = "typing"
    USER = "user"
    INVITATIONS = "invitations"
