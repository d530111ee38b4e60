"""Message document and its closed set of types."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional

from pydantic import Field

from chatsync.schemas.base import DocumentModel


class MessageType(StrEnum):
    TEXT = "text"
    GIF = "gif"
    STICKER = "sticker"
    EMOJI = "emoji"


MEDIA_TYPES = frozenset({MessageType.GIF, MessageType.STICKER})


class Message(DocumentModel):
    """
    A chat message. Immutable once written.

    reply_to_content / reply_to_sender_id are copied from the target at send
    time so replies render without a lookup; they are not kept in sync with
    later profile changes.
    """

    conversation_id: str
    sender_id: str
    content: str
    type: MessageType = MessageType.TEXT
    gif_url: Optional[str] = None
    sticker_name: Optional[str] = None
    reply_to_id: Optional[str] = None
    reply_to_content: Optional[str] = None
    reply_to_sender_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_read: bool = False

    @property
    def is_reply(self) -> bool:
        return self.reply_to_id is not None

    @property
    def summary_text(self) -> str:
        """Preview stored on the conversation as lastMessage."""
        if self.type == MessageType.GIF:
            return "GIF"
        if self.type == MessageType.STICKER:
            return "Sticker"
        return self.content
