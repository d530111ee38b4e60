"""Conversation document: participants plus the denormalized last-message summary."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import Field, field_validator

from chatsync.schemas.base import DocumentModel


def canonical_participants(participant_ids: list[str]) -> list[str]:
    """Sorted, de-duplicated participant list; one canonical form per participant set."""
    return sorted(set(participant_ids))


class Conversation(DocumentModel):
    participants: list[str]
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_message_sender_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    unread_count: dict[str, int] = Field(default_factory=dict)
    typing_users: list[str] = Field(default_factory=list)

    @field_validator("participants")
    @classmethod
    def _canonicalize(cls, value: list[str]) -> list[str]:
        value = canonical_participants(value)
        if len(value) < 2:
            raise ValueError("A conversation needs at least two participants")
        return value

    @property
    def is_group(self) -> bool:
        return len(self.participants) > 2

    def other_participant_id(self, current_user_id: str) -> Optional[str]:
        return next((p for p in self.participants if p != current_user_id), None)

    def unread_count_for(self, user_id: str) -> int:
        return self.unread_count.get(user_id, 0)

    def typing_others(self, current_user_id: str) -> list[str]:
        return [u for u in self.typing_users if u != current_user_id]
