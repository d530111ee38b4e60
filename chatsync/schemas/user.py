"""User profile document."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import Field

from chatsync.schemas.base import DocumentModel


class User(DocumentModel):
    email: str
    display_name: str
    is_admin: bool = False
    invited_by: Optional[str] = None
    can_invite: bool = False
    avatar_url: Optional[str] = Field(default=None, alias="avatarURL")
    avatar_data: Optional[str] = None  # base64 image payload
    is_online: bool = False
    last_seen: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def initials(self) -> str:
        parts = self.display_name.split()
        if len(parts) >= 2:
            return (parts[0][:1] + parts[1][:1]).upper()
        return self.display_name[:2].upper()

    @property
    def may_invite(self) -> bool:
        return self.is_admin or self.can_invite
