"""Invitation document: single-use registration code."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Optional

from pydantic import Field

from chatsync.schemas.base import DocumentModel

# No 0/O or 1/I, so codes survive being read aloud or copied by hand.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_code(length: int = 6) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


class Invitation(DocumentModel):
    code: str
    created_by: str
    used_by: Optional[str] = None
    is_used: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) > self.expires_at

    @property
    def is_valid(self) -> bool:
        return not self.is_used and not self.is_expired
