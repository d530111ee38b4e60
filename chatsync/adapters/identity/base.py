"""
Identity provider interface.

Providers authenticate a principal and hand back an AuthSession carrying the
stable user id and tokens. Sign-in and sign-out are broadcast to listeners
registered with on_auth_state_change().
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from chatsync.infra.logging_config import get_logger

logger = get_logger("identity")

# Tokens are refreshed slightly before they actually expire.
EXPIRY_SKEW = timedelta(seconds=60)


class AuthSession(BaseModel):
    """Tokens and identity for a signed-in principal."""

    user_id: str
    email: Optional[str] = None
    id_token: str
    refresh_token: str
    expires_at: datetime
    last_login: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at - EXPIRY_SKEW


AuthStateListener = Callable[[Optional[AuthSession]], None]


class IdentityProvider(ABC):
    """Contract for identity backends. Errors are raised as chatsync AuthError."""

    def __init__(self) -> None:
        self._listeners: List[AuthStateListener] = []

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> AuthSession: ...

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> AuthSession: ...

    @abstractmethod
    async def refresh(self, session: AuthSession) -> AuthSession: ...

    @abstractmethod
    async def delete_account(self, session: AuthSession) -> None:
        """Remove the account behind `session`. Used to undo a failed registration."""
        ...

    @abstractmethod
    async def send_password_reset(self, email: str) -> None: ...

    async def sign_out(self) -> None:
        self._emit(None)

    def on_auth_state_change(self, listener: AuthStateListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, session: Optional[AuthSession]) -> None:
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Auth state listener failed")
