"""In-process identity provider for local development and tests."""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from chatsync.adapters.identity.base import AuthSession, IdentityProvider
from chatsync.exceptions import AuthError, AuthReason

TOKEN_LIFETIME = timedelta(hours=1)


@dataclass
class _Account:
    user_id: str
    email: str
    password: str


class InMemoryIdentityProvider(IdentityProvider):
    def __init__(self, minimum_password_length: int = 6) -> None:
        super().__init__()
        self.minimum_password_length = minimum_password_length
        self._accounts: dict[str, _Account] = {}
        self._refresh_tokens: dict[str, str] = {}

    def _issue(self, account: _Account) -> AuthSession:
        refresh_token = secrets.token_urlsafe(24)
        self._refresh_tokens[refresh_token] = account.user_id
        return AuthSession(
            user_id=account.user_id,
            email=account.email,
            id_token=secrets.token_urlsafe(24),
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + TOKEN_LIFETIME,
        )

    async def sign_up(self, email: str, password: str) -> AuthSession:
        key = email.strip().lower()
        if key in self._accounts:
            raise AuthError(AuthReason.EMAIL_IN_USE)
        if len(password) < self.minimum_password_length:
            raise AuthError(AuthReason.WEAK_PASSWORD)
        account = _Account(user_id=uuid.uuid4().hex[:28], email=key, password=password)
        self._accounts[key] = account
        session = self._issue(account)
        self._emit(session)
        return session

    async def sign_in(self, email: str, password: str) -> AuthSession:
        account = self._accounts.get(email.strip().lower())
        if account is None or account.password != password:
            raise AuthError(AuthReason.INVALID_CREDENTIALS)
        session = self._issue(account)
        self._emit(session)
        return session

    async def refresh(self, session: AuthSession) -> AuthSession:
        user_id = self._refresh_tokens.pop(session.refresh_token, None)
        account = next((a for a in self._accounts.values() if a.user_id == user_id), None)
        if account is None:
            raise AuthError(AuthReason.SESSION_EXPIRED)
        return self._issue(account)

    async def delete_account(self, session: AuthSession) -> None:
        for key, account in list(self._accounts.items()):
            if account.user_id == session.user_id:
                del self._accounts[key]

    async def send_password_reset(self, email: str) -> None:
        if email.strip().lower() not in self._accounts:
            raise AuthError(AuthReason.INVALID_CREDENTIALS)

    def has_account(self, email: str) -> bool:
        return email.strip().lower() in self._accounts
