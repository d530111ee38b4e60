"""
Firebase Auth REST identity provider.

Talks to the Identity Toolkit and Secure Token endpoints with requests. Calls
are blocking, so each one runs in a worker thread via asyncio.to_thread; the
(connect, read) timeout pair comes from Settings.http_timeout.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import requests
from pydantic import BaseModel, ValidationError

from chatsync.adapters.identity.base import AuthSession, IdentityProvider
from chatsync.config import Settings, get_settings
from chatsync.exceptions import AuthError, AuthReason, NetworkError
from chatsync.infra.logging_config import get_logger

logger = get_logger("firebase_auth")

SIGN_IN_PATH = "/accounts:signInWithPassword"
SIGN_UP_PATH = "/accounts:signUp"
DELETE_PATH = "/accounts:delete"
OOB_CODE_PATH = "/accounts:sendOobCode"


class _AuthResponse(BaseModel):
    idToken: str
    refreshToken: str
    expiresIn: str
    localId: str
    email: Optional[str] = None


class _RefreshResponse(BaseModel):
    id_token: str
    refresh_token: str
    expires_in: str
    user_id: str


def map_error_message(message: str) -> AuthError:
    """Map an Identity Toolkit error string to a stable AuthError."""
    code = message.split(" ", 1)[0].strip()
    if code == "INVALID_EMAIL":
        return AuthError(AuthReason.INVALID_EMAIL)
    if code in ("EMAIL_NOT_FOUND", "INVALID_PASSWORD", "INVALID_LOGIN_CREDENTIALS"):
        return AuthError(AuthReason.INVALID_CREDENTIALS)
    if code == "EMAIL_EXISTS":
        return AuthError(AuthReason.EMAIL_IN_USE)
    if code == "WEAK_PASSWORD":
        return AuthError(AuthReason.WEAK_PASSWORD)
    if "TOO_MANY_ATTEMPTS" in message:
        return AuthError(AuthReason.TOO_MANY_ATTEMPTS)
    if code in ("TOKEN_EXPIRED", "INVALID_REFRESH_TOKEN", "USER_NOT_FOUND", "INVALID_ID_TOKEN"):
        return AuthError(AuthReason.SESSION_EXPIRED)
    return AuthError(AuthReason.UNKNOWN)


class FirebaseRestIdentityProvider(IdentityProvider):
    """Identity provider backed by the Firebase Auth REST API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        super().__init__()
        self._settings = settings or get_settings()
        if not self._settings.firebase_api_key:
            raise ValueError("FIREBASE_API_KEY is required for the REST identity provider")
        self._api_key = self._settings.firebase_api_key
        self._http = http or requests.Session()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _post(
        self,
        url: str,
        *,
        json: Optional[dict[str, Any]] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        try:
            resp = self._http.post(
                url,
                params={"key": self._api_key},
                json=json,
                data=data,
                timeout=self._settings.http_timeout,
            )
        except requests.Timeout as e:
            raise NetworkError("The request timed out. Please try again.") from e
        except requests.RequestException as e:
            raise NetworkError() from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code != 200:
            message = (body.get("error") or {}).get("message", "") if isinstance(body, dict) else ""
            logger.warning("Identity request to %s failed: HTTP %s %s", url, resp.status_code, message)
            if resp.status_code >= 500:
                raise NetworkError()
            raise map_error_message(message)
        return body

    async def _call(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._settings.identity_base_url.rstrip('/')}{path}"
        return await asyncio.to_thread(self._post, url, json=payload)

    @staticmethod
    def _expiry(expires_in: str) -> datetime:
        try:
            seconds = int(expires_in)
        except ValueError:
            seconds = 3600
        return datetime.now(timezone.utc) + timedelta(seconds=seconds)

    def _session_from(self, body: dict[str, Any]) -> AuthSession:
        try:
            parsed = _AuthResponse.model_validate(body)
        except ValidationError as e:
            raise AuthError(AuthReason.UNKNOWN, f"Invalid auth response: {e}") from e
        return AuthSession(
            user_id=parsed.localId,
            email=parsed.email,
            id_token=parsed.idToken,
            refresh_token=parsed.refreshToken,
            expires_at=self._expiry(parsed.expiresIn),
        )

    # ------------------------------------------------------------------
    # IdentityProvider
    # ------------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> AuthSession:
        body = await self._call(
            SIGN_IN_PATH,
            {"email": email, "password": password, "returnSecureToken": True},
        )
        session = self._session_from(body)
        self._emit(session)
        return session

    async def sign_up(self, email: str, password: str) -> AuthSession:
        body = await self._call(
            SIGN_UP_PATH,
            {"email": email, "password": password, "returnSecureToken": True},
        )
        session = self._session_from(body)
        self._emit(session)
        return session

    async def refresh(self, session: AuthSession) -> AuthSession:
        body = await asyncio.to_thread(
            self._post,
            self._settings.secure_token_url,
            data={"grant_type": "refresh_token", "refresh_token": session.refresh_token},
        )
        try:
            parsed = _RefreshResponse.model_validate(body)
        except ValidationError as e:
            raise AuthError(AuthReason.SESSION_EXPIRED) from e
        return AuthSession(
            user_id=parsed.user_id,
            email=session.email,
            id_token=parsed.id_token,
            refresh_token=parsed.refresh_token,
            expires_at=self._expiry(parsed.expires_in),
            last_login=session.last_login,
        )

    async def delete_account(self, session: AuthSession) -> None:
        await self._call(DELETE_PATH, {"idToken": session.id_token})

    async def send_password_reset(self, email: str) -> None:
        await self._call(OOB_CODE_PATH, {"requestType": "PASSWORD_RESET", "email": email})
