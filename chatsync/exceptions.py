"""
Typed errors surfaced by the sync engines.

Every error carries a kind (what the UI can do about it) and a human-readable
message. Raw backend codes never reach the user; adapters map them here.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Optional


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    INTERNAL = "internal"


class ChatSyncError(Exception):
    """Base error. `retryable` tells the UI whether to offer a retry."""

    kind: ErrorKind = ErrorKind.INTERNAL
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


class InvalidInputError(ChatSyncError):
    kind = ErrorKind.VALIDATION
    default_message = "Invalid input."


class NotAuthorizedError(ChatSyncError):
    kind = ErrorKind.AUTHORIZATION
    default_message = "You are not authorized to perform this action."


class DocumentNotFoundError(ChatSyncError):
    kind = ErrorKind.NOT_FOUND
    default_message = "The requested item no longer exists."


class RemoteStoreError(ChatSyncError):
    kind = ErrorKind.TRANSIENT
    default_message = "Could not reach the server. Please try again."


class NetworkError(RemoteStoreError):
    default_message = "Network error. Please check your connection."


class SubscriptionError(RemoteStoreError):
    default_message = "Live updates were interrupted."


class TransactionConflictError(RemoteStoreError):
    default_message = "The item changed while saving. Please try again."


class InvitationReason(StrEnum):
    INVALID = "invalid"
    USED = "used"
    EXPIRED = "expired"
    CREATION_FAILED = "creation_failed"


_INVITATION_MESSAGES = {
    InvitationReason.INVALID: "Invalid invitation code.",
    InvitationReason.USED: "This invitation code has already been used.",
    InvitationReason.EXPIRED: "This invitation code has expired.",
    InvitationReason.CREATION_FAILED: "Failed to create invitation.",
}


class InvitationError(ChatSyncError):
    """Conflict around an invitation code; `reason` tells the UI why."""

    kind = ErrorKind.CONFLICT

    def __init__(self, reason: InvitationReason, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(message or _INVITATION_MESSAGES[reason])


class AuthReason(StrEnum):
    INVALID_EMAIL = "invalid_email"
    WEAK_PASSWORD = "weak_password"
    MISSING_DISPLAY_NAME = "missing_display_name"
    EMAIL_IN_USE = "email_in_use"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    SESSION_EXPIRED = "session_expired"
    INVALID_INVITATION = "invalid_invitation"
    UNKNOWN = "unknown"


_AUTH_MESSAGES = {
    AuthReason.INVALID_EMAIL: "Please enter a valid email address.",
    AuthReason.WEAK_PASSWORD: "Password must be at least 6 characters.",
    AuthReason.MISSING_DISPLAY_NAME: "Please enter a display name.",
    AuthReason.EMAIL_IN_USE: "This email is already registered.",
    AuthReason.INVALID_CREDENTIALS: "Invalid email or password.",
    AuthReason.TOO_MANY_ATTEMPTS: "Too many failed attempts. Please try again later.",
    AuthReason.SESSION_EXPIRED: "Your session has expired. Please sign in again.",
    AuthReason.INVALID_INVITATION: "An invitation code is required to register.",
    AuthReason.UNKNOWN: "Authentication failed.",
}

_AUTH_KINDS = {
    AuthReason.INVALID_EMAIL: ErrorKind.VALIDATION,
    AuthReason.WEAK_PASSWORD: ErrorKind.VALIDATION,
    AuthReason.MISSING_DISPLAY_NAME: ErrorKind.VALIDATION,
    AuthReason.EMAIL_IN_USE: ErrorKind.CONFLICT,
    AuthReason.INVALID_CREDENTIALS: ErrorKind.AUTHORIZATION,
    AuthReason.TOO_MANY_ATTEMPTS: ErrorKind.TRANSIENT,
    AuthReason.SESSION_EXPIRED: ErrorKind.AUTHORIZATION,
    AuthReason.INVALID_INVITATION: ErrorKind.CONFLICT,
    AuthReason.UNKNOWN: ErrorKind.INTERNAL,
}


class AuthError(ChatSyncError):
    """Identity provider failure mapped to a stable reason."""

    def __init__(self, reason: AuthReason, message: Optional[str] = None) -> None:
        self.reason = reason
        self.kind = _AUTH_KINDS[reason]
        super().__init__(message or _AUTH_MESSAGES[reason])


def as_chat_error(exc: BaseException) -> ChatSyncError:
    """Wrap anything that is not already typed so the UI always gets a message."""
    if isinstance(exc, ChatSyncError):
        return exc
    if isinstance(exc, TimeoutError):
        return NetworkError("The request timed out. Please try again.")
    return ChatSyncError(str(exc) or None)
