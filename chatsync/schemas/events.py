"""Events and results passed between the engines and the UI layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Generic, Optional, TypeVar

from chatsync.exceptions import ChatSyncError

T = TypeVar("T")


class ConnectionState(StrEnum):
    IDLE = "idle"
    LIVE = "live"
    DISCONNECTED = "disconnected"


class SyncState(StrEnum):
    IDLE = "idle"
    LISTENING = "listening"
    LOADING_OLDER = "loading_older"
    STOPPED = "stopped"


@dataclass(frozen=True)
class NewMessageEvent:
    """A conversation's last message moved forward and was sent by someone else."""

    conversation_id: str
    sender_id: str
    preview: Optional[str]
    timestamp: datetime


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    conversation_id: Optional[str] = None
    sound: bool = True


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a user-initiated operation: a value or a typed error."""

    value: Optional[T] = None
    error: Optional[ChatSyncError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ChatSyncError) -> "OperationResult[T]":
        return cls(error=error)
