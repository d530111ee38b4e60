from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from chatsync.constants.collections import ListenerType
from chatsync.infra.logging_config import get_logger

logger = get_logger("listener_registry")

CancelFn = Callable[[], None]


@dataclass(frozen=True)
class ListenerKey:
    type: ListenerType
    identifier: str

    @classmethod
    def conversations(cls, user_id: str) -> "ListenerKey":
        return cls(ListenerType.CONVERSATIONS, user_id)

    @classmethod
    def messages(cls, conversation_id: str) -> "ListenerKey":
        return cls(ListenerType.MESSAGES, conversation_id)

    @classmethod
    def typing(cls, conversation_id: str) -> "ListenerKey":
        return cls(ListenerType.TYPING, conversation_id)

    @classmethod
    def user(cls, user_id: str) -> "ListenerKey":
        return cls(ListenerType.USER, user_id)

    @classmethod
    def invitations(cls, user_id: str) -> "ListenerKey":
        return cls(ListenerType.INVITATIONS, user_id)


@dataclass(frozen=True)
class ListenerHandle:
    key: ListenerKey
    token: str = field(default_factory=lambda: uuid.uuid4().hex)


class ListenerRegistry:
    """
    Owns every live subscription by key.

    One subscription per key: registering a key that is already active cancels
    the previous subscription. The map is the only state touched from callback
    threads, so it sits behind a single lock; cancel functions run after the
    lock is released, and each runs exactly once because only the caller that
    removes the entry gets to call it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[ListenerKey, tuple[ListenerHandle, CancelFn]] = {}

    def register(self, key: ListenerKey, cancel_fn: CancelFn) -> ListenerHandle:
        handle = ListenerHandle(key=key)
        with self._lock:
            previous = self._listeners.get(key)
            self._listeners[key] = (handle, cancel_fn)
        if previous is not None:
            logger.debug("Replacing active listener for %s", key)
            self._run(previous)
        return handle

    def cancel(self, handle: Optional[ListenerHandle]) -> bool:
        """Cancel the subscription behind `handle`. Unknown or stale handles are a no-op."""
        if handle is None:
            return False
        with self._lock:
            entry = self._listeners.get(handle.key)
            if entry is None or entry[0] != handle:
                return False
            del self._listeners[handle.key]
        self._run(entry)
        return True

    def cancel_key(self, key: ListenerKey) -> bool:
        with self._lock:
            entry = self._listeners.pop(key, None)
        if entry is None:
            return False
        self._run(entry)
        return True

    def cancel_all(self, predicate: Optional[Callable[[ListenerKey], bool]] = None) -> int:
        with self._lock:
            keys = [k for k in self._listeners if predicate is None or predicate(k)]
            entries = [self._listeners.pop(k) for k in keys]
        for entry in entries:
            self._run(entry)
        if entries:
            logger.info("Cancelled %d listener(s)", len(entries))
        return len(entries)

    def cancel_type(self, listener_type: ListenerType) -> int:
        return self.cancel_all(lambda key: key.type == listener_type)

    def has_listener(self, key: ListenerKey) -> bool:
        with self._lock:
            return key in self._listeners

    def is_active(self, handle: Optional[ListenerHandle]) -> bool:
        if handle is None:
            return False
        with self._lock:
            entry = self._listeners.get(handle.key)
            return entry is not None and entry[0] == handle

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    @staticmethod
    def _run(entry: tuple[ListenerHandle, CancelFn]) -> None:
        handle, cancel_fn = entry
        try:
            cancel_fn()
        except Exception:
            logger.exception("Cancelling listener %s failed", handle.key)
