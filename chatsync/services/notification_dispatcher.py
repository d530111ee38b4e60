"""
NotificationDispatcher: turns new-message events into user notifications.

Sender names come from the shared users cache or a single profile fetch. The
in-flight task list is bounded; finished tasks are pruned first and the oldest
live ones are cancelled once the cap is reached. Activating a notification
stores its conversation id in a single pending slot that the UI drains once,
so a tap that arrives before the UI is ready is not lost.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, MutableMapping, Optional, Protocol

from chatsync.config import Settings, get_settings
from chatsync.infra.logging_config import get_logger
from chatsync.schemas.events import NewMessageEvent, Notification
from chatsync.schemas.user import User
from chatsync.utils.text import truncate_preview

logger = get_logger("notifications")

DEFAULT_TITLE = "New Message"
DEFAULT_BODY = "sent a message"

UserLookup = Callable[[str], Awaitable[Optional[User]]]
ActivationListener = Callable[[str], None]


class Notifier(Protocol):
    """Delivery backend (desktop notification center, push bridge, ...)."""

    def show(self, notification: Notification) -> None: ...

    async def set_badge(self, count: int) -> None: ...


class LoggingNotifier:
    """Notifier that logs deliveries and keeps them for inspection."""

    def __init__(self) -> None:
        self.delivered: List[Notification] = []
        self.badge = 0

    def show(self, notification: Notification) -> None:
        logger.info(
            "Notification for %s: %s - %s",
            notification.conversation_id,
            notification.title,
            notification.body,
        )
        self.delivered.append(notification)

    async def set_badge(self, count: int) -> None:
        self.badge = count


class NotificationDispatcher:
    def __init__(
        self,
        notifier: Notifier,
        user_lookup: Optional[UserLookup] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.notifier = notifier
        self.settings = settings or get_settings()
        self._user_lookup = user_lookup
        self._tasks: List[asyncio.Task] = []
        self._activation_listeners: List[ActivationListener] = []
        self.pending_conversation_id: Optional[str] = None

    @property
    def pending_count(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def dispatch(
        self,
        event: NewMessageEvent,
        users: Optional[MutableMapping[str, User]] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule a notification for `event`. Returns the task, or None when disabled."""
        if not self.settings.notifications_enabled:
            logger.debug("Notifications disabled; dropping event for %s", event.conversation_id)
            return None

        body = truncate_preview(
            event.preview or DEFAULT_BODY, self.settings.notification_preview_length
        )
        self._make_room()
        task = asyncio.get_running_loop().create_task(
            self._deliver(event, body, users if users is not None else {}),
            name=f"notify-{event.conversation_id}",
        )
        self._tasks.append(task)
        return task

    def _make_room(self) -> None:
        self._tasks = [t for t in self._tasks if not t.done()]
        cap = self.settings.max_pending_notification_tasks
        while len(self._tasks) >= cap:
            oldest = self._tasks.pop(0)
            oldest.cancel()
            logger.debug("Evicted oldest pending notification task")

    async def _deliver(
        self, event: NewMessageEvent, body: str, users: MutableMapping[str, User]
    ) -> None:
        sender = users.get(event.sender_id)
        if sender is None and self._user_lookup is not None:
            try:
                sender = await self._user_lookup(event.sender_id)
            except Exception as e:
                logger.warning("Could not resolve sender %s: %s", event.sender_id, e)
            if sender is not None:
                users[event.sender_id] = sender
        self.notifier.show(
            Notification(
                title=sender.display_name if sender is not None else DEFAULT_TITLE,
                body=body,
                conversation_id=event.conversation_id,
                sound=self.settings.sound_enabled,
            )
        )

    def cancel_pending(self) -> int:
        """Cancel every in-flight notification task; returns how many were live."""
        live = [t for t in self._tasks if not t.done()]
        for task in live:
            task.cancel()
        self._tasks.clear()
        return len(live)

    async def update_badge(self, unread_total: int) -> None:
        count = unread_total if self.settings.badge_enabled else 0
        try:
            await self.notifier.set_badge(max(count, 0))
        except Exception as e:
            logger.warning("Failed to set badge: %s", e)

    # ------------------------------------------------------------------
    # Activation routing
    # ------------------------------------------------------------------

    def on_activation(self, listener: ActivationListener) -> Callable[[], None]:
        self._activation_listeners.append(listener)

        def remove() -> None:
            if listener in self._activation_listeners:
                self._activation_listeners.remove(listener)

        return remove

    def handle_activation(self, conversation_id: Optional[str]) -> None:
        """User tapped a notification. Stores the target, then tells any listening UI."""
        if not conversation_id:
            return
        self.pending_conversation_id = conversation_id
        for listener in list(self._activation_listeners):
            try:
                listener(conversation_id)
            except Exception:
                logger.exception("Activation listener failed")

    def take_pending_target(self) -> Optional[str]:
        target, self.pending_conversation_id = self.pending_conversation_id, None
        return target
