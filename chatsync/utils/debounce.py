"""Event-loop timers used for typing and search debouncing."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from chatsync.infra.logging_config import get_logger

logger = get_logger("debounce")


class Debouncer:
    """
    Runs the most recently scheduled coroutine after `delay` seconds of quiet.

    Each schedule() cancels the pending run, so a burst of calls produces at
    most one execution per quiet window.
    """

    def __init__(self, delay: float, name: str = "debouncer") -> None:
        self.delay = delay
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, fn: Callable[[], Awaitable[None]]) -> asyncio.Task:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run(fn), name=self.name)
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, fn: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(self.delay)
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s: deferred call failed", self.name)
