"""Logging setup shared by the sync engines and adapters."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from chatsync.config import get_settings

ROOT_LOGGER_NAME = "chatsync"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger namespaced under the package root logger."""
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name.startswith(ROOT_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class LoggingConfig:
    """
    Install a single stream handler on the package root logger.

    Safe to instantiate more than once; the handler is only added the first time.
    """

    def __init__(self, level: Optional[str] = None) -> None:
        self.level = (level or get_settings().log_level or "INFO").upper()
        self.configure()

    def configure(self) -> logging.Logger:
        logger = logging.getLogger(ROOT_LOGGER_NAME)
        logger.setLevel(self.level)
        if not any(getattr(h, "_chatsync", False) for h in logger.handlers):
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            handler._chatsync = True  # type: ignore[attr-defined]
            logger.addHandler(handler)
        return logger
