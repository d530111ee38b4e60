"""Persists the signed-in session as a JSON file so it survives restarts."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from chatsync.adapters.identity.base import AuthSession
from chatsync.config import Settings, get_settings
from chatsync.infra.logging_config import get_logger

logger = get_logger("session_storage")


class SessionStorage:
    def __init__(self, path: Optional[Path] = None, settings: Optional[Settings] = None) -> None:
        self.path = path or (settings or get_settings()).session_path

    def load(self) -> Optional[AuthSession]:
        if not self.path.exists():
            return None
        try:
            return AuthSession.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable session file %s: %s", self.path, e)
            return None

    def save(self, session: AuthSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(session.model_dump_json(), encoding="utf-8")
        os.chmod(tmp, 0o600)
        tmp.replace(self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
