"""Saved chat conversations, one JSON file per conversation.

Conversations are grouped per project under ``HISTORY_DIR/<md5(project)>/``
so that two projects never see each other's history.
"""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from atelier.core.config import get_settings
from atelier.core.logging import get_logger

logger = get_logger("core.history")

_CONVERSATION_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    created_at: datetime | None = None


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = "New Conversation"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    messages: list[ChatMessage] = Field(default_factory=list)


def check_conversation_id(conversation_id: str) -> str:
    """Conversation ids become file names; refuse anything path-like."""
    if not _CONVERSATION_ID.match(conversation_id or ""):
        raise ValueError(f"Invalid conversation id: {conversation_id!r}")
    return conversation_id


class ConversationStore:
    """Save/list/delete conversations for each project."""

    def __init__(
        self,
        base_dir: str | Path | None = None,
        on_update: Callable[[str, list[Conversation]], None] | None = None,
    ):
        self._base_dir = Path(base_dir) if base_dir is not None else None
        self._on_update = on_update

    @property
    def base_dir(self) -> Path:
        return self._base_dir or Path(get_settings().history_dir)

    def _project_dir(self, project_root: str | Path) -> Path:
        key = str(Path(project_root).expanduser().resolve())
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()
        path = self.base_dir / digest
        path.mkdir(parents=True, exist_ok=True)
        return path

    def list(self, project_root: str | Path) -> list[Conversation]:
        """All conversations of a project, newest first. Unreadable files are skipped."""
        conversations: list[Conversation] = []
        for path in self._project_dir(project_root).glob("*.json"):
            try:
                conversations.append(Conversation.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, ValidationError) as exc:
                logger.error("Failed to read conversation %s: %s", path.name, exc)
        conversations.sort(key=lambda c: c.timestamp, reverse=True)
        return conversations

    def get(self, project_root: str | Path, conversation_id: str) -> Conversation | None:
        path = self._project_dir(project_root) / f"{check_conversation_id(conversation_id)}.json"
        if not path.exists():
            return None
        try:
            return Conversation.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValueError, ValidationError) as exc:
            logger.error("Failed to read conversation %s: %s", path.name, exc)
            return None

    def save(self, project_root: str | Path, conversation: Conversation) -> Path:
        path = self._project_dir(project_root) / f"{check_conversation_id(conversation.id)}.json"
        path.write_text(
            json.dumps(conversation.model_dump(mode="json"), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        logger.info("Conversation saved: %s (%d messages)", conversation.id, len(conversation.messages))
        self._notify(project_root)
        return path

    def delete(self, project_root: str | Path, conversation_id: str) -> bool:
        path = self._project_dir(project_root) / f"{check_conversation_id(conversation_id)}.json"
        if not path.exists():
            return False
        path.unlink()
        logger.info("Conversation deleted: %s", conversation_id)
        self._notify(project_root)
        return True

    def _notify(self, project_root: str | Path) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(str(project_root), self.list(project_root))
        except Exception as exc:
            logger.warning("History observer error: %s", exc)


conversation_store = ConversationStore()
