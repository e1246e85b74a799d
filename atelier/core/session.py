"""Editing sessions — one ledger and one conversation per project directory.

Tools and the orchestrator receive the :class:`EditSession` explicitly
instead of reaching for module-level state, so two projects can be edited
side by side.  The :class:`SessionRegistry` guarantees that a given project
path never has more than one live session, which keeps the ledger's
single-writer assumption true.
"""

from __future__ import annotations

import threading
import uuid
from pathlib import Path
from typing import Callable

from atelier.core.config import get_settings
from atelier.core.ledger import ChangeLedger, PendingChange
from atelier.core.logging import get_logger

logger = get_logger("core.session")


class PathEscapeError(ValueError):
    """Raised when a path would escape the project sandbox."""


class EditSession:
    """Project root, change ledger and chat history of one editing session."""

    def __init__(
        self,
        project_root: str | Path,
        on_changes: Callable[[list[PendingChange]], None] | None = None,
    ):
        root = Path(project_root).expanduser().resolve()
        if not root.is_dir():
            raise FileNotFoundError(f"Project root does not exist: {root}")
        self.project_root = root
        self.session_id = uuid.uuid4().hex
        self.ledger = ChangeLedger(on_changes=on_changes)
        self.history: list[dict] = []
        logger.info("Session %s opened for %s", self.session_id[:8], root)

    def resolve(self, path: str) -> Path:
        """Resolve *path* against the project root and verify it stays inside."""
        target = (self.project_root / path).resolve()
        try:
            target.relative_to(self.project_root)
        except ValueError as exc:
            raise PathEscapeError(
                f"Path escapes project sandbox: {path!r} resolved to {target}"
            ) from exc
        return target

    def relative(self, path: Path) -> str:
        """Project-relative POSIX form of an absolute path inside the root."""
        return path.relative_to(self.project_root).as_posix()

    def add_history(self, role: str, content: str) -> None:
        self.history.append({"role": role, "content": content})
        overflow = len(self.history) - get_settings().history_max_entries
        if overflow > 0:
            del self.history[:overflow]


class SessionRegistry:
    """At most one live :class:`EditSession` per resolved project path."""

    def __init__(self):
        self._sessions: dict[str, EditSession] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self,
        project_root: str | Path,
        on_changes: Callable[[list[PendingChange]], None] | None = None,
    ) -> EditSession:
        key = str(Path(project_root).expanduser().resolve())
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = EditSession(key, on_changes=on_changes)
                self._sessions[key] = session
            return session

    def get(self, project_root: str | Path) -> EditSession | None:
        key = str(Path(project_root).expanduser().resolve())
        return self._sessions.get(key)

    def close(self, project_root: str | Path) -> None:
        """Forget the session for *project_root*; its ledger must already be drained."""
        key = str(Path(project_root).expanduser().resolve())
        with self._lock:
            session = self._sessions.pop(key, None)
        if session is not None:
            if len(session.ledger):
                logger.warning(
                    "Session %s closed with %d pending change(s)",
                    session.session_id[:8],
                    len(session.ledger),
                )
            logger.info("Session %s closed", session.session_id[:8])

    def __len__(self) -> int:
        return len(self._sessions)


registry = SessionRegistry()
