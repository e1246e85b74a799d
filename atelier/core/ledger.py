"""Change ledger — every pending, reversible file mutation of an editing session.

The filesystem itself is the durability medium.  Next to each touched file
the ledger relies on sidecar files with fixed suffixes:

  <path>.backup          pre-modify snapshot
  <path>.deleted-backup  pre-delete snapshot
  <path>.modified        post-change content parked while changes are hidden

Every mutating operation appends its own record.  The first record for a
path is its *primary*: it owns the only snapshot and carries the net effect
of everything done to that path.  Later records for the same path are
follow-ups (``origin_id`` set, no ``backup_path``); they keep the operation
log complete but are skipped by toggle, validate and reject, so each path's
net effect is applied exactly once.

A session starts with an empty ledger and is drained completely by either
:meth:`ChangeLedger.validate` (keep everything, drop the snapshots) or
:meth:`ChangeLedger.reject` (restore every snapshot).  Per-record I/O errors
during those ledger-wide operations are logged and skipped so that one bad
sidecar cannot wedge the session.
"""

from __future__ import annotations

import shutil
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, Field

from atelier.core.logging import get_logger

logger = get_logger("core.ledger")

BACKUP_SUFFIX = ".backup"
DELETED_BACKUP_SUFFIX = ".deleted-backup"
MODIFIED_SUFFIX = ".modified"

SIDECAR_SUFFIXES = (BACKUP_SUFFIX, DELETED_BACKUP_SUFFIX, MODIFIED_SUFFIX)


class ChangeType(StrEnum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class PendingChange(BaseModel):
    """One ledger record: the effect of a mutation on a single path."""
    id: str = Field(default_factory=lambda: f"change-{uuid.uuid4().hex[:12]}")
    type: ChangeType
    file_path: str
    backup_path: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    # Id of the primary record for this path; None on the primary itself.
    origin_id: str | None = None

    @property
    def is_primary(self) -> bool:
        return self.origin_id is None

    @property
    def parked_path(self) -> Path:
        """Where the modified content lives while changes are hidden."""
        if self.type == ChangeType.CREATE or not self.backup_path:
            return Path(self.file_path + MODIFIED_SUFFIX)
        return Path(self.backup_path + MODIFIED_SUFFIX)


def backup_path_for(file_path: str | Path, change_type: ChangeType) -> str:
    """Sidecar path holding the pre-change snapshot of *file_path*."""
    suffix = DELETED_BACKUP_SUFFIX if change_type == ChangeType.DELETE else BACKUP_SUFFIX
    return str(file_path) + suffix


def _unlink_if_exists(path: str | Path) -> None:
    Path(path).unlink(missing_ok=True)


class ChangeLedger:
    """Ordered list of pending changes plus the shown/hidden toggle.

    Single writer: all mutation goes through the session's step loop or the
    toggle/validate/reject entry points, never concurrently.
    """

    def __init__(self, on_changes: Callable[[list[PendingChange]], None] | None = None):
        self._changes: list[PendingChange] = []
        self._visible = True
        self._on_changes = on_changes

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def are_changes_visible(self) -> bool:
        return self._visible

    def list(self) -> list[PendingChange]:
        """Snapshot of all records, insertion order."""
        return [change.model_copy() for change in self._changes]

    def find(self, file_path: str | Path) -> PendingChange | None:
        """Return the primary record tracking *file_path*, if any."""
        target = str(file_path)
        for change in self._primaries():
            if change.file_path == target:
                return change
        return None

    def owns_sidecar(self, sidecar_path: str | Path) -> bool:
        """True when *sidecar_path* is a backup or parked file of a tracked record."""
        candidate = str(sidecar_path)
        for change in self._primaries():
            if candidate in (change.backup_path, str(change.parked_path)):
                return True
        return False

    def __len__(self) -> int:
        return len(self._changes)

    def _primaries(self) -> list[PendingChange]:
        return [change for change in self._changes if change.is_primary]

    # ── Recording ────────────────────────────────────────────────────────

    def record(
        self,
        change_type: ChangeType,
        file_path: str | Path,
        backup_path: str | Path | None = None,
        origin_id: str | None = None,
    ) -> PendingChange:
        """Append a new record with a fresh id and timestamp.

        Pass *origin_id* for a follow-up mutation of a path that already has a
        primary record; follow-ups never carry a snapshot.
        """
        if origin_id is not None and backup_path:
            raise ValueError("A follow-up record cannot carry its own backup")
        change = PendingChange(
            type=change_type,
            file_path=str(file_path),
            backup_path=str(backup_path) if backup_path else None,
            origin_id=origin_id,
        )
        self._changes.append(change)
        logger.info(
            "record     | %s %s%s",
            change.type.value,
            change.file_path,
            " (follow-up)" if origin_id else "",
        )
        self._notify()
        return change

    def retype(self, change_id: str, change_type: ChangeType) -> PendingChange:
        """Change the net effect of an existing record (e.g. modify → delete)."""
        for index, change in enumerate(self._changes):
            if change.id == change_id:
                updated = change.model_copy(update={"type": change_type})
                self._changes[index] = updated
                logger.info("retype     | %s → %s %s", change.type.value, change_type.value, change.file_path)
                self._notify()
                return updated
        raise KeyError(f"Unknown change id: {change_id}")

    def clear(self) -> None:
        """Drop every record without touching the disk.

        Visibility is reset to shown: with no records left there is nothing
        hidden, and new edits must not be refused.
        """
        if not self._visible:
            logger.warning("clear      | called while hidden; disk keeps the original tree")
        self._changes = []
        self._visible = True
        logger.info("clear      | ledger emptied without disk changes")
        self._notify()

    # ── Toggle ───────────────────────────────────────────────────────────

    def toggle(self, visible: bool) -> dict:
        """Show the modified tree (``True``) or the original tree (``False``).

        Toggling to the current state is a no-op with no disk writes.
        """
        if visible == self._visible:
            return {"success": True, "visible": visible}

        logger.info("toggle     | %s", "show modifications" if visible else "show originals")
        for change in self._primaries():
            try:
                if visible:
                    self._show_modified(change)
                else:
                    self._show_original(change)
            except OSError as exc:
                logger.error("toggle     | failed for %s: %s", change.file_path, exc)

        self._visible = visible
        return {"success": True, "visible": visible}

    @staticmethod
    def _show_original(change: PendingChange) -> None:
        target = Path(change.file_path)
        if change.type == ChangeType.MODIFY and change.backup_path:
            shutil.copyfile(target, change.parked_path)
            shutil.copyfile(change.backup_path, target)
        elif change.type == ChangeType.CREATE:
            if target.exists():
                target.rename(change.parked_path)
        elif change.type == ChangeType.DELETE and change.backup_path:
            shutil.copyfile(change.backup_path, target)

    @staticmethod
    def _show_modified(change: PendingChange) -> None:
        target = Path(change.file_path)
        if change.type in (ChangeType.MODIFY, ChangeType.CREATE):
            parked = change.parked_path
            if parked.exists():
                parked.replace(target)
        elif change.type == ChangeType.DELETE:
            target.unlink(missing_ok=True)

    # ── Validate / reject ────────────────────────────────────────────────

    def validate(self) -> dict:
        """Commit everything: keep the modified tree, delete every sidecar."""
        logger.info("validate   | %d change(s)", len(self._changes))
        if not self._visible:
            self.toggle(True)

        for change in self._primaries():
            try:
                if change.backup_path:
                    _unlink_if_exists(change.backup_path)
                    _unlink_if_exists(change.backup_path + MODIFIED_SUFFIX)
                if change.type == ChangeType.CREATE:
                    _unlink_if_exists(change.file_path + MODIFIED_SUFFIX)
            except OSError as exc:
                logger.error("validate   | failed to clean up %s: %s", change.file_path, exc)

        self._drain()
        return {"success": True}

    def reject(self) -> dict:
        """Roll everything back to the pre-session tree and delete every sidecar."""
        logger.info("reject     | %d change(s)", len(self._changes))
        if not self._visible:
            # The working tree already shows originals; only the sidecars remain.
            for change in self._primaries():
                try:
                    self._discard_sidecars(change)
                except OSError as exc:
                    logger.error("reject     | failed to clean up %s: %s", change.file_path, exc)
        else:
            for change in self._primaries():
                try:
                    self._restore(change)
                except OSError as exc:
                    logger.error("reject     | failed to restore %s: %s", change.file_path, exc)

        self._drain()
        return {"success": True}

    @staticmethod
    def _discard_sidecars(change: PendingChange) -> None:
        if change.backup_path:
            _unlink_if_exists(change.backup_path + MODIFIED_SUFFIX)
            _unlink_if_exists(change.backup_path)
        if change.type == ChangeType.CREATE:
            _unlink_if_exists(change.file_path + MODIFIED_SUFFIX)

    @staticmethod
    def _restore(change: PendingChange) -> None:
        target = Path(change.file_path)
        if change.type in (ChangeType.MODIFY, ChangeType.DELETE) and change.backup_path:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(Path(change.backup_path).read_bytes())
            Path(change.backup_path).unlink()
            logger.info("reject     | restored %s", change.file_path)
        elif change.type == ChangeType.CREATE:
            target.unlink(missing_ok=True)
            logger.info("reject     | removed %s", change.file_path)

    def _drain(self) -> None:
        self._changes = []
        self._visible = True
        self._notify()

    def _notify(self) -> None:
        if self._on_changes is None:
            return
        try:
            self._on_changes(self.list())
        except Exception as exc:
            logger.warning("Pending-changes observer error: %s", exc)
