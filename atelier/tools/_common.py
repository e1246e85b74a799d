"""Helpers shared by every tool module: results, text IO, file walking, tracking."""

from __future__ import annotations

import functools
import os
import shutil
from pathlib import Path
from typing import Any, Callable, Iterator

from atelier.core.config import get_settings
from atelier.core.ledger import (
    MODIFIED_SUFFIX,
    SIDECAR_SUFFIXES,
    ChangeType,
    PendingChange,
    backup_path_for,
)
from atelier.core.logging import get_logger
from atelier.core.session import EditSession, PathEscapeError

logger = get_logger("tools.common")

SKIP_DIRS = {
    ".git",
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    ".mypy_cache",
    ".pytest_cache",
    ".next",
    "dist",
    "build",
}


# ── Results ──────────────────────────────────────────────────────────────


def ok(**payload: Any) -> dict:
    return {"success": True, **payload}


def fail(error: str, **payload: Any) -> dict:
    return {"success": False, "error": error, **payload}


def guarded(func: Callable[..., dict]) -> Callable[..., dict]:
    """Turn filesystem and sandbox errors into error results at the tool boundary."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> dict:
        try:
            return func(*args, **kwargs)
        except (PathEscapeError, SidecarConflictError) as exc:
            logger.warning("%s | %s", func.__name__, exc)
            return fail(str(exc))
        except (OSError, UnicodeError) as exc:
            logger.error("%s | %s", func.__name__, exc)
            return fail(str(exc))

    return wrapper


def truncate(text: str, max_chars: int | None = None) -> str:
    limit = max_chars or get_settings().max_output_chars
    if len(text) > limit:
        return text[: limit // 2] + f"\n\n... [truncated {len(text) - limit} chars] ...\n\n" + text[-limit // 2 :]
    return text


# ── Text IO ──────────────────────────────────────────────────────────────


def read_text(target: Path) -> str:
    """Decode a file, honouring and stripping any byte-order mark."""
    raw = target.read_bytes()
    if raw.startswith(b"\xff\xfe\x00\x00") or raw.startswith(b"\x00\x00\xfe\xff"):
        return raw.decode("utf-32", errors="replace").lstrip("\ufeff")
    if raw.startswith(b"\xff\xfe") or raw.startswith(b"\xfe\xff"):
        return raw.decode("utf-16", errors="replace").lstrip("\ufeff")
    if raw.startswith(b"\xef\xbb\xbf"):
        return raw[3:].decode("utf-8", errors="replace")
    return raw.decode("utf-8", errors="replace")


def write_text(target: Path, content: str) -> None:
    """Write UTF-8 without newline translation; the model may include a stray BOM."""
    target.write_bytes(content.lstrip("\ufeff").encode("utf-8"))


# ── Walking ──────────────────────────────────────────────────────────────


def is_sidecar(name: str) -> bool:
    return name.endswith(SIDECAR_SUFFIXES)


def iter_project_files(root: Path, extensions: list[str] | None = None) -> Iterator[Path]:
    """Yield project files in a stable order, skipping vendored dirs and ledger sidecars."""
    wanted = {f".{ext.lstrip('.').lower()}" for ext in extensions} if extensions else None
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for name in sorted(filenames):
            if is_sidecar(name):
                continue
            path = Path(dirpath) / name
            if wanted is not None and path.suffix.lower() not in wanted:
                continue
            yield path


# ── Ledger tracking ──────────────────────────────────────────────────────


class SidecarConflictError(ValueError):
    """A ledger sidecar name is taken by a file the ledger does not own."""


def hidden_error(session: EditSession) -> dict | None:
    """Mutations are refused while the ledger shows the original tree."""
    if session.ledger.are_changes_visible:
        return None
    return fail("Pending changes are currently hidden. Show them before editing files.")


def resolve_mutable(session: EditSession, file_path: str) -> Path:
    """Resolve a path a mutating tool is about to touch.

    Ledger sidecars are off limits: editing one would corrupt a snapshot.
    """
    target = session.resolve(file_path)
    if is_sidecar(target.name):
        raise SidecarConflictError(f"Refusing to modify change-tracking file: {file_path}")
    return target


def _sidecars_for(target: Path, effect: ChangeType) -> list[Path]:
    if effect == ChangeType.CREATE:
        return [Path(str(target) + MODIFIED_SUFFIX)]
    backup = backup_path_for(target, effect)
    return [Path(backup), Path(backup + MODIFIED_SUFFIX)]


def ensure_sidecars_free(session: EditSession, target: Path, effect: ChangeType) -> None:
    """Raise when tracking *target* would overwrite an unrelated user file."""
    if session.ledger.find(target) is not None:
        return
    for sidecar in _sidecars_for(target, effect):
        if sidecar.exists() and not session.ledger.owns_sidecar(sidecar):
            raise SidecarConflictError(
                f"Cannot track {target.name}: {sidecar.name} already exists and is not "
                "a pending backup. Rename or remove it first."
            )


def take_backup(session: EditSession, target: Path, effect: ChangeType) -> str | None:
    """Snapshot *target* before it is mutated.

    A path already tracked by the ledger keeps its first snapshot, which is the
    only one holding the true original; no second backup is taken.  Creations
    need no snapshot but still claim their parked-file name.
    """
    ensure_sidecars_free(session, target, effect)
    if effect == ChangeType.CREATE or session.ledger.find(target) is not None:
        return None
    backup = backup_path_for(target, effect)
    shutil.copyfile(target, backup)
    return backup


_NET_EFFECT: dict[tuple[ChangeType, ChangeType], ChangeType] = {
    (ChangeType.MODIFY, ChangeType.DELETE): ChangeType.DELETE,
    (ChangeType.DELETE, ChangeType.CREATE): ChangeType.MODIFY,
    (ChangeType.DELETE, ChangeType.MODIFY): ChangeType.MODIFY,
}


def register_change(
    session: EditSession,
    target: Path,
    effect: ChangeType,
    backup: str | None,
) -> PendingChange:
    """Record one mutation.

    The first mutation of a path becomes its primary record.  Later ones are
    appended as follow-ups linked to it, and the primary is retyped when the
    net effect on the path changes.
    """
    ledger = session.ledger
    primary = ledger.find(target)
    if primary is None:
        return ledger.record(effect, target, backup)
    net = _NET_EFFECT.get((primary.type, effect), primary.type)
    if net != primary.type:
        ledger.retype(primary.id, net)
    return ledger.record(effect, target, origin_id=primary.id)
