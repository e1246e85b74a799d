"""File management tools: create, delete, copy, move.

Copy and move are tracked like every other mutation: the destination is
recorded as created (or modified, when it overwrote an existing file) and a
moved source is recorded as deleted, so rejecting the session undoes them.
"""

from __future__ import annotations

import shutil

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field

from atelier.core.ledger import ChangeType
from atelier.core.logging import get_logger
from atelier.core.session import EditSession

from ._common import (
    ensure_sidecars_free,
    fail,
    guarded,
    hidden_error,
    ok,
    register_change,
    resolve_mutable,
    take_backup,
    write_text,
)

logger = get_logger("tools.manage")


class CreateFileArgs(BaseModel):
    file_path: str = Field(description="Relative path for the new file")
    content: str = Field(default="", description="Initial content")


class DeleteFileArgs(BaseModel):
    file_path: str = Field(description="Relative path to the file")


class TransferArgs(BaseModel):
    source_path: str = Field(description="Source file path")
    dest_path: str = Field(description="Destination file path")


def build_manage_tools(session: EditSession) -> list[BaseTool]:

    @tool("create_file", args_schema=CreateFileArgs)
    @guarded
    def create_file(file_path: str, content: str = "") -> dict:
        """Create a new file with initial content. Fails if the file already exists."""
        blocked = hidden_error(session)
        if blocked:
            return blocked
        target = resolve_mutable(session, file_path)
        if target.exists():
            return fail("File already exists. Use write_file to overwrite.")

        take_backup(session, target, ChangeType.CREATE)
        target.parent.mkdir(parents=True, exist_ok=True)
        write_text(target, content)
        register_change(session, target, ChangeType.CREATE, None)

        logger.info("create     | %s (%d chars)", file_path, len(content))
        return ok(file_path=file_path)

    @tool("delete_file", args_schema=DeleteFileArgs)
    @guarded
    def delete_file(file_path: str) -> dict:
        """Delete a file (a backup is taken first). Directories are not deletable."""
        blocked = hidden_error(session)
        if blocked:
            return blocked
        target = resolve_mutable(session, file_path)
        if not target.is_file():
            return fail(f"File not found: {file_path}")

        backup = take_backup(session, target, ChangeType.DELETE)
        target.unlink()
        register_change(session, target, ChangeType.DELETE, backup)

        logger.info("delete     | %s", file_path)
        return ok(file_path=file_path)

    @tool("copy_file", args_schema=TransferArgs)
    @guarded
    def copy_file(source_path: str, dest_path: str) -> dict:
        """Copy a file to a new location. Destination folders are created as needed."""
        blocked = hidden_error(session)
        if blocked:
            return blocked
        src = resolve_mutable(session, source_path)
        dest = resolve_mutable(session, dest_path)
        if not src.is_file():
            return fail(f"File not found: {source_path}")
        if src == dest:
            return fail("Source and destination are the same file.")
        if dest.is_dir():
            return fail(f"Destination is a directory: {dest_path}")

        effect = ChangeType.MODIFY if dest.exists() else ChangeType.CREATE
        backup = take_backup(session, dest, effect)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dest)
        register_change(session, dest, effect, backup)

        logger.info("copy       | %s → %s", source_path, dest_path)
        return ok(source_path=source_path, dest_path=dest_path)

    @tool("move_file", args_schema=TransferArgs)
    @guarded
    def move_file(source_path: str, dest_path: str) -> dict:
        """Move or rename a file. Destination folders are created as needed."""
        blocked = hidden_error(session)
        if blocked:
            return blocked
        src = resolve_mutable(session, source_path)
        dest = resolve_mutable(session, dest_path)
        if not src.is_file():
            return fail(f"File not found: {source_path}")
        if src == dest:
            return fail("Source and destination are the same file.")
        if dest.is_dir():
            return fail(f"Destination is a directory: {dest_path}")

        dest_effect = ChangeType.MODIFY if dest.exists() else ChangeType.CREATE
        ensure_sidecars_free(session, dest, dest_effect)
        src_backup = take_backup(session, src, ChangeType.DELETE)
        dest_backup = take_backup(session, dest, dest_effect)
        dest.parent.mkdir(parents=True, exist_ok=True)
        src.replace(dest)
        register_change(session, src, ChangeType.DELETE, src_backup)
        register_change(session, dest, dest_effect, dest_backup)

        logger.info("move       | %s → %s", source_path, dest_path)
        return ok(source_path=source_path, dest_path=dest_path)

    return [create_file, delete_file, copy_file, move_file]
