"""Content-editing tools: whole-file write, search/replace, line insert, append.

Each tool snapshots the current content before touching it and registers the
change with the session's ledger, so the edit can be hidden, validated or
rejected later.  Paths are relative to the project root.
"""

from __future__ import annotations

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field

from atelier.core.ledger import ChangeType
from atelier.core.logging import get_logger
from atelier.core.session import EditSession

from ._common import (
    fail,
    guarded,
    hidden_error,
    ok,
    read_text,
    register_change,
    resolve_mutable,
    take_backup,
    write_text,
)

logger = get_logger("tools.write")


class WriteFileArgs(BaseModel):
    file_path: str = Field(description="Relative path to the file")
    content: str = Field(description="The complete new content")
    explanation: str = Field(default="", description="What changes were made")


class ReplaceInFileArgs(BaseModel):
    file_path: str = Field(description="Relative path to the file")
    search: str = Field(description="EXACT code to replace (must match perfectly including whitespace)")
    replace: str = Field(description="New code to insert")
    explanation: str = Field(default="", description="Why this change is being made")


class InsertAtLineArgs(BaseModel):
    file_path: str = Field(description="Relative path to the file")
    line_number: int = Field(description="Line number where to insert (1-indexed)")
    content: str = Field(description="Content to insert")
    explanation: str = Field(default="", description="What is being added")


class AppendToFileArgs(BaseModel):
    file_path: str = Field(description="Relative path to the file")
    content: str = Field(description="Content to append")


def clamp_insert_index(line_number: int, line_count: int) -> int:
    """0-based splice index for a 1-based line number.

    Zero or negative numbers insert before the first line; numbers past the end
    append after the last one.
    """
    return min(max(line_number - 1, 0), line_count)


def build_write_tools(session: EditSession) -> list[BaseTool]:

    @tool("write_file", args_schema=WriteFileArgs)
    @guarded
    def write_file(file_path: str, content: str, explanation: str = "") -> dict:
        """Write ENTIRE content to a file, creating it if needed. For small changes, use replace_in_file instead."""
        blocked = hidden_error(session)
        if blocked:
            return blocked
        target = resolve_mutable(session, file_path)
        if target.is_dir():
            return fail(f"Not a file: {file_path}")

        effect = ChangeType.MODIFY if target.exists() else ChangeType.CREATE
        backup = take_backup(session, target, effect)
        target.parent.mkdir(parents=True, exist_ok=True)
        write_text(target, content)
        register_change(session, target, effect, backup)

        logger.info("write_file | %s (%d chars, %s)", file_path, len(content), effect.value)
        return ok(file_path=file_path, explanation=explanation)

    @tool("replace_in_file", args_schema=ReplaceInFileArgs)
    @guarded
    def replace_in_file(file_path: str, search: str, replace: str, explanation: str = "") -> dict:
        """Replace a specific code block. FASTER than rewriting the whole file. Preferred for modifications."""
        blocked = hidden_error(session)
        if blocked:
            return blocked
        target = resolve_mutable(session, file_path)
        if not target.is_file():
            return fail(f"File not found: {file_path}")

        normalized = read_text(target).replace("\r\n", "\n")
        needle = search.replace("\r\n", "\n")
        if not needle or needle not in normalized:
            logger.info("replace    | %s (search text not found)", file_path)
            return fail("Code block not found. Use read_file to get the exact current content.")

        backup = take_backup(session, target, ChangeType.MODIFY)
        write_text(target, normalized.replace(needle, replace, 1))
        register_change(session, target, ChangeType.MODIFY, backup)

        logger.info("replace    | %s (%d chars → %d chars)", file_path, len(needle), len(replace))
        return ok(file_path=file_path, explanation=explanation)

    @tool("insert_at_line", args_schema=InsertAtLineArgs)
    @guarded
    def insert_at_line(file_path: str, line_number: int, content: str, explanation: str = "") -> dict:
        """Insert content at a specific line number (1-indexed). Great for adding imports or new functions."""
        blocked = hidden_error(session)
        if blocked:
            return blocked
        target = resolve_mutable(session, file_path)
        if not target.is_file():
            return fail(f"File not found: {file_path}")

        lines = read_text(target).split("\n")
        index = clamp_insert_index(line_number, len(lines))
        lines.insert(index, content)

        backup = take_backup(session, target, ChangeType.MODIFY)
        write_text(target, "\n".join(lines))
        register_change(session, target, ChangeType.MODIFY, backup)

        logger.info("insert     | %s at line %d", file_path, index + 1)
        return ok(file_path=file_path, line_number=index + 1, explanation=explanation)

    @tool("append_to_file", args_schema=AppendToFileArgs)
    @guarded
    def append_to_file(file_path: str, content: str) -> dict:
        """Add content at the END of a file (the file is created if it does not exist)."""
        blocked = hidden_error(session)
        if blocked:
            return blocked
        target = resolve_mutable(session, file_path)
        if target.is_dir():
            return fail(f"Not a file: {file_path}")

        if target.exists():
            # Raw byte append: existing content is never decoded or re-encoded.
            backup = take_backup(session, target, ChangeType.MODIFY)
            with target.open("ab") as fh:
                fh.write(("\n" + content).encode("utf-8"))
            register_change(session, target, ChangeType.MODIFY, backup)
        else:
            take_backup(session, target, ChangeType.CREATE)
            target.parent.mkdir(parents=True, exist_ok=True)
            write_text(target, content)
            register_change(session, target, ChangeType.CREATE, None)

        logger.info("append     | %s (%d chars)", file_path, len(content))
        return ok(file_path=file_path)

    return [write_file, replace_in_file, insert_at_line, append_to_file]
