"""Read-only file tools. They never touch the ledger."""

from __future__ import annotations

from datetime import datetime, timezone

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field

from atelier.core.config import get_settings
from atelier.core.logging import get_logger
from atelier.core.session import EditSession

from ._common import fail, guarded, ok, read_text, truncate

logger = get_logger("tools.read")


class FilePathArgs(BaseModel):
    file_path: str = Field(description="Relative path to the file")


class LineRangeArgs(BaseModel):
    file_path: str = Field(description="Relative path to the file")
    start_line: int = Field(description="Start line number (1-indexed)")
    end_line: int = Field(description="End line number (inclusive)")


def build_read_tools(session: EditSession) -> list[BaseTool]:

    @tool("read_file", args_schema=FilePathArgs)
    @guarded
    def read_file(file_path: str) -> dict:
        """Read the entire content of a file."""
        target = session.resolve(file_path)
        if not target.is_file():
            return fail(f"Not a file: {file_path}")
        content = read_text(target)
        total_lines = len(content.split("\n"))
        shown = truncate(content)
        logger.info("read_file  | %s (%d chars)", file_path, len(content))
        return ok(content=shown, path=file_path, total_lines=total_lines, truncated=shown != content)

    @tool("get_line_range", args_schema=LineRangeArgs)
    @guarded
    def get_line_range(file_path: str, start_line: int, end_line: int) -> dict:
        """Read specific lines from a file. Perfect for large files - read only what you need."""
        target = session.resolve(file_path)
        if not target.is_file():
            return fail(f"Not a file: {file_path}")
        lines = read_text(target).split("\n")
        selected = lines[max(start_line - 1, 0) : max(end_line, 0)]
        logger.info("line_range | %s [%d-%d] (%d lines)", file_path, start_line, end_line, len(selected))
        return ok(
            content="\n".join(selected),
            start_line=start_line,
            end_line=end_line,
            total_lines=len(lines),
        )

    @tool("get_file_info", args_schema=FilePathArgs)
    @guarded
    def get_file_info(file_path: str) -> dict:
        """Get file metadata without reading content: size, line count, extension, last modified."""
        target = session.resolve(file_path)
        if not target.is_file():
            return fail(f"Not a file: {file_path}")
        stats = target.stat()
        line_count = len(read_text(target).split("\n"))
        logger.info("file_info  | %s (%d bytes)", file_path, stats.st_size)
        return ok(
            file_path=file_path,
            size=stats.st_size,
            size_kb=round(stats.st_size / 1024, 2),
            line_count=line_count,
            extension=target.suffix,
            last_modified=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc).isoformat(),
            is_large_file=stats.st_size > get_settings().large_file_bytes,
        )

    return [read_file, get_line_range, get_file_info]
