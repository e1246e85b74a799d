"""Project text search tools — plain text, per-file with context, regex and glob."""

from __future__ import annotations

import fnmatch
import re

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field

from atelier.core.logging import get_logger
from atelier.core.session import EditSession

from ._common import fail, guarded, iter_project_files, ok, read_text

logger = get_logger("tools.search")

DEFAULT_EXTENSIONS = [
    "py", "ts", "tsx", "js", "jsx", "css", "scss", "html", "json", "md", "toml", "yaml", "yml",
]
DEFAULT_REGEX_EXTENSIONS = ["py", "ts", "tsx", "js", "jsx"]

MAX_FILE_BYTES = 1_000_000
MATCHES_PER_FILE = 5
REGEX_FILES_SCANNED = 50
REGEX_MATCHES_PER_FILE = 10
MAX_FOUND_FILES = 50


class SearchProjectArgs(BaseModel):
    query: str = Field(description="Text to search for")
    file_extensions: list[str] | None = Field(
        default=None, description="Limit to extensions, e.g. ['py', 'tsx']"
    )
    max_results: int = Field(default=20, description="Maximum files to return (default 20)")


class SearchFileArgs(BaseModel):
    file_path: str = Field(description="Relative path to the file")
    query: str = Field(description="Text to search for")
    context_lines: int = Field(default=2, description="Lines of context around each match (default 2)")


class SearchRegexArgs(BaseModel):
    pattern: str = Field(description="Regex pattern (e.g. 'def\\s+\\w+')")
    file_extensions: list[str] | None = Field(default=None, description="Limit to extensions")


class FindFilesArgs(BaseModel):
    pattern: str = Field(description="Glob pattern like '*.py' or 'test_*'")


def build_search_tools(session: EditSession) -> list[BaseTool]:
    root = session.project_root

    def _readable(path) -> str | None:
        try:
            if path.stat().st_size > MAX_FILE_BYTES:
                return None
            return read_text(path)
        except OSError:
            return None

    @tool("search_in_project", args_schema=SearchProjectArgs)
    @guarded
    def search_in_project(
        query: str,
        file_extensions: list[str] | None = None,
        max_results: int = 20,
    ) -> dict:
        """Search for text across ALL project files. Returns matching files with line numbers."""
        if not query:
            return fail("query must not be empty.")
        max_results = max(1, min(int(max_results), 200))

        results: list[dict] = []
        files_searched = 0
        for path in iter_project_files(root, file_extensions or DEFAULT_EXTENSIONS):
            content = _readable(path)
            if content is None:
                continue
            files_searched += 1
            if query not in content:
                continue
            matches = [
                {"line": num, "content": line.strip()[:100]}
                for num, line in enumerate(content.split("\n"), start=1)
                if query in line
            ]
            if matches:
                results.append({"file": session.relative(path), "matches": matches[:MATCHES_PER_FILE]})
            if len(results) >= max_results:
                break

        logger.info("search     | query=%r | files=%d | searched=%d", query, len(results), files_searched)
        return ok(results=results, found=len(results))

    @tool("search_in_file", args_schema=SearchFileArgs)
    @guarded
    def search_in_file(file_path: str, query: str, context_lines: int = 2) -> dict:
        """Search for text WITHIN a specific file. Returns all matching lines with context."""
        target = session.resolve(file_path)
        if not target.is_file():
            return fail(f"Not a file: {file_path}")
        if not query:
            return fail("query must not be empty.")

        lines = read_text(target).split("\n")
        context_lines = max(0, context_lines)
        matches = []
        for index, line in enumerate(lines):
            if query not in line:
                continue
            start = max(0, index - context_lines)
            end = min(len(lines), index + context_lines + 1)
            matches.append({
                "line": index + 1,
                "content": line.strip(),
                "context": "\n".join(lines[start:end]),
            })

        logger.info("search_file| %s query=%r (%d matches)", file_path, query, len(matches))
        return ok(file_path=file_path, query=query, matches=matches, total_matches=len(matches))

    @tool("search_by_regex", args_schema=SearchRegexArgs)
    @guarded
    def search_by_regex(pattern: str, file_extensions: list[str] | None = None) -> dict:
        """Search using a regex pattern across project files."""
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            return fail(f"Invalid regex pattern: {exc}")

        results: list[dict] = []
        for scanned, path in enumerate(iter_project_files(root, file_extensions or DEFAULT_REGEX_EXTENSIONS)):
            if scanned >= REGEX_FILES_SCANNED:
                break
            content = _readable(path)
            if content is None:
                continue
            found = [m.group(0) for m in regex.finditer(content)]
            if found:
                results.append({"file": session.relative(path), "matches": found[:REGEX_MATCHES_PER_FILE]})

        logger.info("regex      | pattern=%r | files=%d", pattern, len(results))
        return ok(results=results, found=len(results))

    @tool("find_files_by_name", args_schema=FindFilesArgs)
    @guarded
    def find_files_by_name(pattern: str) -> dict:
        """Find files by name or glob pattern, anywhere in the project."""
        files: list[str] = []
        for path in iter_project_files(root):
            rel = session.relative(path)
            if fnmatch.fnmatch(path.name, pattern) or fnmatch.fnmatch(rel, pattern):
                files.append(rel)
                if len(files) >= MAX_FOUND_FILES:
                    break
        logger.info("find_files | pattern=%r (%d found)", pattern, len(files))
        return ok(files=files, found=len(files))

    return [search_in_project, search_in_file, search_by_regex, find_files_by_name]
