"""Directory listing and project tree tools."""

from __future__ import annotations

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field

from atelier.core.logging import get_logger
from atelier.core.session import EditSession

from ._common import fail, guarded, is_sidecar, iter_project_files, ok

logger = get_logger("tools.structure")

MAX_RECURSIVE_ENTRIES = 100


class ListFilesArgs(BaseModel):
    directory: str = Field(default=".", description="Relative path to directory (default: root)")
    recursive: bool = Field(default=False, description="Include subdirectories (default: false)")


class ProjectStructureArgs(BaseModel):
    max_depth: int = Field(default=3, description="Maximum depth to explore (default: 3)")


def build_structure_tools(session: EditSession) -> list[BaseTool]:

    @tool("list_files", args_schema=ListFilesArgs)
    @guarded
    def list_files(directory: str = ".", recursive: bool = False) -> dict:
        """List files and folders in a directory."""
        target = session.resolve(directory or ".")
        if not target.is_dir():
            return fail(f"Not a directory: {directory}")

        if recursive:
            entries = []
            for path in iter_project_files(target):
                entries.append({"path": session.relative(path)})
                if len(entries) >= MAX_RECURSIVE_ENTRIES:
                    break
            logger.info("list_files | %s recursive (%d entries)", directory, len(entries))
            return ok(entries=entries, count=len(entries))

        entries = []
        for entry in sorted(target.iterdir(), key=lambda e: (not e.is_dir(), e.name.lower())):
            if entry.name.startswith(".") or entry.name == "node_modules" or is_sidecar(entry.name):
                continue
            entries.append({
                "name": entry.name,
                "type": "directory" if entry.is_dir() else "file",
                "path": session.relative(entry),
            })
        logger.info("list_files | %s (%d entries)", directory, len(entries))
        return ok(entries=entries, count=len(entries))

    @tool("get_project_structure", args_schema=ProjectStructureArgs)
    @guarded
    def get_project_structure(max_depth: int = 3) -> dict:
        """Get the full project tree structure. Useful to understand project layout."""
        root = session.project_root
        tree: dict = {}
        total = 0
        for path in iter_project_files(root):
            parts = path.relative_to(root).parts
            if len(parts) > max_depth or any(part.startswith(".") for part in parts):
                continue
            node = tree
            for part in parts[:-1]:
                node = node.setdefault(part, {})
            node[parts[-1]] = "file"
            total += 1
        logger.info("structure  | depth=%d (%d files)", max_depth, total)
        return ok(tree=tree, total_files=total)

    return [list_files, get_project_structure]
