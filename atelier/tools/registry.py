"""Tool catalog and dispatcher.

The dispatcher is the one place where a model-issued tool call is turned
into a typed invocation: the name selects a tool, the tool's pydantic
``args_schema`` validates the raw arguments once, and the result comes back
as a plain dict.  Calls are handled strictly one at a time, in the order the
model issued them, so ledger backups for a given file stay ordered.
"""

from __future__ import annotations

import uuid
from typing import Any

from langchain_core.tools import BaseTool
from pydantic import ValidationError

from atelier.core.events import EventChannel
from atelier.core.logging import get_logger
from atelier.core.session import EditSession

from ._common import fail
from .manage import build_manage_tools
from .project import build_project_tools
from .read import build_read_tools
from .search import build_search_tools
from .shell import build_shell_tools
from .structure import build_structure_tools
from .write import build_write_tools

logger = get_logger("tools.registry")

MUTATING_TOOLS = frozenset({
    "create_file", "write_file", "replace_in_file", "insert_at_line",
    "append_to_file", "delete_file", "copy_file", "move_file",
})


def build_toolset(session: EditSession, include_shell: bool = True) -> list[BaseTool]:
    """Every tool bound to *session*, read tools first."""
    tools: list[BaseTool] = [
        *build_read_tools(session),
        *build_search_tools(session),
        *build_structure_tools(session),
        *build_project_tools(session),
        *build_write_tools(session),
        *build_manage_tools(session),
    ]
    if include_shell:
        tools.extend(build_shell_tools(session))
    return tools


def _summarize(result: dict) -> str:
    if not result.get("success", False):
        return f"error: {result.get('error', 'unknown')}"
    keys = [k for k in result if k not in ("success", "content")]
    return "ok" + (f" ({', '.join(keys)})" if keys else "")


class ToolDispatcher:
    """Maps tool names to tools, validates arguments and reports events."""

    def __init__(
        self,
        session: EditSession,
        channel: EventChannel | None = None,
        tools: list[BaseTool] | None = None,
    ):
        self.session = session
        self.channel = channel
        self.tools = tools if tools is not None else build_toolset(session)
        self._by_name = {t.name: t for t in self.tools}

    @property
    def names(self) -> list[str]:
        return list(self._by_name)

    def dispatch(self, name: str, args: dict[str, Any] | None, call_id: str | None = None) -> dict:
        """Run one tool call and return its structured result. Never raises."""
        call_id = call_id or f"{name}-{uuid.uuid4().hex[:8]}"
        args = args or {}
        if self.channel is not None:
            self.channel.tool_call(call_id, name, args)

        result = self._invoke(name, args)

        ok = bool(result.get("success", False))
        if self.channel is not None:
            self.channel.tool_result(call_id, name, result, ok=ok)
        logger.info("tool_call  | %s(%s) -> %s", name, list(args.keys()), _summarize(result))
        return result

    def _invoke(self, name: str, args: dict[str, Any]) -> dict:
        tool_fn = self._by_name.get(name)
        if tool_fn is None:
            return fail(f"Unknown tool: {name}")

        schema = tool_fn.args_schema
        try:
            parsed = schema.model_validate(args)
        except ValidationError as exc:
            return fail(f"Invalid arguments for {name}: {exc}")

        kwargs = {field: getattr(parsed, field) for field in type(parsed).model_fields}
        try:
            return tool_fn.func(**kwargs)
        except Exception as exc:
            logger.exception("Tool %s raised", name)
            return fail(f"Tool error: {exc}")
