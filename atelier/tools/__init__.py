"""Agent tools: ledger-backed mutations, read/query helpers and the shell capability."""

from .registry import MUTATING_TOOLS, ToolDispatcher, build_toolset  # noqa: F401
