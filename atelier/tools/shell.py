"""Shell command capability — runs inside the project root behind a deny-list.

Every command is logged with cwd, exit code, and truncated output.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field

from atelier.core.config import get_settings
from atelier.core.logging import get_logger
from atelier.core.session import EditSession

from ._common import fail, guarded, ok

logger = get_logger("tools.shell")

# Literal fragments that must NEVER reach the shell, regardless of context.
BLOCKED_SUBSTRINGS: tuple[str, ...] = (
    "rm -rf /",
    "sudo",
    ":(){ :|:& };:",
    "mkfs",
    "dd if=",
)


class CommandBlockedError(Exception):
    """Raised when a command matches the deny-list."""


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int


def _is_blocked(command: str) -> str | None:
    """Return a reason string if the command is blocked, else None."""
    for fragment in BLOCKED_SUBSTRINGS:
        if fragment in command:
            return f"Blocked by safety rule: {fragment!r}"
    return None


def execute_command(command: str, cwd: str | Path, timeout_seconds: float | None = None) -> CommandResult:
    """Run *command* through the shell in *cwd*.

    Raises :class:`CommandBlockedError` for deny-listed commands and
    :class:`subprocess.TimeoutExpired` when the timeout elapses.
    """
    reason = _is_blocked(command)
    if reason:
        logger.warning("BLOCKED shell | %s | reason: %s", command, reason)
        raise CommandBlockedError(reason)

    timeout = timeout_seconds or get_settings().command_timeout_seconds
    logger.info("run_command| cwd=%s | cmd=%s", cwd, command)
    completed = subprocess.run(
        command,
        shell=True,
        cwd=str(cwd),
        capture_output=True,
        text=True,
        timeout=timeout,
    )
    logger.info("run_command| exit=%d | stdout=%d chars", completed.returncode, len(completed.stdout or ""))
    return CommandResult(
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        exit_code=completed.returncode,
    )


class RunCommandArgs(BaseModel):
    command: str = Field(description="Command to run (e.g. 'pytest -q' or 'npm install lodash')")
    timeout_seconds: int | None = Field(default=None, description="Timeout in seconds (default: 30)")


def build_shell_tools(session: EditSession) -> list[BaseTool]:

    @tool("run_command", args_schema=RunCommandArgs)
    @guarded
    def run_command(command: str, timeout_seconds: int | None = None) -> dict:
        """Run a shell command in the project directory. Use for test runners, package managers, git, etc."""
        settings = get_settings()
        try:
            result = execute_command(command, session.project_root, timeout_seconds)
        except CommandBlockedError:
            return fail("Command blocked for security reasons")
        except subprocess.TimeoutExpired:
            msg = f"Command timed out after {timeout_seconds or settings.command_timeout_seconds}s"
            logger.error("%s: %s", msg, command)
            return fail(msg)

        payload = {
            "stdout": result.stdout[: settings.command_stdout_chars],
            "stderr": result.stderr[: settings.command_stderr_chars],
            "exit_code": result.exit_code,
        }
        if result.exit_code != 0:
            return fail(f"Command failed with exit code {result.exit_code}", **payload)
        return ok(**payload)

    return [run_command]
