"""Auto-approval rules applied before a tool call reaches the approval queue."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from tollgate.config import CliConfig
from tollgate.events import ToolCallRequested

READ_ONLY_KINDS = frozenset({"read", "search", "think"})
READ_ONLY_TOOLS = frozenset({"Read", "Glob", "Grep", "LS"})
EDIT_TOOLS = frozenset({"Edit", "Write", "MultiEdit"})
EDIT_PATH_KEYS = ("path", "file_path", "notebook_path")

SAFE_COMMAND_PREFIXES = (
    "git status",
    "git log",
    "git diff",
    "git show",
    "git branch",
    "git remote",
    "git rev-parse",
    "git rev-list",
    "git merge-base",
    "git ls-files",
    "git stash list",
    "ls",
    "pwd",
    "cat ",
    "head ",
    "tail ",
    "wc ",
    "echo ",
    "which ",
    "python --version",
    "pip list",
    "pip show ",
)
_SHELL_OPERATORS = (";", "&", "|", "`", "$(", ">", "<", "\n")


def is_inside(path: str, cwd: Path) -> bool:
    resolved = (cwd / Path(path).expanduser()).resolve()
    return resolved == cwd or resolved.is_relative_to(cwd)


def is_safe_command(command: str) -> bool:
    trimmed = command.strip()
    if not trimmed or any(op in trimmed for op in _SHELL_OPERATORS):
        return False
    for prefix in SAFE_COMMAND_PREFIXES:
        if trimmed == prefix.strip() or trimmed.startswith(prefix if prefix.endswith(" ") else f"{prefix} "):
            return True
    return False


class ApprovalPolicy:
    """Decide which tool calls may run without asking the user."""

    def __init__(self, config: CliConfig, cwd: Path | str) -> None:
        self.config = config
        self.cwd = Path(cwd).resolve()

    def auto_approve(self, request: ToolCallRequested) -> str | None:
        """Return a short reason when ``request`` needs no approval."""
        if self.config.auto_approve_reads and (
            request.kind in READ_ONLY_KINDS or request.name in READ_ONLY_TOOLS
        ):
            return "read-only"
        if self.config.auto_approve_edits and (request.kind == "edit" or request.name in EDIT_TOOLS):
            paths = list(self._edit_paths(request))
            if paths and all(is_inside(path, self.cwd) for path in paths):
                return "inside working directory"
        if self.config.auto_approve_safe_commands and (request.kind == "execute" or request.name == "Bash"):
            command = request.raw_input.get("command")
            if isinstance(command, str) and is_safe_command(command):
                return "safe command"
        return None

    def _edit_paths(self, request: ToolCallRequested) -> Iterable[str]:
        yield from request.locations
        for key in EDIT_PATH_KEYS:
            value = request.raw_input.get(key)
            if isinstance(value, str) and value:
                yield value
