"""Rich renderables for history output."""

from __future__ import annotations

import ast
import contextlib
import difflib
from typing import Any, Iterable

from rich.console import RenderableType
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

_PLAN_STYLES = {
    "completed": "green",
    "in_progress": "orange1",
    "pending": "orange1",
}


def _render_text(text: str, style: str | None) -> Text:
    if "\x1b" in text:
        return Text.from_ansi(text)
    if style:
        return Text(text, style=style)
    return Text(text)


def format_tool(status: str, message: str) -> Text:
    normalized = status.lower()
    if normalized == "completed":
        style = "green"
    elif normalized in {"in_progress", "pending", "start"}:
        style = "yellow"
    else:
        style = "red"
    return Text(f"🛠️ | Tool[{status}]: {message}", style=style)


def format_agent_text(text: str) -> Text:
    return _render_text(text, None)


def format_thought(text: str) -> Text:
    return _render_text(text, "#aaaaaa")


def format_user_input(text: str) -> Text:
    return Text.assemble(("> ", "bold cyan"), text)


def format_mode_update(mode: str) -> Text:
    return Text(f"[mode -> {mode}]", style="magenta")


def format_error(message: str) -> Text:
    return Text(f"Error: {message}", style="red")


def format_diff(text: str) -> Syntax:
    return Syntax(text, "diff", theme="ansi_dark", line_numbers=False)


def format_file_edit_diff(path: str, old_text: str | None, new_text: str) -> RenderableType:
    old_lines = (old_text or "").splitlines()
    new_lines = new_text.splitlines()
    diff = "\n".join(
        difflib.unified_diff(
            old_lines,
            new_lines,
            fromfile=path or "before",
            tofile=path or "after",
            lineterm="",
        )
    )
    if not diff:
        return Text(f"No changes for {path or '<file>'}", style="dim")
    return format_diff(diff)


def _format_plan_content(raw: Any) -> str:
    if not isinstance(raw, str):
        return str(raw)
    text = raw.strip()
    if text.startswith("[") and text.endswith("]"):
        with contextlib.suppress(ValueError, SyntaxError):
            parsed = ast.literal_eval(text)
            if isinstance(parsed, list):
                return "\n".join(f"- {str(item).strip()}" for item in parsed if str(item).strip())
    return text


def format_plan(entries: Iterable[Any]) -> Table:
    """Plan entries with a coloured status dot."""
    table = Table(show_header=False, box=None, border_style="cyan")
    table.add_column("", width=2, style="cyan")
    table.add_column("Item", style="white")
    for entry in entries:
        status = getattr(entry, "status", "pending") or "pending"
        content = _format_plan_content(getattr(entry, "content", "") or "")
        table.add_row(Text("•", style=_PLAN_STYLES.get(status, "orange1")), content)
    return table


class LineBuffer:
    """Collect streamed chunks and release them one complete line at a time."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        self._pending += chunk
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return lines

    def flush(self) -> str | None:
        pending, self._pending = self._pending, ""
        return pending or None
