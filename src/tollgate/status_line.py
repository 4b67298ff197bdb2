"""Status line and banner composition with visible-width accounting."""

from __future__ import annotations

import os
from pathlib import Path

from prompt_toolkit.utils import get_cwidth  # type: ignore

from tollgate.phase import Phase

INVERSE = "\x1b[7m"
BOLD = "\x1b[1m"
DIM = "\x1b[2m"
RED = "\x1b[31m"
GREEN = "\x1b[32m"
RESET = "\x1b[0m"

PHASE_MARKERS = {
    "idle": "💬",
    "sending": "⏳",
    "thinking": "🤔",
    "prompting": "❓",
    "asking": "❓",
}


class StatusLineBuilder:
    """Accumulate a line of output while tracking its width on screen."""

    def __init__(self) -> None:
        self.output = ""
        self.visible_width = 0

    def text(self, value: str) -> "StatusLineBuilder":
        self.output += value
        self.visible_width += get_cwidth(value)
        return self

    def emoji(self, value: str) -> "StatusLineBuilder":
        # Terminals draw these two columns wide whatever wcwidth says.
        self.output += value
        self.visible_width += 2
        return self

    def ansi(self, value: str) -> "StatusLineBuilder":
        self.output += value
        return self

    def screen_lines(self, columns: int) -> int:
        columns = max(1, columns)
        return max(1, -(-self.visible_width // columns))


def is_drowning(phase: Phase, threshold: int | None) -> bool:
    return (
        threshold is not None
        and phase.name == "prompting"
        and phase.remaining is not None
        and phase.remaining <= threshold
    )


def build_status_line(
    phase: Phase,
    elapsed: int | None = None,
    *,
    drowning_threshold: int | None = None,
    queue_size: int = 0,
) -> StatusLineBuilder:
    """Compose the status line for ``phase``.

    Prompts are shown in inverse video. Once an approval's remaining time
    reaches ``drowning_threshold`` the highlight flips every second.
    """
    builder = StatusLineBuilder()
    builder.emoji(PHASE_MARKERS[phase.name]).text(" ")

    if phase.name == "idle":
        builder.text("Ready")
    elif phase.name == "sending":
        builder.text(f"Sending... {elapsed or 0}s")
    elif phase.name == "thinking":
        builder.text(f"Thinking... {elapsed or 0}s")
        if queue_size:
            builder.text(f" ({queue_size} pending)")
    elif phase.name == "prompting":
        remaining = phase.remaining
        label = phase.label or ""
        if is_drowning(phase, drowning_threshold):
            builder.ansi(RED + BOLD)
            if remaining is not None and remaining % 2 == 0:
                builder.ansi(INVERSE)
        else:
            builder.ansi(INVERSE)
        builder.text(label).ansi(RESET)
        if remaining is not None:
            builder.text(f" [{remaining}s]")
    else:
        builder.ansi(INVERSE).text(phase.label or "").ansi(RESET)
        builder.text(f" {elapsed or 0}s")
    return builder


def format_path(path: str | None) -> str:
    if not path:
        path = os.getcwd()
    resolved = Path(path).expanduser()
    try:
        resolved = resolved.resolve()
    except OSError:
        return str(resolved)
    try:
        rel = resolved.relative_to(Path.home())
    except ValueError:
        return str(resolved)
    return str(Path("~") / rel)


def _pad_to_width(text: str, width: int) -> str:
    padding = max(0, width - get_cwidth(text))
    return f"{text}{' ' * padding}"


def _center_to_width(text: str, width: int) -> str:
    text_width = get_cwidth(text)
    if text_width >= width:
        return _pad_to_width(text, width)
    left = (width - text_width) // 2
    return f"{' ' * left}{text}{' ' * (width - text_width - left)}"


def build_welcome_banner(*, version: str, cwd: str | None, session_id: str | None, resumed: bool) -> str:
    session_line = f"{session_id} (resumed)" if resumed and session_id else session_id or "<new>"
    lines = [
        f"tollgate {version}",
        "Send /help for commands and key bindings.",
        "",
        f"Directory: {format_path(cwd)}",
        f"Session: {session_line}",
    ]
    content_width = max(get_cwidth(line) for line in lines)
    width = content_width + 2

    body: list[str] = []
    for index, line in enumerate(lines):
        aligned = _center_to_width(line, content_width) if index < 2 else _pad_to_width(line, content_width)
        content = f"{BOLD} {aligned} {RESET}" if index == 0 else f" {aligned} "
        body.append(f"{GREEN}│{RESET}{content}{GREEN}│{RESET}")
    top = f"{GREEN}┌{'─' * width}┐{RESET}"
    bottom = f"{GREEN}└{'─' * width}┘{RESET}"
    return "\n".join([top, *body, bottom])
