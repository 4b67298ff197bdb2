"""Split-zone terminal renderer.

Output is an append-only history stream above a sticky region (status line
plus editor) that is erased and repainted in place with cursor-relative
escapes, so scrollback is never cleared. The renderer is the only writer of
terminal output.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from io import StringIO
from typing import Callable, TextIO

from prompt_toolkit.utils import get_cwidth  # type: ignore
from rich.console import Console, RenderableType
from rich.text import Text

from tollgate.editor import EditorState
from tollgate.log_utils import log_event
from tollgate.status_line import StatusLineBuilder

logger = logging.getLogger(__name__)

CSI = "\x1b["
CLEAR_DOWN = f"{CSI}J"
HIDE_CURSOR = f"{CSI}?25l"
SHOW_CURSOR = f"{CSI}?25h"
BRACKETED_PASTE_ON = f"{CSI}?2004h"
BRACKETED_PASTE_OFF = f"{CSI}?2004l"
BELL = "\a"
NEWLINE = "\r\n"

DEFAULT_PROMPT = "> "
DEFAULT_RESIZE_DEBOUNCE = 0.3


def cursor_up(count: int) -> str:
    return f"{CSI}{count}A" if count > 0 else ""


def cursor_down(count: int) -> str:
    return f"{CSI}{count}B" if count > 0 else ""


def cursor_to_column(col: int) -> str:
    return f"{CSI}{col + 1}G"


def rows_for_width(width: int, columns: int) -> int:
    """Screen rows a line of ``width`` cells occupies at ``columns``."""
    columns = max(1, columns)
    return max(1, -(-width // columns))


def _terminal_columns() -> int:
    return shutil.get_terminal_size().columns


@dataclass(frozen=True)
class RenderState:
    """Layout of the last painted sticky region.

    Widths are kept in cells rather than screen rows so the layout can be
    recomputed after the terminal width changes.
    """

    line_widths: tuple[int, ...] = ()
    cursor_line: int = 0
    cursor_col: int = 0

    @property
    def painted(self) -> bool:
        return bool(self.line_widths)

    def screen_line_count(self, columns: int) -> int:
        return sum(rows_for_width(width, columns) for width in self.line_widths)

    def cursor_row(self, columns: int) -> int:
        """Row of the cursor counted from the top of the region."""
        if not self.line_widths:
            return 0
        above = sum(rows_for_width(width, columns) for width in self.line_widths[: self.cursor_line])
        return above + self._row_in_line(columns)

    def cursor_lines_from_bottom(self, columns: int) -> int:
        if not self.line_widths:
            return 0
        return self.screen_line_count(columns) - 1 - self.cursor_row(columns)

    def cursor_screen_col(self, columns: int) -> int:
        columns = max(1, columns)
        col = self.cursor_col - self._row_in_line(columns) * columns
        # A cursor exactly at a wrap boundary stays on the last column.
        return min(col, columns - 1)

    def _row_in_line(self, columns: int) -> int:
        columns = max(1, columns)
        line_rows = rows_for_width(self.line_widths[self.cursor_line], columns)
        return min(self.cursor_col // columns, line_rows - 1)


@dataclass(frozen=True)
class StickyContent:
    lines: tuple[str, ...]
    widths: tuple[int, ...]
    cursor_line: int
    cursor_col: int
    hide_cursor: bool = False


def compose_sticky(
    status: StatusLineBuilder,
    editor: EditorState,
    *,
    prompt: str = DEFAULT_PROMPT,
    hide_cursor: bool = False,
) -> StickyContent:
    """Lay out the status line followed by the editor lines."""
    continuation = " " * get_cwidth(prompt)
    lines = [status.output]
    widths = [status.visible_width]
    for row, text in enumerate(editor.lines):
        prefix = prompt if row == 0 else continuation
        lines.append(prefix + text)
        widths.append(get_cwidth(prefix + text))
    cursor = editor.cursor
    prefix = prompt if cursor.row == 0 else continuation
    cursor_col = get_cwidth(prefix + editor.lines[cursor.row][: cursor.col])
    return StickyContent(
        lines=tuple(lines),
        widths=tuple(widths),
        cursor_line=cursor.row + 1,
        cursor_col=cursor_col,
        hide_cursor=hide_cursor,
    )


@dataclass
class _Paused:
    history: list[str] = field(default_factory=list)
    handle: asyncio.TimerHandle | None = None


class TerminalRenderer:
    """Paint history and the sticky region onto ``stream``."""

    def __init__(
        self,
        stream: TextIO,
        *,
        get_columns: Callable[[], int] = _terminal_columns,
        resize_debounce: float = DEFAULT_RESIZE_DEBOUNCE,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._stream = stream
        self._get_columns = get_columns
        self._resize_debounce = resize_debounce
        self._clock = clock
        self._state = RenderState()
        self._sticky: StickyContent | None = None
        self._paused: _Paused | None = None
        self._buffer = StringIO()
        self._console = Console(
            file=self._buffer,
            force_terminal=True,
            color_system="standard",
            markup=False,
            highlight=False,
        )

    @property
    def state(self) -> RenderState:
        return self._state

    @property
    def paused(self) -> bool:
        return self._paused is not None

    def columns(self) -> int:
        return max(1, self._get_columns())

    def start(self) -> None:
        self._write(BRACKETED_PASTE_ON)

    def close(self) -> None:
        """Leave the sticky region on screen and hand the cursor back below it."""
        if self._paused is not None:
            if self._paused.handle is not None:
                self._paused.handle.cancel()
            self._resume()
        out = ""
        if self._state.painted:
            out += cursor_down(self._state.cursor_lines_from_bottom(self.columns())) + NEWLINE
        self._state = RenderState()
        self._sticky = None
        self._write(out + SHOW_CURSOR + BRACKETED_PASTE_OFF)

    def bell(self) -> None:
        self._write(BELL)

    def log(self, message: str | Text) -> None:
        """History line with a dim timestamp prefix."""
        stamp = self._clock().strftime("%H:%M:%S.%f")[:-3]
        self.write_history(Text.assemble((f"[{stamp}] ", "dim"), _as_text(message)))

    def info(self, message: str | Text) -> None:
        self.write_history(_as_text(message))

    def write_history(self, renderable: RenderableType) -> None:
        self.write_raw(self._render_renderable(renderable))

    def write_raw(self, text: str) -> None:
        """Append pre-rendered text above the sticky region."""
        if not text.endswith("\n"):
            text += "\n"
        text = text.replace("\r\n", "\n").replace("\n", NEWLINE)
        if self._paused is not None:
            self._paused.history.append(text)
            return
        columns = self.columns()
        out = self._erase(columns) + text
        self._state = RenderState()
        if self._sticky is not None:
            out += self._paint(self._sticky, columns)
        self._write(out)

    def render(
        self,
        status: StatusLineBuilder,
        editor: EditorState,
        *,
        prompt: str = DEFAULT_PROMPT,
        hide_cursor: bool = False,
    ) -> None:
        """Repaint the sticky region (deferred while a resize is settling)."""
        self._sticky = compose_sticky(status, editor, prompt=prompt, hide_cursor=hide_cursor)
        if self._paused is not None:
            return
        columns = self.columns()
        self._write(self._erase(columns) + self._paint(self._sticky, columns))

    def on_resize(self) -> None:
        """Pause painting and repaint once the resize burst has settled."""
        loop = asyncio.get_running_loop()
        if self._paused is None:
            self._paused = _Paused()
        elif self._paused.handle is not None:
            self._paused.handle.cancel()
        self._paused.handle = loop.call_later(self._resize_debounce, self._resume)

    def _resume(self) -> None:
        paused, self._paused = self._paused, None
        if paused is None:
            return
        columns = self.columns()
        log_event(logger, "renderer.resized", level=logging.DEBUG, columns=columns, buffered=len(paused.history))
        out = self._erase(columns) + "".join(paused.history)
        self._state = RenderState()
        if self._sticky is not None:
            out += self._paint(self._sticky, columns)
        self._write(out)

    def _erase(self, columns: int) -> str:
        if not self._state.painted:
            return ""
        return cursor_up(self._state.cursor_row(columns)) + "\r" + CLEAR_DOWN

    def _paint(self, sticky: StickyContent, columns: int) -> str:
        state = RenderState(sticky.widths, sticky.cursor_line, sticky.cursor_col)
        out = CLEAR_DOWN + NEWLINE.join(sticky.lines)
        out += cursor_up(state.cursor_lines_from_bottom(columns))
        out += cursor_to_column(state.cursor_screen_col(columns))
        out += HIDE_CURSOR if sticky.hide_cursor else SHOW_CURSOR
        self._state = state
        return out

    def _render_renderable(self, renderable: RenderableType) -> str:
        self._buffer.seek(0)
        self._buffer.truncate(0)
        self._console.width = self.columns()
        self._console.print(renderable, end="\n")
        return self._buffer.getvalue()

    def _write(self, data: str) -> None:
        if not data:
            return
        self._stream.write(data)
        self._stream.flush()


def _as_text(message: str | Text) -> Text:
    if isinstance(message, Text):
        return message
    if "\x1b" in message:
        return Text.from_ansi(message)
    return Text(message)
