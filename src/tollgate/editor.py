"""Immutable multi-line text buffer with a cursor.

Every operation takes an :class:`EditorState` and returns a new one; nothing
here performs I/O. Operations at the edges of the buffer return the state
unchanged instead of raising.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# A word is a run of non-space characters plus the spaces next to it.
_WORD_FORWARD = re.compile(r"\s*\S+\s*|\s+")
_WORD_BACKWARD = re.compile(r"(?:\S+\s*|\s+)$")


@dataclass(frozen=True)
class Cursor:
    row: int = 0
    col: int = 0


@dataclass(frozen=True)
class EditorState:
    lines: tuple[str, ...] = ("",)
    cursor: Cursor = field(default_factory=Cursor)

    @property
    def current_line(self) -> str:
        return self.lines[self.cursor.row]

    @property
    def is_empty(self) -> bool:
        return self.lines == ("",)


def create_editor() -> EditorState:
    return EditorState()


def get_text(state: EditorState) -> str:
    return "\n".join(state.lines)


def clear(_state: EditorState | None = None) -> EditorState:
    return create_editor()


def _replace_line(state: EditorState, text: str, col: int) -> EditorState:
    row = state.cursor.row
    lines = state.lines[:row] + (text,) + state.lines[row + 1 :]
    return EditorState(lines, Cursor(row, col))


def insert_char(state: EditorState, text: str) -> EditorState:
    """Insert ``text`` at the cursor; embedded newlines split the line."""
    if not text:
        return state
    if "\n" in text:
        for index, chunk in enumerate(text.split("\n")):
            if index:
                state = insert_newline(state)
            state = insert_char(state, chunk)
        return state
    line = state.current_line
    col = state.cursor.col
    return _replace_line(state, line[:col] + text + line[col:], col + len(text))


def insert_newline(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    line = state.lines[row]
    lines = state.lines[:row] + (line[:col], line[col:]) + state.lines[row + 1 :]
    return EditorState(lines, Cursor(row + 1, 0))


def backspace(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    if col > 0:
        line = state.lines[row]
        return _replace_line(state, line[: col - 1] + line[col:], col - 1)
    if row > 0:
        previous = state.lines[row - 1]
        lines = state.lines[: row - 1] + (previous + state.lines[row],) + state.lines[row + 1 :]
        return EditorState(lines, Cursor(row - 1, len(previous)))
    return state


def delete_char(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    line = state.lines[row]
    if col < len(line):
        return _replace_line(state, line[:col] + line[col + 1 :], col)
    if row < len(state.lines) - 1:
        lines = state.lines[:row] + (line + state.lines[row + 1],) + state.lines[row + 2 :]
        return EditorState(lines, state.cursor)
    return state


def delete_word(state: EditorState) -> EditorState:
    """Delete the word after the cursor, joining the next line at end of line."""
    row, col = state.cursor.row, state.cursor.col
    line = state.lines[row]
    if col >= len(line):
        return delete_char(state)
    match = _WORD_FORWARD.match(line, col)
    if match is None:
        return state
    return _replace_line(state, line[:col] + line[match.end() :], col)


def delete_word_backward(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    if col == 0:
        return backspace(state)
    line = state.lines[row]
    match = _WORD_BACKWARD.search(line[:col])
    if match is None:
        return state
    start = match.start()
    return _replace_line(state, line[:start] + line[col:], start)


def move_left(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    if col > 0:
        return EditorState(state.lines, Cursor(row, col - 1))
    if row > 0:
        return EditorState(state.lines, Cursor(row - 1, len(state.lines[row - 1])))
    return state


def move_right(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    if col < len(state.lines[row]):
        return EditorState(state.lines, Cursor(row, col + 1))
    if row < len(state.lines) - 1:
        return EditorState(state.lines, Cursor(row + 1, 0))
    return state


def move_up(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    if row == 0:
        return state
    return EditorState(state.lines, Cursor(row - 1, min(col, len(state.lines[row - 1]))))


def move_down(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    if row >= len(state.lines) - 1:
        return state
    return EditorState(state.lines, Cursor(row + 1, min(col, len(state.lines[row + 1]))))


def move_home(state: EditorState) -> EditorState:
    return EditorState(state.lines, Cursor(state.cursor.row, 0))


def move_end(state: EditorState) -> EditorState:
    return EditorState(state.lines, Cursor(state.cursor.row, len(state.current_line)))


def move_buffer_start(state: EditorState) -> EditorState:
    return EditorState(state.lines, Cursor(0, 0))


def move_buffer_end(state: EditorState) -> EditorState:
    last = len(state.lines) - 1
    return EditorState(state.lines, Cursor(last, len(state.lines[last])))


def move_word_left(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    if col == 0:
        return move_left(state)
    match = _WORD_BACKWARD.search(state.lines[row][:col])
    if match is None:
        return state
    return EditorState(state.lines, Cursor(row, match.start()))


def move_word_right(state: EditorState) -> EditorState:
    row, col = state.cursor.row, state.cursor.col
    line = state.lines[row]
    if col >= len(line):
        return move_right(state)
    match = _WORD_FORWARD.match(line, col)
    if match is None:
        return state
    return EditorState(state.lines, Cursor(row, match.end()))
