"""Translate raw terminal input into semantic key actions.

prompt_toolkit does the byte-level VT100 parsing; this module maps its
``KeyPress`` objects onto the closed set of actions the session understands.
Enter and "send" share a byte in most terminals, so sending requires one of
the alternate encodings in ``SEND_SEQUENCES`` (or Alt+Enter).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Literal

from prompt_toolkit.input import Input, create_input  # type: ignore
from prompt_toolkit.input.ansi_escape_sequences import ANSI_SEQUENCES  # type: ignore
from prompt_toolkit.key_binding.key_processor import KeyPress  # type: ignore
from prompt_toolkit.keys import Keys  # type: ignore

from tollgate.log_utils import log_event

logger = logging.getLogger(__name__)

KeyKind = Literal[
    "char",
    "enter",
    "send",
    "backspace",
    "delete",
    "word_backspace",
    "word_delete",
    "left",
    "right",
    "up",
    "down",
    "home",
    "end",
    "buffer_start",
    "buffer_end",
    "word_left",
    "word_right",
    "interrupt",
    "eof",
    "escape",
    "unknown",
]

# Ctrl+Enter as emitted by kitty (CSI u) and by xterm with modifyOtherKeys.
SEND_SEQUENCES = frozenset({"\x1b[13;5u", "\x1b[27;5;13~"})
WORD_BACKSPACE_SEQUENCES = frozenset({"\x1b[127;5u"})

# CSI u sequences prompt_toolkit does not know; the raw data survives on the KeyPress.
_EXTENDED_SEQUENCES = {
    "\x1b[13;5u": Keys.ControlM,
    "\x1b[127;5u": Keys.ControlH,
}

_NAMED_KEYS: dict[str, KeyKind] = {
    Keys.Left: "left",
    Keys.Right: "right",
    Keys.Up: "up",
    Keys.Down: "down",
    Keys.Home: "home",
    Keys.End: "end",
    Keys.ControlHome: "buffer_start",
    Keys.ControlEnd: "buffer_end",
    Keys.ControlLeft: "word_left",
    Keys.ControlRight: "word_right",
    Keys.Delete: "delete",
    Keys.ControlDelete: "word_delete",
    Keys.ControlW: "word_backspace",
    Keys.ControlC: "interrupt",
    Keys.ControlD: "eof",
    Keys.ControlJ: "enter",
    Keys.Escape: "escape",
}

# Keys that combine with a preceding ESC in the same read (Alt/Meta chords).
_META_CHORDS: dict[str, KeyKind] = {
    "d": "word_delete",
    Keys.ControlH: "word_backspace",
    Keys.ControlM: "send",
}

_IGNORED_KEYS = frozenset({Keys.CPRResponse, Keys.Vt100MouseEvent, Keys.Ignore})


@dataclass(frozen=True)
class KeyAction:
    kind: KeyKind
    value: str = ""

    @property
    def raw(self) -> str:
        """Original bytes for ``unknown`` actions."""
        return self.value


def install_extended_sequences() -> None:
    for sequence, key in _EXTENDED_SEQUENCES.items():
        ANSI_SEQUENCES.setdefault(sequence, key)


def _is_printable(text: str) -> bool:
    return len(text) == 1 and text >= " " and text != "\x7f"


def _paste_actions(data: str) -> list[KeyAction]:
    actions: list[KeyAction] = []
    for ch in data.replace("\r\n", "\n").replace("\r", "\n"):
        if ch == "\n":
            actions.append(KeyAction("enter"))
        elif ch == "\t":
            actions.extend(KeyAction("char", " ") for _ in range(4))
        elif _is_printable(ch):
            actions.append(KeyAction("char", ch))
        else:
            actions.append(KeyAction("unknown", ch))
    return actions


def translate_key(press: KeyPress) -> list[KeyAction]:
    """Translate a single key press. Paste payloads expand to one action per character."""
    key, data = press.key, press.data

    if key == Keys.BracketedPaste:
        return _paste_actions(data)
    if key in _IGNORED_KEYS:
        return []
    if key == Keys.ControlM:
        return [KeyAction("send" if data in SEND_SEQUENCES else "enter")]
    if key == Keys.ControlH:
        return [KeyAction("word_backspace" if data in WORD_BACKSPACE_SEQUENCES else "backspace")]

    kind = _NAMED_KEYS.get(key)
    if kind is not None:
        return [KeyAction(kind)]
    if not isinstance(key, Keys) and _is_printable(key):
        return [KeyAction("char", key)]
    return [KeyAction("unknown", data or str(key))]


def translate_key_presses(presses: Iterable[KeyPress]) -> list[KeyAction]:
    """Translate one read's worth of key presses.

    An ESC immediately followed by another key in the same read is a meta
    prefix: Alt+D deletes a word, Alt+Backspace deletes a word backwards,
    Alt+Enter sends, and any other pairing yields the second key alone (a
    doubled ESC is one escape). A trailing ESC is a real escape.
    """
    pending = list(presses)
    actions: list[KeyAction] = []
    index = 0
    while index < len(pending):
        press = pending[index]
        following = pending[index + 1] if index + 1 < len(pending) else None
        if press.key == Keys.Escape and following is not None:
            chord = _META_CHORDS.get(following.key)
            if chord is not None:
                actions.append(KeyAction(chord))
            else:
                actions.extend(translate_key(following))
            index += 2
            continue
        actions.extend(translate_key(press))
        index += 1
    return actions


class KeyReader:
    """Feed translated key actions from a raw-mode terminal into a handler.

    The prompt_toolkit parser holds a lone ESC until it knows no longer
    sequence follows, so every read schedules a short flush.
    """

    def __init__(
        self,
        handler: Callable[[KeyAction], None],
        *,
        terminal_input: Input | None = None,
        escape_timeout: float = 0.05,
    ) -> None:
        install_extended_sequences()
        self._handler = handler
        self._input = terminal_input or create_input(always_prefer_tty=True)
        self._escape_timeout = escape_timeout
        self._flush_handle: asyncio.TimerHandle | None = None

    @contextlib.contextmanager
    def attached(self) -> Iterator[None]:
        with self._input.raw_mode(), self._input.attach(self._on_input_ready):
            try:
                yield
            finally:
                if self._flush_handle is not None:
                    self._flush_handle.cancel()
                    self._flush_handle = None

    def _on_input_ready(self) -> None:
        self._dispatch(self._input.read_keys())
        if self._input.closed:
            self._handler(KeyAction("eof"))
            return
        if self._flush_handle is not None:
            self._flush_handle.cancel()
        loop = asyncio.get_running_loop()
        self._flush_handle = loop.call_later(self._escape_timeout, self._flush)

    def _flush(self) -> None:
        self._flush_handle = None
        self._dispatch(self._input.flush_keys())

    def _dispatch(self, presses: list[KeyPress]) -> None:
        for action in translate_key_presses(presses):
            if action.kind == "unknown":
                log_event(logger, "keys.unknown", level=logging.DEBUG, raw=action.raw)
            self._handler(action)


install_extended_sequences()
