"""Tool-call approval queue.

Approvals are announced by the backend (``enqueue``) and asked for by the
backend (``resolve``) on independent timelines, so the user may decide an
item before or after the backend starts waiting on it. Both cases live in one
map from tool call id to either a stored decision or a waiting future.

Any queued item may be displayed (left/right) and decided, so decisions can
complete in a different order than the tool calls were issued.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Literal

from tollgate.keys import KeyAction
from tollgate.log_utils import log_event
from tollgate.phase import AppState

logger = logging.getLogger(__name__)

DecisionReason = Literal["user", "timeout", "cancelled", "auto"]

DEFAULT_TIMEOUT = 30
DEFAULT_EXTENDED_TIMEOUT = 120
DEFAULT_EXTENDED_TOOLS = ("ExitPlanMode", "EnterPlanMode")


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: DecisionReason = "user"

    @property
    def cancelled(self) -> bool:
        return self.reason == "cancelled"

    @property
    def timed_out(self) -> bool:
        return self.reason == "timeout"


CANCELLED = PermissionDecision(False, "cancelled")


@dataclass
class PendingApproval:
    id: str
    tool_name: str
    label: str
    timeout: int
    remaining: int
    raw_input: dict[str, Any] = field(default_factory=dict)
    kind: str | None = None


@dataclass(frozen=True)
class _Decided:
    decision: PermissionDecision


@dataclass(frozen=True)
class _Waiting:
    future: asyncio.Future[PermissionDecision]
    raw_input: dict[str, Any]


def describe_tool(tool_name: str, title: str | None, raw_input: dict[str, Any] | None) -> str:
    if title and title != tool_name:
        return title
    raw_input = raw_input or {}
    for key in ("description", "command"):
        value = raw_input.get(key)
        if isinstance(value, str) and value.strip():
            return f"{tool_name}: {value.strip()}"
    return tool_name


class PermissionManager:
    """Queue of pending approvals with a per-item countdown.

    Only the displayed item counts down; an item keeps its remaining time
    while another one is displayed.
    """

    def __init__(
        self,
        app_state: AppState,
        *,
        notify: Callable[[str], None] | None = None,
        on_drained: Callable[[], None] | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        extended_timeout: int = DEFAULT_EXTENDED_TIMEOUT,
        extended_tools: Iterable[str] = DEFAULT_EXTENDED_TOOLS,
        tick_interval: float = 1.0,
    ) -> None:
        self._app_state = app_state
        self._notify = notify or (lambda _message: None)
        # Called when the queue empties while an approval is on screen.
        self._on_drained = on_drained or app_state.thinking
        self._timeout = timeout
        self._extended_timeout = extended_timeout
        self._extended_tools = frozenset(extended_tools)
        self._tick_interval = tick_interval
        self._queue: list[PendingApproval] = []
        self._index = 0
        self._entries: dict[str, _Decided | _Waiting] = {}
        self._countdown: asyncio.TimerHandle | None = None

    @property
    def has_active(self) -> bool:
        return bool(self._queue)

    @property
    def items(self) -> tuple[PendingApproval, ...]:
        return tuple(self._queue)

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def current(self) -> PendingApproval | None:
        if not self._queue:
            return None
        return self._queue[self._index]

    def timeout_for(self, tool_name: str, kind: str | None = None) -> int:
        if kind == "switch_mode" or tool_name in self._extended_tools:
            return self._extended_timeout
        return self._timeout

    def enqueue(
        self,
        tool_call_id: str,
        tool_name: str,
        raw_input: dict[str, Any] | None = None,
        *,
        title: str | None = None,
        kind: str | None = None,
    ) -> PendingApproval | None:
        """Append an approval request; the first one is displayed immediately."""
        if self._find(tool_call_id) >= 0 or isinstance(self._entries.get(tool_call_id), _Decided):
            return None
        timeout = self.timeout_for(tool_name, kind)
        item = PendingApproval(
            id=tool_call_id,
            tool_name=tool_name,
            label=describe_tool(tool_name, title, raw_input),
            timeout=timeout,
            remaining=timeout,
            raw_input=dict(raw_input or {}),
            kind=kind,
        )
        self._queue.append(item)
        log_event(logger, "permission.enqueued", tool_call_id=tool_call_id, tool=tool_name, timeout=timeout)
        if len(self._queue) == 1:
            self._index = 0
            self._show_current()
        else:
            self._publish(self._queue[self._index])
        return item

    def handle_result(self, tool_call_id: str) -> None:
        """The tool finished; drop whatever is still tracked for it."""
        entry = self._entries.pop(tool_call_id, None)
        if isinstance(entry, _Waiting) and not entry.future.done():
            entry.future.set_result(CANCELLED)
        self._remove_at(self._find(tool_call_id))

    async def resolve(
        self,
        tool_call_id: str,
        raw_input: dict[str, Any] | None = None,
        cancel: asyncio.Event | None = None,
        *,
        tool_name: str | None = None,
        title: str | None = None,
        kind: str | None = None,
    ) -> PermissionDecision:
        """Wait for the decision on ``tool_call_id``.

        Returns at once when the user already decided. Otherwise suspends
        until the user decides, the countdown expires or ``cancel`` is set.
        """
        entry = self._entries.get(tool_call_id)
        if isinstance(entry, _Decided):
            del self._entries[tool_call_id]
            log_event(logger, "permission.predecided", tool_call_id=tool_call_id, allowed=entry.decision.allowed)
            return entry.decision
        if isinstance(entry, _Waiting):
            return await asyncio.shield(entry.future)
        if cancel is not None and cancel.is_set():
            self.cancel(tool_call_id)
            return CANCELLED

        if self._find(tool_call_id) < 0:
            self.enqueue(tool_call_id, tool_name or title or tool_call_id, raw_input, title=title, kind=kind)

        future: asyncio.Future[PermissionDecision] = asyncio.get_running_loop().create_future()
        self._entries[tool_call_id] = _Waiting(future, dict(raw_input or {}))
        watcher = asyncio.create_task(self._watch_cancel(tool_call_id, cancel)) if cancel is not None else None
        try:
            return await future
        except asyncio.CancelledError:
            self._discard(tool_call_id)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

    def handle_key(self, action: KeyAction) -> bool:
        """Handle y/n and left/right while approvals are pending.

        All other keys are swallowed so stray typing cannot reach the editor.
        """
        if not self._queue:
            return False
        if action.kind == "char" and action.value in ("y", "Y"):
            self._decide(self._index, PermissionDecision(True, "user"))
        elif action.kind == "char" and action.value in ("n", "N"):
            self._decide(self._index, PermissionDecision(False, "user"))
        elif action.kind == "left":
            if self._index > 0:
                self._index -= 1
                self._show_current()
        elif action.kind == "right":
            if self._index < len(self._queue) - 1:
                self._index += 1
                self._show_current()
        return True

    def cancel(self, tool_call_id: str) -> bool:
        """Resolve ``tool_call_id`` as cancelled. Unknown ids are ignored."""
        found = False
        entry = self._entries.pop(tool_call_id, None)
        if isinstance(entry, _Waiting) and not entry.future.done():
            entry.future.set_result(CANCELLED)
            found = True
        index = self._find(tool_call_id)
        if index >= 0:
            self._remove_at(index)
            found = True
        if found:
            log_event(logger, "permission.cancelled", tool_call_id=tool_call_id)
            self._notify("Permission cancelled by agent")
        return found

    def cancel_all(self) -> None:
        self._stop_countdown()
        for entry in self._entries.values():
            if isinstance(entry, _Waiting) and not entry.future.done():
                entry.future.set_result(CANCELLED)
        if self._queue or self._entries:
            log_event(logger, "permission.cancel_all", queued=len(self._queue), tracked=len(self._entries))
        self._entries.clear()
        self._queue.clear()
        self._index = 0
        if self._app_state.phase.name == "prompting":
            self._on_drained()

    async def _watch_cancel(self, tool_call_id: str, cancel: asyncio.Event) -> None:
        await cancel.wait()
        self.cancel(tool_call_id)

    def _discard(self, tool_call_id: str) -> None:
        entry = self._entries.get(tool_call_id)
        if isinstance(entry, _Waiting):
            del self._entries[tool_call_id]
        self._remove_at(self._find(tool_call_id))

    def _find(self, tool_call_id: str) -> int:
        for index, item in enumerate(self._queue):
            if item.id == tool_call_id:
                return index
        return -1

    def _decide(self, index: int, decision: PermissionDecision) -> None:
        if not 0 <= index < len(self._queue):
            return
        item = self._queue[index]
        if decision.allowed:
            outcome = "allowed"
        else:
            outcome = "timed out" if decision.timed_out else "denied"
        self._notify(f"Allow? {item.label}: {outcome}")
        log_event(logger, "permission.decided", tool_call_id=item.id, tool=item.tool_name, outcome=outcome)

        entry = self._entries.pop(item.id, None)
        if isinstance(entry, _Waiting):
            if not entry.future.done():
                entry.future.set_result(decision)
        else:
            self._entries[item.id] = _Decided(decision)
        self._remove_at(index)

    def _remove_at(self, index: int) -> None:
        if not 0 <= index < len(self._queue):
            return
        was_current = index == self._index
        self._queue.pop(index)
        if was_current:
            # Back to the oldest pending request.
            self._index = 0
        elif index < self._index:
            self._index -= 1

        if not self._queue:
            self._stop_countdown()
            self._index = 0
            if self._app_state.phase.name == "prompting":
                self._on_drained()
        elif was_current:
            self._show_current()
        else:
            self._publish(self._queue[self._index])

    def _label(self, item: PendingApproval) -> str:
        prefix = f"[{self._index + 1}/{len(self._queue)}] " if len(self._queue) > 1 else ""
        return f"{prefix}Allow? {item.label} (y/n)"

    def _publish(self, item: PendingApproval) -> None:
        self._app_state.prompting(self._label(item), item.remaining)

    def _show_current(self) -> None:
        self._stop_countdown()
        item = self.current
        if item is None:
            return
        self._publish(item)
        self._countdown = asyncio.get_running_loop().call_later(self._tick_interval, self._countdown_tick)

    def _countdown_tick(self) -> None:
        self._countdown = None
        item = self.current
        if item is None:
            return
        item.remaining -= 1
        if item.remaining <= 0:
            self._decide(self._index, PermissionDecision(False, "timeout"))
            return
        self._publish(item)
        self._countdown = asyncio.get_running_loop().call_later(self._tick_interval, self._countdown_tick)

    def _stop_countdown(self) -> None:
        if self._countdown is not None:
            self._countdown.cancel()
            self._countdown = None
