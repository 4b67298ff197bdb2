"""Interactive session: routes keys, backend events and approvals.

All state changes happen on the event loop thread. Backend events are handled
in arrival order; approval queue changes are made before anything is drawn.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, Callable

from tollgate import editor as ed
from tollgate.backend import Backend, SessionSwitchError
from tollgate.config import CliConfig
from tollgate.display import (
    LineBuffer,
    format_agent_text,
    format_error,
    format_file_edit_diff,
    format_mode_update,
    format_plan,
    format_thought,
    format_tool,
    format_user_input,
)
from tollgate.editor import EditorState
from tollgate.events import (
    AgentText,
    AgentThought,
    BackendEvent,
    FileEdited,
    ModeChanged,
    PlanUpdated,
    ToolCallFinished,
    ToolCallRequested,
    TurnComplete,
)
from tollgate.keys import KeyAction, KeyReader
from tollgate.log_utils import log_context, log_event
from tollgate.permissions import PermissionDecision, PermissionManager
from tollgate.phase import AppState, Phase
from tollgate.policy import ApprovalPolicy
from tollgate.prompts import AskQuestion, PromptManager, QuestionOutcome
from tollgate.renderer import TerminalRenderer
from tollgate.slash import handle_slash_command
from tollgate.status_line import build_status_line, is_drowning
from tollgate.store import AuditWriteError, AuditWriter, SessionStore

logger = logging.getLogger(__name__)

IDLE_PROMPT = "💬 "
BUSY_PROMPT = "⏳ "
OTHER_PROMPT = "> "

_EDIT_ACTIONS: dict[str, Callable[[EditorState], EditorState]] = {
    "enter": ed.insert_newline,
    "backspace": ed.backspace,
    "delete": ed.delete_char,
    "word_delete": ed.delete_word,
    "word_backspace": ed.delete_word_backward,
    "left": ed.move_left,
    "right": ed.move_right,
    "up": ed.move_up,
    "down": ed.move_down,
    "home": ed.move_home,
    "end": ed.move_end,
    "buffer_start": ed.move_buffer_start,
    "buffer_end": ed.move_buffer_end,
    "word_left": ed.move_word_left,
    "word_right": ed.move_word_right,
}


class InteractiveSession:
    """Owns the editor, the approval managers and the renderer for one run."""

    def __init__(
        self,
        renderer: TerminalRenderer,
        *,
        config: CliConfig | None = None,
        cwd: Path | str | None = None,
        backend: Backend | None = None,
        store: SessionStore | None = None,
        audit: AuditWriter | None = None,
        phase_tick: float = 0.5,
        countdown_tick: float = 1.0,
    ) -> None:
        self.config = config or CliConfig()
        self.cwd = Path(cwd or Path.cwd())
        self.renderer = renderer
        self.app_state = AppState(tick_interval=phase_tick)
        self.permissions = PermissionManager(
            self.app_state,
            notify=renderer.log,
            on_drained=self._approvals_drained,
            timeout=self.config.permission_timeout,
            extended_timeout=self.config.extended_permission_timeout,
            extended_tools=self.config.extended_tools,
            tick_interval=countdown_tick,
        )
        self.prompts = PromptManager(self.app_state, notify=renderer.log)
        self.policy = ApprovalPolicy(self.config, self.cwd)
        self.editor: EditorState = ed.create_editor()
        self._backend = backend
        self._store = store
        self._audit = audit
        self._commands: Callable[[], dict[str, str]] = dict
        self._saved_editor: EditorState | None = None
        self._turn_task: asyncio.Task[None] | None = None
        self._turn_active = False
        self._aborted = False
        self._quit = asyncio.Event()
        self._fatal: BaseException | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._redraw_handle: asyncio.Handle | None = None
        self._drowning = False
        self._auto_approved: set[str] = set()
        self._text = LineBuffer()
        self._thoughts = LineBuffer()
        self._unsubscribe = self.app_state.subscribe(self._on_phase)

    # -- wiring -------------------------------------------------------------

    def attach_backend(self, backend: Backend, *, commands: Callable[[], dict[str, str]] | None = None) -> None:
        self._backend = backend
        if commands is not None:
            self._commands = commands

    @property
    def session_id(self) -> str | None:
        return self._backend.session_id if self._backend is not None else None

    @property
    def agent_commands(self) -> dict[str, str]:
        return self._commands()

    @property
    def turn_active(self) -> bool:
        return self._turn_active

    @property
    def saved_editor(self) -> EditorState | None:
        return self._saved_editor

    @property
    def quit_requested(self) -> bool:
        return self._quit.is_set()

    def remember_session(self, session_id: str) -> None:
        if self._store is not None:
            self._store.save(self.cwd, session_id)

    def request_quit(self) -> None:
        self._quit.set()

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        self.renderer.start()
        self.redraw()

    async def run(self, reader: KeyReader) -> None:
        """Process keys until the user quits, then restore the terminal."""
        self.start()
        try:
            with reader.attached():
                await self._quit.wait()
        finally:
            await self.shutdown()
        if self._fatal is not None:
            raise self._fatal

    async def shutdown(self) -> None:
        self.permissions.cancel_all()
        self.prompts.cancel_all()
        task = self._turn_task
        if task is not None and not task.done():
            if self._backend is not None:
                with contextlib.suppress(Exception):
                    await asyncio.wait_for(self._backend.cancel(), timeout=1.0)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for background in list(self._background):
            background.cancel()
        if self._redraw_handle is not None:
            self._redraw_handle.cancel()
            self._redraw_handle = None
        self._unsubscribe()
        self.app_state.close()
        self.renderer.close()

    # -- drawing ------------------------------------------------------------

    def redraw(self) -> None:
        phase = self.app_state.phase
        status = build_status_line(
            phase,
            self.app_state.elapsed_seconds,
            drowning_threshold=self.config.drowning_threshold,
            queue_size=len(self.permissions.items),
        )
        other = self.prompts.is_other_mode
        busy = self.app_state.is_busy
        prompt = OTHER_PROMPT if other else BUSY_PROMPT if busy else IDLE_PROMPT
        self.renderer.render(status, self.editor, prompt=prompt, hide_cursor=busy and not other)

    def schedule_redraw(self) -> None:
        if self._redraw_handle is not None:
            return
        self._redraw_handle = asyncio.get_running_loop().call_soon(self._scheduled_redraw)

    def _scheduled_redraw(self) -> None:
        self._redraw_handle = None
        self.redraw()

    def _on_phase(self, phase: Phase) -> None:
        if is_drowning(phase, self.config.drowning_threshold):
            if not self._drowning and self.config.drowning_bell:
                self.renderer.bell()
            self._drowning = True
        else:
            self._drowning = False
        self.redraw()

    # -- keys ---------------------------------------------------------------

    def handle_key(self, action: KeyAction) -> None:
        if action.kind == "interrupt":
            log_event(logger, "session.interrupt")
            self.request_quit()
            return
        if action.kind == "escape":
            self._handle_escape()
            return

        if self.permissions.handle_key(action):
            return

        if self.prompts.handle_key(action):
            if self.prompts.is_other_mode and self._saved_editor is None:
                self._saved_editor = self.editor
                self.editor = ed.create_editor()
                self.schedule_redraw()
            return

        other = self.prompts.is_other_mode
        if self.app_state.is_busy and not other:
            return

        if action.kind == "eof":
            if not other:
                self.renderer.info("Goodbye.")
                self.request_quit()
            return
        if action.kind == "send":
            if other:
                self._submit_other()
            else:
                self.submit()
            return
        if action.kind == "char":
            self.editor = ed.insert_char(self.editor, action.value)
        elif action.kind in _EDIT_ACTIONS:
            self.editor = _EDIT_ACTIONS[action.kind](self.editor)
        else:
            return
        self.schedule_redraw()

    def _handle_escape(self) -> None:
        if self.prompts.is_other_mode:
            self.prompts.cancel_other()
            self._restore_editor()
            self.schedule_redraw()
            return
        if self._turn_active:
            self.abort()

    def _submit_other(self) -> None:
        text = ed.get_text(self.editor).strip()
        if text:
            self._restore_editor()
            self.prompts.submit_other(text)
        self.schedule_redraw()

    def _restore_editor(self) -> None:
        if self._saved_editor is not None:
            self.editor = self._saved_editor
            self._saved_editor = None

    # -- turns --------------------------------------------------------------

    def submit(self) -> None:
        text = ed.get_text(self.editor)
        if not text.strip():
            return
        self.editor = ed.clear(self.editor)
        self.renderer.log(format_user_input(text))
        self._turn_task = self._spawn(self._process(text))
        self.schedule_redraw()

    async def _process(self, text: str) -> None:
        if await handle_slash_command(text, self):
            self.redraw()
            return
        await self.run_turn(text)

    async def run_turn(self, text: str) -> None:
        if self._backend is None:
            self.renderer.log(format_error("no agent connected"))
            return
        loop = asyncio.get_running_loop()
        started = loop.time()
        self._aborted = False
        self._turn_active = True
        self.renderer.log("Sending query...")
        self.app_state.sending()
        try:
            with log_context(session_id=self.session_id):
                result = await self._backend.send(text)
            self.on_backend_event(result)
        except AuditWriteError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Prompt failed: %s", exc)
            self.renderer.log("Aborted" if self._aborted else format_error(str(exc)))
        finally:
            self._turn_active = False
            self._flush_streams()
            self.permissions.cancel_all()
            self.prompts.cancel_all()
            self._restore_editor()
            self._auto_approved.clear()
            self.app_state.idle()
            if self.session_id:
                self.remember_session(self.session_id)
            self.renderer.log(f"Done after {int(loop.time() - started)}s")
            self.redraw()

    def abort(self) -> None:
        """Cancel the in-flight turn and everything waiting on the user."""
        self.renderer.log("Aborting query...")
        log_event(logger, "session.abort", queued=len(self.permissions.items))
        self._aborted = True
        self.permissions.cancel_all()
        self.prompts.cancel_all()
        self._restore_editor()
        if self._backend is not None:
            self._spawn(self._backend.cancel())
        self.schedule_redraw()

    async def switch_session(self, session_id: str) -> bool:
        """Load another agent session in place. Replayed history is shown as it arrives."""
        if self._backend is None:
            self.renderer.log(format_error("no agent connected"))
            return False
        if self._turn_active:
            self.renderer.log(format_error("cannot switch sessions while a query is running"))
            return False
        self.renderer.log(f"Loading session {session_id}...")
        self.app_state.sending()
        try:
            await self._backend.load_session(session_id)
        except SessionSwitchError as exc:
            self.remember_session(session_id)
            self.renderer.info(f"{exc}; session {session_id} will be resumed on next start")
            return False
        except Exception as exc:  # noqa: BLE001
            logger.error("Session load failed: %s", exc)
            self.renderer.log(format_error(f"failed to load session {session_id}: {exc}"))
            return False
        finally:
            self._flush_streams()
            self.app_state.idle()
            self.redraw()
        self.remember_session(session_id)
        self.renderer.info(f"Switched to session {session_id}")
        return True

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, AuditWriteError):
            self._fail(exc)
            return
        logger.error("Background task failed: %s", exc)
        self.renderer.log(format_error(str(exc)))

    def _fail(self, exc: BaseException) -> None:
        log_event(logger, "session.fatal", level=logging.ERROR, error=str(exc))
        self._fatal = exc
        self.request_quit()

    # -- backend events -----------------------------------------------------

    def on_backend_event(self, event: BackendEvent) -> None:
        if self._audit is not None:
            try:
                self._audit.write(event, session_id=self.session_id)
            except AuditWriteError as exc:
                self._fail(exc)
                raise
        if self.app_state.phase.name == "sending":
            self.app_state.thinking()

        if isinstance(event, AgentText):
            for line in self._text.feed(event.text):
                self.renderer.info(format_agent_text(line))
        elif isinstance(event, AgentThought):
            for line in self._thoughts.feed(event.text):
                self.renderer.info(format_thought(line))
        else:
            self._flush_streams()
            self._handle_structured(event)
        self.schedule_redraw()

    def _handle_structured(self, event: BackendEvent) -> None:
        if isinstance(event, ToolCallRequested):
            self._on_tool_requested(event)
        elif isinstance(event, ToolCallFinished):
            self.permissions.handle_result(event.tool_call_id)
            self._auto_approved.discard(event.tool_call_id)
            status = "completed" if event.success else "failed"
            self.renderer.log(format_tool(status, event.summary or "done"))
        elif isinstance(event, PlanUpdated):
            self.renderer.write_history(format_plan(event.entries))
        elif isinstance(event, FileEdited):
            self.renderer.write_history(format_file_edit_diff(event.path, event.old_text, event.new_text))
        elif isinstance(event, ModeChanged):
            self.renderer.info(format_mode_update(event.mode))
        elif isinstance(event, TurnComplete):
            self.renderer.log(f"result: {event.stop_reason or 'done'}")

    def _approvals_drained(self) -> None:
        if not self.prompts.resume():
            self.app_state.thinking()

    def _on_tool_requested(self, event: ToolCallRequested) -> None:
        label = event.title or event.name
        command = event.raw_input.get("command")
        if isinstance(command, str) and command and command not in label:
            label = f"{label} cmd=`{command}`"
        auto_reason = None
        if event.needs_approval and not event.raw_input.get("questions"):
            auto_reason = self.policy.auto_approve(event)
            if auto_reason is None and not self._turn_active:
                log_event(logger, "permission.late_request", level=logging.WARNING, tool_call_id=event.tool_call_id)
            elif auto_reason is None:
                self.permissions.enqueue(
                    event.tool_call_id,
                    event.name,
                    event.raw_input,
                    title=event.title,
                    kind=event.kind,
                )
            else:
                self._auto_approved.add(event.tool_call_id)
        self.renderer.log(format_tool("start", label))
        if auto_reason is not None:
            self.renderer.log(f"auto-approved: {event.name} ({auto_reason})")

    def _flush_streams(self) -> None:
        text = self._text.flush()
        if text:
            self.renderer.info(format_agent_text(text))
        thought = self._thoughts.flush()
        if thought:
            self.renderer.info(format_thought(thought))

    # -- approval hook ------------------------------------------------------

    async def approve(self, request: ToolCallRequested, cancel: asyncio.Event) -> PermissionDecision:
        reason = self.policy.auto_approve(request)
        if reason is not None:
            if request.tool_call_id not in self._auto_approved:
                self.renderer.log(f"auto-approved: {request.name} ({reason})")
            self._auto_approved.discard(request.tool_call_id)
            return PermissionDecision(True, "auto")
        if not self._turn_active:
            log_event(logger, "permission.inactive", level=logging.WARNING, tool_call_id=request.tool_call_id)
            self.renderer.log(f"warning: approval requested while no query is active ({request.name}); denying")
            return PermissionDecision(False, "cancelled")
        decision = await self.permissions.resolve(
            request.tool_call_id,
            request.raw_input,
            cancel,
            tool_name=request.name,
            title=request.title,
            kind=request.kind,
        )
        self.schedule_redraw()
        return decision

    async def ask(
        self,
        questions: list[AskQuestion],
        raw_input: dict[str, Any],
        cancel: asyncio.Event,
    ) -> QuestionOutcome:
        if not self._turn_active:
            return QuestionOutcome(answers=None, cancelled=True)
        outcome = await self.prompts.request_question(questions, raw_input, cancel)
        self._restore_editor()
        self.schedule_redraw()
        return outcome
