from __future__ import annotations

import asyncio
import contextlib
import io
from pathlib import Path

import pytest

from tollgate import editor as ed
from tollgate.backend import SessionSwitchError
from tollgate.config import CliConfig
from tollgate.events import AgentText, ToolCallFinished, ToolCallRequested, TurnComplete
from tollgate.keys import KeyAction
from tollgate.permissions import PermissionDecision
from tollgate.prompts import parse_questions
from tollgate.renderer import BRACKETED_PASTE_OFF, BRACKETED_PASTE_ON, SHOW_CURSOR, TerminalRenderer
from tollgate.session import InteractiveSession
from tollgate.store import AuditWriteError, AuditWriter, SessionStore


class FakeBackend:
    def __init__(self, *, block: bool = False, can_load: bool = True) -> None:
        self.session_id = "session-1"
        self.can_load = can_load
        self.loaded: list[str] = []
        self.sent: list[str] = []
        self.cancelled = 0
        self.block = block
        self.release = asyncio.Event()

    async def send(self, text: str) -> TurnComplete:
        self.sent.append(text)
        if self.block:
            await self.release.wait()
        return TurnComplete("end_turn")

    async def cancel(self) -> None:
        self.cancelled += 1
        self.release.set()

    async def load_session(self, session_id: str) -> None:
        if not self.can_load:
            raise SessionSwitchError("agent cannot load sessions")
        self.loaded.append(session_id)
        self.session_id = session_id


class FakeReader:
    @contextlib.contextmanager
    def attached(self):
        yield


def _type(session: InteractiveSession, text: str) -> None:
    for ch in text:
        session.handle_key(KeyAction("char", ch))


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0.01)


def _question():
    return parse_questions([{"question": "Which?", "header": "Q", "options": [{"label": "One"}, {"label": "Two"}]}])


@pytest.mark.asyncio
async def test_submit_sends_text_and_returns_to_idle(
    renderer: TerminalRenderer, screen: io.StringIO, tmp_path: Path
) -> None:
    backend = FakeBackend()
    store = SessionStore(tmp_path / "state")
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend, store=store)

    _type(session, "hello")
    session.handle_key(KeyAction("enter"))
    _type(session, "there")
    session.handle_key(KeyAction("send"))
    await _settle()

    assert backend.sent == ["hello\nthere"]
    assert session.editor.is_empty
    assert session.app_state.phase.name == "idle"
    assert "Done after 0s" in screen.getvalue()
    assert store.load(tmp_path) == "session-1"


@pytest.mark.asyncio
async def test_blank_submit_is_ignored(renderer: TerminalRenderer, tmp_path: Path) -> None:
    backend = FakeBackend()
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    _type(session, "   ")
    session.handle_key(KeyAction("send"))
    await _settle()
    assert backend.sent == []


@pytest.mark.asyncio
async def test_slash_commands_stay_local(renderer: TerminalRenderer, screen: io.StringIO, tmp_path: Path) -> None:
    backend = FakeBackend()
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    _type(session, "/status")
    session.handle_key(KeyAction("send"))
    await _settle()

    assert backend.sent == []
    assert "Phase: idle" in screen.getvalue()


@pytest.mark.asyncio
async def test_editing_keys_are_ignored_while_busy(renderer: TerminalRenderer, tmp_path: Path) -> None:
    backend = FakeBackend(block=True)
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    turn = asyncio.create_task(session.run_turn("work"))
    await asyncio.sleep(0)

    _type(session, "x")
    session.handle_key(KeyAction("eof"))

    assert session.editor.is_empty
    assert not session.quit_requested
    backend.release.set()
    await turn


@pytest.mark.asyncio
async def test_escape_in_other_mode_restores_composition_buffer(renderer: TerminalRenderer, tmp_path: Path) -> None:
    backend = FakeBackend(block=True)
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    _type(session, "draft")
    draft = session.editor
    turn = asyncio.create_task(session.run_turn("hi"))
    await asyncio.sleep(0)

    ask = asyncio.create_task(session.ask(_question(), {}, asyncio.Event()))
    await asyncio.sleep(0)
    assert session.app_state.phase.label == "Q: Select [1-3]"

    session.handle_key(KeyAction("char", "3"))
    assert session.prompts.is_other_mode
    assert session.editor.is_empty
    _type(session, "typed")
    assert ed.get_text(session.editor) == "typed"

    session.handle_key(KeyAction("escape"))

    assert session.editor == draft
    assert not session.prompts.is_other_mode
    assert session.app_state.phase.label == "Q: Select [1-3]"

    session.handle_key(KeyAction("char", "1"))
    assert (await ask).answers == {"Which?": "One"}
    backend.release.set()
    await turn
    assert session.app_state.phase.name == "idle"


@pytest.mark.asyncio
async def test_other_mode_send_submits_answer(renderer: TerminalRenderer, tmp_path: Path) -> None:
    backend = FakeBackend(block=True)
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    turn = asyncio.create_task(session.run_turn("hi"))
    await asyncio.sleep(0)
    ask = asyncio.create_task(session.ask(_question(), {}, asyncio.Event()))
    await asyncio.sleep(0)

    session.handle_key(KeyAction("char", "3"))
    _type(session, "Three")
    session.handle_key(KeyAction("send"))

    assert (await ask).answers == {"Which?": "Three"}
    assert session.editor.is_empty
    assert session.saved_editor is None
    assert backend.sent == ["hi"]
    backend.release.set()
    await turn


@pytest.mark.asyncio
async def test_tool_request_is_queued_and_decided_by_key(renderer: TerminalRenderer, tmp_path: Path) -> None:
    backend = FakeBackend(block=True)
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    turn = asyncio.create_task(session.run_turn("build it"))
    await asyncio.sleep(0)
    request = ToolCallRequested("t1", "Bash", {"command": "make"}, kind="execute")

    session.on_backend_event(request)
    assert [item.id for item in session.permissions.items] == ["t1"]
    assert session.app_state.phase.name == "prompting"

    approval = asyncio.create_task(session.approve(request, asyncio.Event()))
    await asyncio.sleep(0)
    session.handle_key(KeyAction("char", "y"))

    assert await approval == PermissionDecision(True, "user")
    assert session.app_state.phase.name == "thinking"
    session.on_backend_event(ToolCallFinished("t1", success=True, summary="built"))
    backend.release.set()
    await turn


@pytest.mark.asyncio
async def test_read_only_tools_skip_the_queue(renderer: TerminalRenderer, screen: io.StringIO, tmp_path: Path) -> None:
    backend = FakeBackend(block=True)
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    turn = asyncio.create_task(session.run_turn("look"))
    await asyncio.sleep(0)
    request = ToolCallRequested("r1", "Read", {"file_path": "a.py"}, kind="read")

    session.on_backend_event(request)
    decision = await session.approve(request, asyncio.Event())

    assert session.permissions.items == ()
    assert decision == PermissionDecision(True, "auto")
    assert screen.getvalue().count("auto-approved: Read (read-only)") == 1
    backend.release.set()
    await turn


@pytest.mark.asyncio
async def test_approval_outside_a_turn_is_denied(renderer: TerminalRenderer, tmp_path: Path) -> None:
    session = InteractiveSession(renderer, cwd=tmp_path, backend=FakeBackend())
    decision = await session.approve(ToolCallRequested("t1", "Bash", {"command": "rm -rf x"}), asyncio.Event())
    assert decision.cancelled
    assert session.permissions.items == ()


@pytest.mark.asyncio
async def test_escape_aborts_turn_and_cancels_approvals(
    renderer: TerminalRenderer, screen: io.StringIO, tmp_path: Path
) -> None:
    backend = FakeBackend(block=True)
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    turn = asyncio.create_task(session.run_turn("work"))
    await asyncio.sleep(0)
    request = ToolCallRequested("t1", "Bash", {"command": "make"})
    session.on_backend_event(request)
    approval = asyncio.create_task(session.approve(request, asyncio.Event()))
    await asyncio.sleep(0)

    session.handle_key(KeyAction("escape"))

    assert (await approval).cancelled
    await asyncio.wait_for(turn, timeout=1)
    assert backend.cancelled == 1
    assert "Aborting query..." in screen.getvalue()
    assert session.app_state.phase.name == "idle"


@pytest.mark.asyncio
async def test_agent_text_is_written_line_by_line(
    renderer: TerminalRenderer, screen: io.StringIO, tmp_path: Path
) -> None:
    session = InteractiveSession(renderer, cwd=tmp_path, backend=FakeBackend())
    session.on_backend_event(AgentText("hel"))
    assert "hel" not in screen.getvalue()
    session.on_backend_event(AgentText("lo\nwor"))
    assert "hello" in screen.getvalue()
    assert "wor" not in screen.getvalue().split("hello", 1)[1]

    session.on_backend_event(TurnComplete("end_turn"))
    out = screen.getvalue()
    assert "wor" in out.split("hello", 1)[1]
    assert "result: end_turn" in out


@pytest.mark.asyncio
async def test_drowning_rings_bell_once(renderer: TerminalRenderer, screen: io.StringIO, tmp_path: Path) -> None:
    session = InteractiveSession(renderer, config=CliConfig(drowning_threshold=15), cwd=tmp_path)
    session.app_state.prompting("Allow? Bash (y/n)", 20)
    session.app_state.prompting("Allow? Bash (y/n)", 15)
    session.app_state.prompting("Allow? Bash (y/n)", 14)
    assert screen.getvalue().count("\a") == 1


@pytest.mark.asyncio
async def test_audit_failure_is_fatal(renderer: TerminalRenderer, tmp_path: Path) -> None:
    audit = AuditWriter(tmp_path / "audit.jsonl")
    audit.path.unlink()
    audit.path.mkdir()
    session = InteractiveSession(renderer, cwd=tmp_path, backend=FakeBackend(), audit=audit)

    with pytest.raises(AuditWriteError):
        session.on_backend_event(AgentText("hi"))
    assert session.quit_requested


@pytest.mark.asyncio
async def test_interrupt_quits(renderer: TerminalRenderer, tmp_path: Path) -> None:
    session = InteractiveSession(renderer, cwd=tmp_path)
    session.handle_key(KeyAction("interrupt"))
    assert session.quit_requested


@pytest.mark.asyncio
async def test_run_restores_terminal_on_quit(renderer: TerminalRenderer, screen: io.StringIO, tmp_path: Path) -> None:
    session = InteractiveSession(renderer, cwd=tmp_path, backend=FakeBackend())
    task = asyncio.create_task(session.run(FakeReader()))
    await asyncio.sleep(0.01)
    session.handle_key(KeyAction("eof"))
    await asyncio.wait_for(task, timeout=1)

    out = screen.getvalue()
    assert out.startswith(BRACKETED_PASTE_ON)
    assert out.endswith(SHOW_CURSOR + BRACKETED_PASTE_OFF)


@pytest.mark.asyncio
async def test_question_label_returns_after_approval_is_decided(renderer: TerminalRenderer, tmp_path: Path) -> None:
    backend = FakeBackend(block=True)
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    turn = asyncio.create_task(session.run_turn("hi"))
    await asyncio.sleep(0)
    ask = asyncio.create_task(session.ask(_question(), {}, asyncio.Event()))
    await asyncio.sleep(0)

    session.on_backend_event(ToolCallRequested("t1", "Bash", {"command": "make"}))
    assert session.app_state.phase.name == "prompting"
    session.handle_key(KeyAction("char", "n"))

    assert session.app_state.phase.name == "asking"
    assert session.app_state.phase.label == "Q: Select [1-3]"
    session.handle_key(KeyAction("char", "2"))
    assert (await ask).answers == {"Which?": "Two"}
    backend.release.set()
    await turn


@pytest.mark.asyncio
async def test_other_mode_label_returns_after_approval_is_decided(renderer: TerminalRenderer, tmp_path: Path) -> None:
    backend = FakeBackend(block=True)
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    turn = asyncio.create_task(session.run_turn("hi"))
    await asyncio.sleep(0)
    ask = asyncio.create_task(session.ask(_question(), {}, asyncio.Event()))
    await asyncio.sleep(0)
    session.handle_key(KeyAction("char", "3"))
    other_label = session.app_state.phase.label

    session.on_backend_event(ToolCallRequested("t1", "Bash", {"command": "make"}))
    session.handle_key(KeyAction("char", "y"))

    assert session.app_state.phase.label == other_label
    assert session.prompts.is_other_mode
    _type(session, "Three")
    session.handle_key(KeyAction("send"))
    assert (await ask).answers == {"Which?": "Three"}
    backend.release.set()
    await turn


@pytest.mark.asyncio
async def test_tool_request_after_turn_is_not_queued(renderer: TerminalRenderer, tmp_path: Path) -> None:
    session = InteractiveSession(renderer, cwd=tmp_path, backend=FakeBackend())
    session.on_backend_event(ToolCallRequested("late", "Bash", {"command": "make"}))

    assert session.permissions.items == ()
    assert session.app_state.phase.name == "idle"
    _type(session, "ok")
    assert ed.get_text(session.editor) == "ok"


@pytest.mark.asyncio
async def test_session_command_switches_live(
    renderer: TerminalRenderer, screen: io.StringIO, tmp_path: Path
) -> None:
    backend = FakeBackend()
    store = SessionStore(tmp_path / "state")
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend, store=store)

    _type(session, "/session session-2")
    session.handle_key(KeyAction("send"))
    await _settle()

    assert backend.loaded == ["session-2"]
    assert backend.sent == []
    assert session.session_id == "session-2"
    assert store.load(tmp_path) == "session-2"
    assert session.app_state.phase.name == "idle"
    assert "Switched to session session-2" in screen.getvalue()


@pytest.mark.asyncio
async def test_session_switch_unsupported_is_remembered(
    renderer: TerminalRenderer, screen: io.StringIO, tmp_path: Path
) -> None:
    store = SessionStore(tmp_path / "state")
    session = InteractiveSession(renderer, cwd=tmp_path, backend=FakeBackend(can_load=False), store=store)

    assert await session.switch_session("session-2") is False
    assert session.session_id == "session-1"
    assert store.load(tmp_path) == "session-2"
    assert "will be resumed on next start" in screen.getvalue()
    assert session.app_state.phase.name == "idle"


@pytest.mark.asyncio
async def test_session_switch_refused_during_turn(renderer: TerminalRenderer, tmp_path: Path) -> None:
    backend = FakeBackend(block=True)
    session = InteractiveSession(renderer, cwd=tmp_path, backend=backend)
    turn = asyncio.create_task(session.run_turn("work"))
    await asyncio.sleep(0)

    assert await session.switch_session("session-2") is False
    assert backend.loaded == []
    backend.release.set()
    await turn
