"""Backend contract used by the interactive session."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from acp import text_block

from tollgate.events import ToolCallRequested, TurnComplete
from tollgate.log_utils import log_context, log_event
from tollgate.permissions import PermissionDecision
from tollgate.prompts import AskQuestion, QuestionOutcome

logger = logging.getLogger(__name__)


class Approver(Protocol):
    """Approval hook the backend calls before running a side-effecting tool."""

    async def approve(self, request: ToolCallRequested, cancel: asyncio.Event) -> PermissionDecision: ...

    async def ask(
        self,
        questions: list[AskQuestion],
        raw_input: dict[str, Any],
        cancel: asyncio.Event,
    ) -> QuestionOutcome: ...


class SessionSwitchError(RuntimeError):
    """The agent cannot load another session."""


class Backend(Protocol):
    @property
    def session_id(self) -> str | None: ...

    async def send(self, text: str) -> TurnComplete: ...

    async def cancel(self) -> None: ...

    async def load_session(self, session_id: str) -> None: ...


class AcpBackend:
    """Send prompts over an ACP client connection."""

    def __init__(self, conn: Any, session_id: str, *, cwd: str = ".", can_load: bool = False) -> None:
        self._conn = conn
        self._session_id = session_id
        self._cwd = cwd
        self._can_load = can_load

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def send(self, text: str) -> TurnComplete:
        with log_context(session_id=self._session_id):
            log_event(logger, "backend.prompt", chars=len(text))
            response = await self._conn.prompt(prompt=[text_block(text)], session_id=self._session_id)
            stop_reason = getattr(response, "stop_reason", None)
            log_event(logger, "backend.turn_complete", stop_reason=stop_reason)
        return TurnComplete(stop_reason=stop_reason)

    async def cancel(self) -> None:
        with log_context(session_id=self._session_id):
            log_event(logger, "backend.cancel")
            await self._conn.cancel(session_id=self._session_id)

    async def load_session(self, session_id: str) -> None:
        """Switch to ``session_id``; the agent replays its history as updates."""
        if not self._can_load:
            raise SessionSwitchError("agent cannot load sessions")
        with log_context(session_id=session_id):
            log_event(logger, "backend.load_session", previous=self._session_id)
            await self._conn.load_session(cwd=self._cwd, session_id=session_id, mcp_servers=[])
        self._session_id = session_id
