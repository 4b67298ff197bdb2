"""ACP client: turns session updates into backend events and gates tool calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

from acp import Client, RequestError, RequestPermissionResponse, SessionNotification
from acp.schema import (
    AgentMessageChunk,
    AgentPlanUpdate,
    AgentThoughtChunk,
    AllowedOutcome,
    AudioContentBlock,
    AvailableCommandsUpdate,
    CurrentModeUpdate,
    DeniedOutcome,
    EmbeddedResourceContentBlock,
    FileEditToolCallContent,
    ImageContentBlock,
    ResourceContentBlock,
    TextContentBlock,
    ToolCallProgress,
    ToolCallStart,
)

from tollgate.backend import Approver
from tollgate.events import (
    AgentText,
    AgentThought,
    BackendEvent,
    FileEdited,
    ModeChanged,
    PlanUpdated,
    ToolCallFinished,
    ToolCallRequested,
)
from tollgate.log_utils import log_context, log_event
from tollgate.permissions import PermissionDecision
from tollgate.prompts import parse_questions

logger = logging.getLogger(__name__)

ALLOW_KINDS = ("allow_once", "allow_always")
REJECT_KINDS = ("reject_once", "reject_always")
_FINISHED_STATUSES = frozenset({"completed", "failed"})


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def tool_name_of(tool_call: Any) -> str:
    """Best-effort tool name: agent metadata, then raw input, then title/kind."""
    meta = _as_dict(getattr(tool_call, "field_meta", None))
    for vendor in meta.values():
        if isinstance(vendor, dict) and isinstance(vendor.get("toolName"), str):
            return vendor["toolName"]
    raw_input = _as_dict(getattr(tool_call, "raw_input", None))
    if isinstance(raw_input.get("tool"), str) and raw_input["tool"]:
        return raw_input["tool"]
    return getattr(tool_call, "title", None) or getattr(tool_call, "kind", None) or "tool"


def _locations(tool_call: Any) -> tuple[str, ...]:
    return tuple(
        str(location.path) for location in getattr(tool_call, "locations", None) or [] if getattr(location, "path", None)
    )


def to_tool_request(tool_call: Any, *, needs_approval: bool = True) -> ToolCallRequested:
    return ToolCallRequested(
        tool_call_id=str(tool_call.tool_call_id),
        name=tool_name_of(tool_call),
        raw_input=_as_dict(getattr(tool_call, "raw_input", None)),
        title=getattr(tool_call, "title", None),
        kind=getattr(tool_call, "kind", None),
        needs_approval=needs_approval,
        locations=_locations(tool_call),
    )


def _pick_option(options: Iterable[Any], kinds: tuple[str, ...]) -> Any | None:
    options = list(options)
    for kind in kinds:
        for option in options:
            if getattr(option, "kind", None) == kind:
                return option
    return None


def _cancelled() -> RequestPermissionResponse:
    return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))


def permission_response(
    options: Iterable[Any],
    decision: PermissionDecision,
    *,
    meta: dict[str, Any] | None = None,
) -> RequestPermissionResponse:
    """Map a decision onto the agent's offered options."""
    if decision.cancelled:
        return _cancelled()
    option = _pick_option(options, ALLOW_KINDS if decision.allowed else REJECT_KINDS)
    if option is None:
        return _cancelled()
    return RequestPermissionResponse(
        outcome=AllowedOutcome(option_id=option.option_id, outcome="selected"),
        field_meta=meta,
    )


def _content_text(content: Any) -> str:
    if isinstance(content, TextContentBlock):
        return content.text
    if isinstance(content, ImageContentBlock):
        return "<image>"
    if isinstance(content, AudioContentBlock):
        return "<audio>"
    if isinstance(content, ResourceContentBlock):
        return content.uri or "<resource>"
    if isinstance(content, EmbeddedResourceContentBlock):
        return "<resource>"
    return "<content>"


class ACPClient(Client):
    """Client side of the ACP connection.

    Session updates are converted to :mod:`tollgate.events` and handed to
    ``sink`` in arrival order; permission requests go through ``approver``.
    """

    def __init__(self, sink: Callable[[BackendEvent], None], approver: Approver) -> None:
        self._sink = sink
        self._approver = approver
        self._cancel_signals: dict[str, asyncio.Event] = {}
        self.available_commands: dict[str, str] = {}

    async def request_permission(
        self,
        options,
        session_id: str,
        tool_call: Any,
        **_: Any,
    ) -> RequestPermissionResponse:
        request = to_tool_request(tool_call)
        cancel = self._cancel_signals.setdefault(request.tool_call_id, asyncio.Event())
        with log_context(session_id=session_id, tool_call_id=request.tool_call_id):
            log_event(
                logger,
                "permission.request",
                tool=request.name,
                options=[getattr(opt, "option_id", "<id>") for opt in options],
            )
            try:
                questions = parse_questions(request.raw_input.get("questions") or [])
                if questions:
                    outcome = await self._approver.ask(questions, request.raw_input, cancel)
                    if outcome.cancelled or outcome.answers is None:
                        response = _cancelled()
                    else:
                        response = permission_response(
                            options,
                            PermissionDecision(True, "user"),
                            meta={"answers": outcome.answers},
                        )
                else:
                    decision = await self._approver.approve(request, cancel)
                    response = permission_response(options, decision)
            finally:
                self._cancel_signals.pop(request.tool_call_id, None)
            log_event(logger, "permission.response", outcome=getattr(response.outcome, "outcome", None))
        return response

    async def session_update(self, session_id: str, update: SessionNotification | Any, **_: Any) -> None:
        if isinstance(update, SessionNotification):
            update = update.update
        for event in self._convert(update):
            self._sink(event)

    def _convert(self, update: Any) -> list[BackendEvent]:
        if isinstance(update, ToolCallStart):
            status = getattr(update, "status", None)
            return [to_tool_request(update, needs_approval=status in (None, "pending"))]
        if isinstance(update, ToolCallProgress):
            return self._convert_progress(update)
        if isinstance(update, AgentMessageChunk):
            return [AgentText(_content_text(update.content))]
        if isinstance(update, AgentThoughtChunk):
            text = getattr(update.content, "text", None)
            return [AgentThought(text)] if text else []
        if isinstance(update, AgentPlanUpdate):
            return [PlanUpdated(tuple(update.entries or []))]
        if isinstance(update, CurrentModeUpdate):
            return [ModeChanged(update.current_mode_id)]
        if isinstance(update, AvailableCommandsUpdate):
            self.available_commands = {
                f"/{cmd.name}": cmd.description or "" for cmd in update.available_commands or []
            }
        return []

    def _convert_progress(self, update: ToolCallProgress) -> list[BackendEvent]:
        events: list[BackendEvent] = []
        for block in update.content or []:
            if isinstance(block, FileEditToolCallContent) or getattr(block, "type", "") == "diff":
                events.append(
                    FileEdited(
                        path=getattr(block, "path", "") or "",
                        old_text=getattr(block, "old_text", None),
                        new_text=getattr(block, "new_text", "") or "",
                    )
                )
        if update.status in _FINISHED_STATUSES:
            tool_call_id = str(update.tool_call_id)
            signal = self._cancel_signals.get(tool_call_id)
            if signal is not None:
                signal.set()
            raw_output = _as_dict(getattr(update, "raw_output", None))
            summary = raw_output.get("error") or raw_output.get("content")
            events.append(
                ToolCallFinished(
                    tool_call_id=tool_call_id,
                    success=update.status == "completed",
                    summary=str(summary)[:200] if summary else None,
                )
            )
        return events

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        return None

    def on_connect(self, *_: Any, **__: Any) -> None:
        return None

    async def write_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/write_text_file")

    async def read_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/read_text_file")

    async def create_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/create")

    async def terminal_output(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/output")

    async def release_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/release")

    async def wait_for_terminal_exit(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/wait_for_exit")

    async def kill_terminal(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("terminal/kill")
