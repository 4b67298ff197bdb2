"""Local slash command registry and dispatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from tollgate import __version__

if TYPE_CHECKING:
    from tollgate.session import InteractiveSession

logger = logging.getLogger(__name__)

SlashHandler = Callable[["InteractiveSession", str], Awaitable[bool] | bool]

KEY_BINDINGS = (
    ("Enter", "New line"),
    ("Ctrl+Enter / Alt+Enter", "Send (terminal must emit ESC[13;5u or ESC[27;5;13~)"),
    ("Escape", "Abort the current query, or leave free-text answer mode"),
    ("y / n, Left / Right", "Decide or switch between pending approvals"),
    ("Ctrl+C", "Quit (any time)"),
    ("Ctrl+D", "Quit (at prompt)"),
)


@dataclass
class SlashCommandDef:
    description: str
    hint: str
    handler: SlashHandler


SLASH_HANDLERS: dict[str, SlashCommandDef] = {}


def register_slash_command(name: str, description: str, hint: str) -> Callable[[SlashHandler], SlashHandler]:
    """Decorator to register a slash command."""

    def _decorator(func: SlashHandler) -> SlashHandler:
        SLASH_HANDLERS[name] = SlashCommandDef(description=description, hint=hint, handler=func)
        return func

    return _decorator


@register_slash_command("/help", description="Show commands and key bindings.", hint="/help")
def _handle_help(session: InteractiveSession, _argument: str) -> bool:
    info = session.renderer.info
    info("Commands:")
    for entry in SLASH_HANDLERS.values():
        info(f"  {entry.hint:<22} {entry.description}")
    for name, desc in sorted(session.agent_commands.items()):
        info(f"  {name:<22} {desc or 'Handled by agent'}")
    info("")
    info("Controls:")
    for keys, action in KEY_BINDINGS:
        info(f"  {keys:<22} {action}")
    return True


@register_slash_command("/version", description="Show version information.", hint="/version")
def _handle_version(session: InteractiveSession, _argument: str) -> bool:
    session.renderer.info(f"tollgate {__version__}")
    return True


@register_slash_command(
    "/session",
    description="Show the session id, or switch to another one.",
    hint="/session [id]",
)
async def _handle_session(session: InteractiveSession, argument: str) -> bool:
    target = argument.split()[0] if argument.split() else ""
    if not target:
        session.renderer.info(f"Session: {session.session_id or 'none'}")
    elif target == session.session_id:
        session.renderer.info(f"Already in session {target}")
    else:
        await session.switch_session(target)
    return True


@register_slash_command("/status", description="Show phase, session and pending approvals.", hint="/status")
def _handle_status(session: InteractiveSession, _argument: str) -> bool:
    info = session.renderer.info
    info(f"Phase: {session.app_state.phase.name}")
    info(f"Session: {session.session_id or 'none'}")
    info(f"Directory: {session.cwd}")
    info(f"Pending approvals: {len(session.permissions.items)}")
    return True


@register_slash_command("/exit", description="Exit.", hint="/exit")
@register_slash_command("/quit", description="Exit.", hint="/quit")
def _handle_exit(session: InteractiveSession, _argument: str) -> bool:
    session.renderer.info("Goodbye.")
    session.request_quit()
    return True


async def handle_slash_command(line: str, session: InteractiveSession) -> bool:
    """Dispatch a local slash command, returning True if handled."""
    trimmed = line.strip()
    if not trimmed.startswith("/"):
        return False

    parts = trimmed.split(maxsplit=1)
    command = parts[0] if parts else ""
    argument = parts[1].strip() if len(parts) > 1 else ""

    entry = SLASH_HANDLERS.get(command)
    if entry is None:
        return False

    result = entry.handler(session, argument)
    if asyncio.iscoroutine(result):
        return bool(await result)
    return bool(result)
