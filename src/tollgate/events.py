"""Backend events consumed by the interactive session."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class ToolCallRequested:
    tool_call_id: str
    name: str
    raw_input: dict[str, Any] = field(default_factory=dict)
    title: str | None = None
    kind: str | None = None
    needs_approval: bool = True
    locations: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolCallFinished:
    tool_call_id: str
    success: bool = True
    summary: str | None = None


@dataclass(frozen=True)
class AgentText:
    text: str


@dataclass(frozen=True)
class AgentThought:
    text: str


@dataclass(frozen=True)
class PlanUpdated:
    entries: tuple[Any, ...] = ()


@dataclass(frozen=True)
class FileEdited:
    path: str
    old_text: str | None
    new_text: str


@dataclass(frozen=True)
class ModeChanged:
    mode: str


@dataclass(frozen=True)
class TurnComplete:
    stop_reason: str | None = None


BackendEvent = Union[
    ToolCallRequested,
    ToolCallFinished,
    AgentText,
    AgentThought,
    PlanUpdated,
    FileEdited,
    ModeChanged,
    TurnComplete,
]


def event_type(event: BackendEvent) -> str:
    """Stable snake_case name used in the audit log."""
    name = type(event).__name__
    return "".join(f"_{ch.lower()}" if ch.isupper() else ch for ch in name).lstrip("_")
