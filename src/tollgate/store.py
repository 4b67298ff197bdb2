"""Session id persistence and the audit log."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tollgate.events import BackendEvent, event_type
from tollgate.log_utils import log_event

logger = logging.getLogger(__name__)

SESSIONS_FILE = "sessions.json"
AUDIT_FILE = "audit.jsonl"


class AuditWriteError(RuntimeError):
    """The audit log could not be written."""


@dataclass
class SessionStore:
    """Remember the last backend session id per working directory."""

    root: Path

    def __post_init__(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self.root / SESSIONS_FILE

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log_event(logger, "sessions.unreadable", level=logging.WARNING, path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): value for key, value in data.items() if isinstance(value, str) and value}

    def load(self, cwd: Path | str) -> str | None:
        return self._read().get(str(cwd))

    def save(self, cwd: Path | str, session_id: str) -> None:
        data = self._read()
        if data.get(str(cwd)) == session_id:
            return
        data[str(cwd)] = session_id
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        log_event(logger, "sessions.saved", cwd=str(cwd), session_id=session_id)


def _jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if is_dataclass(value) and not isinstance(value, type):
        return {key: _jsonable(item) for key, item in asdict(value).items()}
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


class AuditWriter:
    """Append one JSON line per backend event. Failures are fatal."""

    def __init__(self, path: Path) -> None:
        self.path = path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
        except OSError as exc:
            raise AuditWriteError(f"Cannot write to audit log at {path}: {exc}") from exc

    def write(self, event: BackendEvent, **fields: Any) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type(event),
            **_jsonable(event),
            **{key: _jsonable(value) for key, value in fields.items() if value is not None},
        }
        try:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, default=str) + "\n")
        except OSError as exc:
            raise AuditWriteError(f"Failed to write audit log to {self.path}: {exc}") from exc
