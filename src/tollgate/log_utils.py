"""Logging setup and structured event helpers.

The terminal belongs to the renderer: records go to a rotating file under the
user log directory, and a stderr copy is only attached when stderr is not the
terminal being drawn on. Settings come from ``TOLLGATE_LOG_*`` variables and,
like the config file, each one falls back to its default on its own.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, TextIO

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tollgate.paths import log_dir

ENV_PREFIX = "TOLLGATE_LOG_"
DEFAULT_LOG_FILE = "tollgate.log"

# Variable suffix -> LogConfig field.
_ENV_FIELDS = {
    "LEVEL": "level",
    "STDERR": "stderr",
    "JSON": "json_lines",
    "KEYS": "keys",
    "MAX_BYTES": "max_bytes",
    "BACKUPS": "backups",
}

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("tollgate_log_context", default={})


class LogConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json_lines: bool = False
    keys: bool = Field(False, description="Log unrecognised key sequences at DEBUG")
    max_bytes: int = Field(2_000_000, gt=0)
    backups: int = Field(3, ge=0)
    ignored: tuple[str, ...] = ()

    @field_validator("level", mode="before")
    @classmethod
    def _level_from_name(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip().isdecimal():
            level = logging.getLevelNamesMapping().get(value.strip().upper())
            if level is None:
                raise ValueError(f"unknown level {value!r}")
            return level
        return value

    @property
    def logger_levels(self) -> Dict[str, int]:
        # The ACP SDK logs every frame at DEBUG.
        levels = {"acp": logging.WARNING}
        if self.keys:
            levels["tollgate.keys"] = logging.DEBUG
        return levels


def build_log_config(
    environ: Mapping[str, str] | None = None,
    *,
    log_file_name: str = DEFAULT_LOG_FILE,
    default_level: int = logging.INFO,
) -> LogConfig:
    """Resolve logging settings, dropping malformed variables one by one."""
    environ = os.environ if environ is None else environ
    directory = Path(environ.get(f"{ENV_PREFIX}DIR") or log_dir())
    directory.mkdir(parents=True, exist_ok=True)

    values: Dict[str, Any] = {"level": default_level}
    for suffix, name in _ENV_FIELDS.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw is not None and raw.strip():
            values[name] = raw.strip()

    ignored: list[str] = []
    while True:
        try:
            return LogConfig(log_file=directory / log_file_name, ignored=tuple(ignored), **values)
        except ValidationError as exc:
            bad = {str(error["loc"][0]) for error in exc.errors() if error.get("loc")} & set(values)
            if not bad:
                raise
            for name in sorted(bad):
                suffix = next(key for key, field in _ENV_FIELDS.items() if field == name)
                ignored.append(f"{ENV_PREFIX}{suffix}={values.pop(name)!r}")
                if name == "level":
                    values["level"] = default_level


def configure_logging(config: LogConfig, *, stderr: TextIO | None = None) -> None:
    """Replace root handlers with the rotating file (and a stderr copy when safe)."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(config.level)

    formatter: logging.Formatter = (
        JsonFormatter() if config.json_lines else ContextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backups,
            encoding="utf-8",
        )
    ]
    stream = stderr or sys.stderr
    stderr_is_screen = _is_tty(stream)
    if config.stderr and not stderr_is_screen:
        handlers.append(logging.StreamHandler(stream))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root_logger.addHandler(handler)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)

    logger = logging.getLogger(__name__)
    for setting in config.ignored:
        log_event(logger, "logging.ignored_setting", level=logging.WARNING, setting=setting)
    if config.stderr and stderr_is_screen:
        log_event(logger, "logging.stderr_refused", level=logging.WARNING, reason="stderr is the terminal")


def _is_tty(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields (session id, tool call id, ...) to every record in the block."""
    merged = {**_LOG_CONTEXT.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a short stable event name (``permission.decided``) with key/value fields."""
    logger.log(level, event, extra={"event_fields": fields})


def _record_fields(record: logging.LogRecord) -> tuple[Dict[str, Any], Dict[str, Any]]:
    context = getattr(record, "context_fields", None) or {}
    fields = {k: v for k, v in (getattr(record, "event_fields", None) or {}).items() if v is not None}
    return context, fields


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        if not value or any(ch.isspace() or ch in '="' for ch in value):
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    return str(value)


class ContextFilter(logging.Filter):
    """Copy the active log context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_LOG_CONTEXT.get())
        return True


class ContextFormatter(logging.Formatter):
    """Plain text lines; context first, then event fields, each as sorted ``key=value``."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extra = " ".join(
            f"{key}={_format_value(value)}"
            for group in _record_fields(record)
            for key, value in sorted(group.items())
            if value is not None
        )
        return f"{base} {extra}" if extra else base


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context, fields = _record_fields(record)
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        return json.dumps(payload, ensure_ascii=True, default=str)
