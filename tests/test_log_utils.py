from __future__ import annotations

import io
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from tollgate.log_utils import (
    ContextFilter,
    ContextFormatter,
    JsonFormatter,
    build_log_config,
    configure_logging,
    log_context,
    log_event,
)


class _Tty(io.StringIO):
    def isatty(self) -> bool:
        return True


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        if type(handler) in (RotatingFileHandler, logging.StreamHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    logging.getLogger("acp").setLevel(logging.NOTSET)


def _record(message: str, **event_fields) -> logging.LogRecord:
    record = logging.LogRecord("tollgate.test", logging.INFO, __file__, 1, message, None, None)
    record.event_fields = event_fields
    return record


def test_defaults(tmp_path: Path) -> None:
    config = build_log_config({"TOLLGATE_LOG_DIR": str(tmp_path)})
    assert config.log_file == tmp_path / "tollgate.log"
    assert config.level == logging.INFO
    assert not config.stderr
    assert config.ignored == ()
    assert config.logger_levels == {"acp": logging.WARNING}


def test_environment_overrides(tmp_path: Path) -> None:
    config = build_log_config(
        {
            "TOLLGATE_LOG_DIR": str(tmp_path / "logs"),
            "TOLLGATE_LOG_LEVEL": "debug",
            "TOLLGATE_LOG_JSON": "yes",
            "TOLLGATE_LOG_KEYS": "1",
            "TOLLGATE_LOG_MAX_BYTES": "1000",
        }
    )
    assert (tmp_path / "logs").is_dir()
    assert config.level == logging.DEBUG
    assert config.json_lines
    assert config.max_bytes == 1000
    assert config.logger_levels["tollgate.keys"] == logging.DEBUG


def test_malformed_settings_fall_back_individually(tmp_path: Path) -> None:
    config = build_log_config(
        {
            "TOLLGATE_LOG_DIR": str(tmp_path),
            "TOLLGATE_LOG_LEVEL": "loud",
            "TOLLGATE_LOG_BACKUPS": "-1",
            "TOLLGATE_LOG_STDERR": "true",
        }
    )
    assert config.level == logging.INFO
    assert config.backups == 3
    assert config.stderr
    assert config.ignored == ("TOLLGATE_LOG_BACKUPS='-1'", "TOLLGATE_LOG_LEVEL='loud'")


def test_numeric_level(tmp_path: Path) -> None:
    assert build_log_config({"TOLLGATE_LOG_DIR": str(tmp_path), "TOLLGATE_LOG_LEVEL": "30"}).level == 30


def test_text_formatter_appends_context_and_fields() -> None:
    record = _record("permission.decided", tool="Bash", note="two words", skipped=None)
    with log_context(session_id="s1", tool_call_id=None):
        ContextFilter().filter(record)
    line = ContextFormatter("%(message)s").format(record)
    assert line == 'permission.decided session_id=s1 note="two words" tool=Bash'


def test_json_formatter() -> None:
    record = _record("phase.changed", phase="thinking")
    with log_context(session_id="s1"):
        ContextFilter().filter(record)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["event"] == "phase.changed"
    assert payload["context"] == {"session_id": "s1"}
    assert payload["fields"] == {"phase": "thinking"}


def test_context_is_scoped() -> None:
    record = _record("x")
    with log_context(session_id="outer"):
        with log_context(tool_call_id="t1"):
            ContextFilter().filter(record)
            assert record.context_fields == {"session_id": "outer", "tool_call_id": "t1"}
    ContextFilter().filter(record)
    assert record.context_fields == {}


def test_configure_writes_to_file(tmp_path: Path, restore_root_logging) -> None:
    config = build_log_config({"TOLLGATE_LOG_DIR": str(tmp_path), "TOLLGATE_LOG_LEVEL": "nope"})
    configure_logging(config, stderr=io.StringIO())

    log_event(logging.getLogger("tollgate.test"), "session.started", cwd="/work")
    for handler in logging.getLogger().handlers:
        handler.flush()

    text = config.log_file.read_text(encoding="utf-8")
    assert "logging.ignored_setting setting=\"TOLLGATE_LOG_LEVEL='nope'\"" in text
    assert "session.started cwd=/work" in text


def test_stderr_copy_only_when_not_a_terminal(tmp_path: Path, restore_root_logging) -> None:
    config = build_log_config({"TOLLGATE_LOG_DIR": str(tmp_path), "TOLLGATE_LOG_STDERR": "1"})

    piped = io.StringIO()
    configure_logging(config, stderr=piped)
    log_event(logging.getLogger("tollgate.test"), "hello")
    assert "hello" in piped.getvalue()

    screen = _Tty()
    configure_logging(config, stderr=screen)
    log_event(logging.getLogger("tollgate.test"), "hidden")
    assert screen.getvalue() == ""
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "logging.stderr_refused" in config.log_file.read_text(encoding="utf-8")
