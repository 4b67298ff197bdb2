from __future__ import annotations

import io
from pathlib import Path

import pytest

from tollgate.renderer import TerminalRenderer


@pytest.fixture(autouse=True)
def _isolate_home(tmp_path_factory, monkeypatch):
    """Force tests to use a temporary HOME/XDG dirs and no tollgate env overrides."""
    base = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(base))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(base / ".config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / ".local" / "state"))
    monkeypatch.setenv("XDG_DATA_HOME", str(base / ".local" / "share"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(base / ".cache"))
    for name in ("TOLLGATE_CONFIG", "TOLLGATE_LOG_DIR", "TOLLGATE_LOG_LEVEL", "TOLLGATE_LOG_STDERR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(Path, "home", lambda: base)
    return base


@pytest.fixture
def screen() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def renderer(screen: io.StringIO) -> TerminalRenderer:
    return TerminalRenderer(screen, get_columns=lambda: 80, resize_debounce=0.01)
