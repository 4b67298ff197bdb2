from __future__ import annotations

from pathlib import Path

import pytest

from tollgate.config import CliConfig
from tollgate.events import ToolCallRequested
from tollgate.policy import ApprovalPolicy, is_safe_command


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("git status", True),
        ("git log --oneline -5", True),
        ("ls", True),
        ("ls -la src", True),
        ("cat README.md", True),
        ("lsblk", False),
        ("rm -rf build", False),
        ("git status && rm -rf /", False),
        ("cat a | sh", False),
        ("echo $(whoami)", False),
        ("ls > out.txt", False),
        ("", False),
    ],
)
def test_safe_commands(command: str, expected: bool) -> None:
    assert is_safe_command(command) is expected


def test_read_only_tools_are_auto_approved(tmp_path: Path) -> None:
    policy = ApprovalPolicy(CliConfig(), tmp_path)
    assert policy.auto_approve(ToolCallRequested("1", "Read", kind="read")) == "read-only"
    assert policy.auto_approve(ToolCallRequested("2", "Grep")) == "read-only"


def test_edits_inside_cwd_are_auto_approved(tmp_path: Path) -> None:
    policy = ApprovalPolicy(CliConfig(), tmp_path)
    inside = ToolCallRequested("1", "Edit", {"file_path": "src/app.py"}, kind="edit")
    outside = ToolCallRequested("2", "Edit", {"file_path": "/etc/passwd"}, kind="edit")
    escaping = ToolCallRequested("3", "Write", {"path": "../elsewhere.txt"})
    located = ToolCallRequested("4", "Edit", kind="edit", locations=(str(tmp_path / "a.txt"),))
    unknown = ToolCallRequested("5", "Edit", kind="edit")

    assert policy.auto_approve(inside) == "inside working directory"
    assert policy.auto_approve(outside) is None
    assert policy.auto_approve(escaping) is None
    assert policy.auto_approve(located) == "inside working directory"
    assert policy.auto_approve(unknown) is None


def test_safe_shell_commands_are_auto_approved(tmp_path: Path) -> None:
    policy = ApprovalPolicy(CliConfig(), tmp_path)
    assert policy.auto_approve(ToolCallRequested("1", "Bash", {"command": "git diff"})) == "safe command"
    assert policy.auto_approve(ToolCallRequested("2", "Bash", {"command": "make install"})) is None


def test_policy_switches_are_respected(tmp_path: Path) -> None:
    config = CliConfig(auto_approve_reads=False, auto_approve_edits=False, auto_approve_safe_commands=False)
    policy = ApprovalPolicy(config, tmp_path)
    assert policy.auto_approve(ToolCallRequested("1", "Read", kind="read")) is None
    assert policy.auto_approve(ToolCallRequested("2", "Edit", {"file_path": "a.py"}, kind="edit")) is None
    assert policy.auto_approve(ToolCallRequested("3", "Bash", {"command": "ls"})) is None
