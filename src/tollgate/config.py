"""User configuration loaded from ``config.json``.

Each setting falls back to its default independently: one bad value produces
a warning and leaves the rest of the file in effect.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tollgate.log_utils import log_event
from tollgate.paths import config_dir

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TOLLGATE_CONFIG"
CONFIG_FILE_NAME = "config.json"


class ConfigError(RuntimeError):
    """Configuration file could not be read or written."""


class CliConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    permission_timeout: int = Field(
        30,
        ge=1,
        description="Seconds before an unanswered approval is denied",
    )
    extended_permission_timeout: int = Field(
        120,
        ge=1,
        description="Seconds allowed for mode switches and the tools in extended_tools",
    )
    extended_tools: list[str] = Field(
        default_factory=lambda: ["ExitPlanMode", "EnterPlanMode"],
        description="Tool names that get the extended timeout",
    )
    drowning_threshold: int | None = Field(
        15,
        ge=0,
        description="Remaining seconds at which the approval prompt starts flashing; null disables",
    )
    drowning_bell: bool = Field(
        True,
        description="Ring the terminal bell when the drowning threshold is crossed",
    )
    auto_approve_reads: bool = Field(
        True,
        description="Run read-only tools without asking",
    )
    auto_approve_edits: bool = Field(
        True,
        description="Run edits to files inside the working directory without asking",
    )
    auto_approve_safe_commands: bool = Field(
        True,
        description="Run simple read-only shell commands (git status, ls, ...) without asking",
    )
    resize_debounce: float = Field(
        0.3,
        gt=0,
        description="Seconds to wait for a terminal resize burst to settle",
    )


@dataclass
class LoadedConfig:
    config: CliConfig
    path: Path
    exists: bool = False
    warnings: list[str] = field(default_factory=list)


def default_config_path() -> Path:
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return config_dir() / CONFIG_FILE_NAME


def load_env_files() -> None:
    load_dotenv(config_dir() / ".env", override=False)
    load_dotenv()


def parse_cli_config(raw: Any) -> tuple[CliConfig, list[str]]:
    """Validate ``raw``, replacing each invalid setting with its default."""
    if not isinstance(raw, dict):
        return CliConfig(), ["Configuration must be a JSON object; using defaults"]

    values = dict(raw)
    warnings: list[str] = []
    while True:
        try:
            return CliConfig.model_validate(values), warnings
        except ValidationError as exc:
            bad_fields = {str(error["loc"][0]) for error in exc.errors() if error.get("loc")}
            bad_fields &= set(values)
            if not bad_fields:
                warnings.append(f"Invalid configuration ({exc.error_count()} errors); using defaults")
                return CliConfig(), warnings
            for name in sorted(bad_fields):
                warnings.append(f"Invalid value for {name}: {values.pop(name)!r}; using default")


def load_cli_config(path: Path | None = None) -> LoadedConfig:
    path = path or default_config_path()
    if not path.exists():
        return LoadedConfig(config=CliConfig(), path=path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        log_event(logger, "config.unreadable", level=logging.WARNING, path=str(path), error=str(exc))
        return LoadedConfig(config=CliConfig(), path=path, exists=True, warnings=[f"Failed to parse {path}"])

    config, warnings = parse_cli_config(raw)
    for warning in warnings:
        log_event(logger, "config.warning", level=logging.WARNING, path=str(path), warning=warning)
    return LoadedConfig(config=config, path=path, exists=True, warnings=warnings)


def init_config(path: Path | None = None) -> str:
    """Write the default configuration unless a file already exists."""
    path = path or default_config_path()
    if path.exists():
        return f"Config already exists at {path}"
    content = json.dumps(CliConfig().model_dump(mode="json"), indent=2)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content + "\n", encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot write config to {path}: {exc}") from exc
    log_event(logger, "config.created", path=str(path))
    return f"Created config at {path}"
