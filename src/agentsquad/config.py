"""TOML config loading/saving."""

from __future__ import annotations

import getpass
import os
import re
import sys
from contextlib import suppress
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

HOME_ENV = "AGENTSQUAD_HOME"
DEFAULT_HOME = Path("~/.config/agentsquad")
CONFIG_FILE_NAME = "config.toml"
STATE_FILE_NAME = "state.json"
DEFAULT_PROGRAM = "claude"
DEFAULT_STATUS_INTERVAL_MS = 500
DEFAULT_POLL_WORKERS = 4
DEFAULT_LOG_LEVEL = "INFO"

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARN", "WARNING", "ERROR"}
_BRANCH_SEGMENT_PATTERN = re.compile(r"[^a-z0-9._-]+")


def _default_branch_prefix() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = ""
    cleaned = _BRANCH_SEGMENT_PATTERN.sub("-", user.lower()).strip("-")
    return f"{cleaned}/" if cleaned else "agentsquad/"


def default_home() -> Path:
    override = os.getenv(HOME_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return DEFAULT_HOME.expanduser()


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    default_program: str = DEFAULT_PROGRAM
    auto_yes: bool = False
    branch_prefix: str = Field(default_factory=_default_branch_prefix)
    worktree_root: str = ""
    status_interval_ms: int = Field(default=DEFAULT_STATUS_INTERVAL_MS, ge=100, le=60_000)
    poll_workers: int = Field(default=DEFAULT_POLL_WORKERS, ge=1, le=32)
    log_level: str = DEFAULT_LOG_LEVEL

    @field_validator("default_program")
    @classmethod
    def _validate_program(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Program must not be empty")
        return value.strip()

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in _VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {value}")
        return normalized

    def resolved_worktree_root(self, home: Path | None = None) -> Path:
        if self.worktree_root.strip():
            return Path(self.worktree_root).expanduser()
        return (home or default_home()) / "worktrees"


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return default_home() / CONFIG_FILE_NAME
    return Path(path).expanduser()


def state_path(home: Path | None = None) -> Path:
    return (home or default_home()) / STATE_FILE_NAME


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return f'"{_escape(value)}"'
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()

    program = raw.get("default_program", cfg.default_program)
    if isinstance(program, str) and program.strip():
        cfg.default_program = program

    auto_yes = raw.get("auto_yes", cfg.auto_yes)
    if isinstance(auto_yes, bool):
        cfg.auto_yes = auto_yes

    branch_prefix = raw.get("branch_prefix", cfg.branch_prefix)
    if isinstance(branch_prefix, str):
        cfg.branch_prefix = branch_prefix

    worktree_root = raw.get("worktree_root", cfg.worktree_root)
    if isinstance(worktree_root, str):
        cfg.worktree_root = worktree_root

    interval = raw.get("status_interval_ms", cfg.status_interval_ms)
    if isinstance(interval, int) and not isinstance(interval, bool) and 100 <= interval <= 60_000:
        cfg.status_interval_ms = interval

    workers = raw.get("poll_workers", cfg.poll_workers)
    if isinstance(workers, int) and not isinstance(workers, bool) and 1 <= workers <= 32:
        cfg.poll_workers = workers

    log_level = raw.get("log_level", cfg.log_level)
    if isinstance(log_level, str) and log_level.strip().upper() in _VALID_LOG_LEVELS:
        cfg.log_level = log_level

    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return AppConfig()
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()
    if not isinstance(raw, dict):
        return AppConfig()
    return _sanitize(raw)


def render_config(config: AppConfig) -> str:
    lines = [
        f"default_program = {_toml_scalar(config.default_program)}",
        f"auto_yes = {_toml_scalar(config.auto_yes)}",
        f"branch_prefix = {_toml_scalar(config.branch_prefix)}",
        f"worktree_root = {_toml_scalar(config.worktree_root)}",
        f"status_interval_ms = {_toml_scalar(config.status_interval_ms)}",
        f"poll_workers = {_toml_scalar(config.poll_workers)}",
        f"log_level = {_toml_scalar(config.log_level)}",
    ]
    return "\n".join(lines) + "\n"


def save_config(config: AppConfig, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(render_config(config), encoding="utf-8")
    with suppress(OSError):
        resolved.chmod(0o600)
    return resolved
