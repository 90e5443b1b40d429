"""Subprocess runner contract shared by the git and tmux wrappers."""

from __future__ import annotations

import shlex
import subprocess
from typing import Protocol

DEFAULT_LOG_TRUNCATE_LIMIT = 400


class SubprocessRunner(Protocol):
    def __call__(
        self,
        args: list[str],
        *,
        capture_output: bool = False,
        text: bool = False,
        check: bool = False,
    ) -> subprocess.CompletedProcess[str]: ...


def truncate_log(value: str, limit: int = DEFAULT_LOG_TRUNCATE_LIMIT) -> str:
    """Truncate log text to the specified limit with ellipsis."""
    value = value.strip()
    if len(value) <= limit:
        return value
    return value[: max(0, limit - 3)] + "..."


def command_for_log(args: list[str]) -> str:
    """Return a shell-safe command string bounded for logging."""
    if not args:
        return ""
    return truncate_log(" ".join(shlex.quote(part) for part in args))


def run_captured(runner: SubprocessRunner, args: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return runner(args, capture_output=True, text=True, check=False)
    except OSError as exc:
        # A missing executable surfaces as a failed process so callers have one path.
        return subprocess.CompletedProcess(args=args, returncode=127, stdout="", stderr=str(exc))


def failure_hint(args: list[str], result: subprocess.CompletedProcess[str], fallback: str) -> str:
    stderr = (result.stderr or "").strip()
    detail = stderr or fallback
    return f"{detail} (command: {command_for_log(args)})"
