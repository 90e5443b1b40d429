"""Repository root resolution, validation and discovery."""

from __future__ import annotations

import os
import re
from pathlib import Path

from agentsquad.errors import ExitCode, NotFoundError, WorktreeError

DEFAULT_IGNORES = {".venv", "node_modules", "__pycache__", ".pytest_cache"}
GIT_MARKER = ".git"

_BRANCH_INVALID = re.compile(r"[^a-z0-9\-_/.]+")
_REPEATED_DASH = re.compile(r"-+")


def canonical_path(path: str | Path) -> str:
    return str(Path(path).expanduser().resolve())


def find_repository_root(path: str | Path) -> Path:
    """Walk up from ``path`` to the first directory holding a ``.git`` marker."""
    current = Path(path).expanduser().resolve()
    while True:
        if (current / GIT_MARKER).exists():
            return current
        parent = current.parent
        if parent == current:
            break
        current = parent
    raise NotFoundError(
        f"No git repository found for path: {path}",
        hint="Run inside a git repository or pass --path pointing at one.",
    )


def validate_repository_path(path: str | Path) -> None:
    raw = str(path).strip()
    if not raw:
        raise WorktreeError(
            "Repository path cannot be empty",
            code=ExitCode.VALIDATION_ERROR,
        )
    candidate = Path(raw)
    try:
        if not candidate.exists():
            raise WorktreeError(
                f"Repository path does not exist: {raw}",
                code=ExitCode.VALIDATION_ERROR,
            )
        if not candidate.is_dir():
            raise WorktreeError(
                f"Repository path is not a directory: {raw}",
                code=ExitCode.VALIDATION_ERROR,
            )
        if not (candidate / GIT_MARKER).exists():
            raise WorktreeError(
                f"Path is not a git repository (no .git found): {raw}",
                code=ExitCode.VALIDATION_ERROR,
            )
        if not os.access(candidate, os.R_OK | os.X_OK):
            raise WorktreeError(
                f"Repository path is not readable: {raw}",
                code=ExitCode.VALIDATION_ERROR,
            )
    except OSError as exc:
        raise WorktreeError(
            f"Error accessing repository path {raw}",
            code=ExitCode.VALIDATION_ERROR,
            hint=str(exc),
        ) from exc


def is_valid_repository(path: str | Path) -> bool:
    try:
        validate_repository_path(path)
    except WorktreeError:
        return False
    return True


def sanitize_repository_name(path: str | Path) -> str:
    cleaned = Path(str(path).rstrip("/\\") or "/")
    name = cleaned.name
    if name in {"", "."}:
        parts = [part for part in cleaned.parts if part not in {"/", "\\"}]
        if len(parts) >= 2:
            return f"{parts[-2]}/{parts[-1]}"
        if parts:
            return parts[-1]
        return "unknown"
    return name


def sanitize_branch_name(title: str, prefix: str = "") -> str:
    """Turn an instance title into a git-safe branch name."""
    lowered = title.strip().lower().replace(" ", "-")
    cleaned = _BRANCH_INVALID.sub("", lowered)
    cleaned = _REPEATED_DASH.sub("-", cleaned).strip("-/.")
    if not cleaned:
        cleaned = "session"
    return f"{prefix}{cleaned}"


def discover_repositories(root: str | Path, ignore_dirs: set[str] | None = None) -> list[Path]:
    start = Path(root).expanduser().resolve()
    if not start.exists() or not start.is_dir():
        return []

    ignored = DEFAULT_IGNORES | (ignore_dirs or set())
    seen: set[Path] = set()
    repos: list[Path] = []

    for dirpath, dirnames, filenames in os.walk(start, topdown=True):
        current = Path(dirpath)
        dirnames[:] = [name for name in dirnames if name not in ignored]

        if GIT_MARKER in dirnames or GIT_MARKER in filenames:
            resolved = current.resolve()
            if resolved not in seen:
                seen.add(resolved)
                repos.append(resolved)
            dirnames[:] = []

    repos.sort(key=lambda item: str(item).lower())
    return repos
