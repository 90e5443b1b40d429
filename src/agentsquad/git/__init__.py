"""Git repository and worktree helpers."""

from .diff import DiffStats, parse_diff
from .repository import (
    canonical_path,
    discover_repositories,
    find_repository_root,
    is_valid_repository,
    sanitize_branch_name,
    sanitize_repository_name,
    validate_repository_path,
)
from .worktree import GitWorktree

__all__ = [
    "canonical_path",
    "DiffStats",
    "discover_repositories",
    "find_repository_root",
    "GitWorktree",
    "is_valid_repository",
    "parse_diff",
    "sanitize_branch_name",
    "sanitize_repository_name",
    "validate_repository_path",
]
