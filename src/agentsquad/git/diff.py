"""Diff statistics for a worktree relative to its base commit."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class DiffStats:
    added: int = 0
    removed: int = 0
    content: str = ""
    error: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.added == 0 and self.removed == 0 and not self.content

    @classmethod
    def failed(cls, message: str) -> DiffStats:
        return cls(error=message)


def parse_diff(content: str) -> DiffStats:
    """Count added/removed lines of a unified diff, skipping file headers."""
    added = 0
    removed = 0
    for line in content.splitlines():
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return DiffStats(added=added, removed=removed, content=content)
