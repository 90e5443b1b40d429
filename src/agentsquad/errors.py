"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    GIT_ERROR = 5
    TMUX_ERROR = 6
    VALIDATION_ERROR = 7
    NOT_FOUND = 8
    PERSISTENCE_ERROR = 9


@dataclass
class AgentSquadError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


class StructuralError(AgentSquadError):
    """Creation or teardown of a worktree/session failed."""


@dataclass
class WorktreeError(StructuralError):
    code: ExitCode = ExitCode.GIT_ERROR


@dataclass
class SessionError(StructuralError):
    code: ExitCode = ExitCode.TMUX_ERROR


@dataclass
class TransientQueryError(AgentSquadError):
    """A status or diff poll failed; callers keep it as data."""


@dataclass
class NotFoundError(AgentSquadError):
    code: ExitCode = ExitCode.NOT_FOUND


@dataclass
class PersistenceError(AgentSquadError):
    code: ExitCode = ExitCode.PERSISTENCE_ERROR


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
