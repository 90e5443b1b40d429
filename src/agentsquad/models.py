"""Persisted record models for instances and repositories."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Status(str, Enum):
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"


class WorktreeRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    repo_path: str = ""
    worktree_path: str = ""
    session_name: str = ""
    branch_name: str = ""
    base_commit_sha: str = ""


class DiffStatsRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    added: int = 0
    removed: int = 0
    content: str = ""


class InstanceRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    path: str = ""
    branch: str = ""
    status: Status = Status.READY
    height: int = 0
    width: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    auto_yes: bool = False
    repository_path: str = ""
    program: str = ""
    worktree: WorktreeRecord = Field(default_factory=WorktreeRecord)
    diff_stats: DiffStatsRecord = Field(default_factory=DiffStatsRecord)
    # Digest of the last captured agent pane, so status survives a restart.
    pane_hash: str = ""


class RepositoryData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str
    name: str = ""
    last_accessed: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    instance_count: int = Field(default=0, ge=0)
