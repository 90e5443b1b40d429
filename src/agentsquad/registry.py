"""Known repositories, keyed by canonical path, persisted in the state document."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from typing_extensions import NotRequired, TypedDict

from agentsquad.errors import NotFoundError, WorktreeError
from agentsquad.git.repository import (
    canonical_path,
    find_repository_root,
    sanitize_repository_name,
    validate_repository_path,
)
from agentsquad.models import RepositoryData, utcnow
from agentsquad.state import AppState

logger = py_logging.getLogger(__name__)


class RegistryStats(TypedDict):
    total_repositories: int
    total_instances: int
    selected_repository: str
    average_instances_per_repo: NotRequired[float]


def create_repository_data(path: str | Path) -> RepositoryData:
    validate_repository_path(path)
    resolved = canonical_path(path)
    now = utcnow()
    return RepositoryData(
        path=resolved,
        name=sanitize_repository_name(resolved),
        last_accessed=now,
        created_at=now,
        instance_count=0,
    )


class RepositoryRegistry:
    def __init__(self, state: AppState) -> None:
        self._state = state
        self._index: dict[str, RepositoryData] = {}
        self._reindex()

    def _reindex(self) -> None:
        self._index = {repo.path: repo for repo in self._state.document.repositories}

    @staticmethod
    def _key(path: str | Path) -> str:
        return canonical_path(path) if str(path).strip() else ""

    def _must_get(self, path: str | Path) -> RepositoryData:
        repo = self._index.get(self._key(path))
        if repo is None:
            raise NotFoundError(
                f"Repository not found: {path}",
                hint="Add the repository first with 'agentsquad repos add'.",
            )
        return repo

    @contextmanager
    def batch_update(self) -> Iterator[RepositoryRegistry]:
        """Apply several mutations under one lock and one persist."""
        with self._state.batch():
            yield self

    def repositories(self) -> list[RepositoryData]:
        return list(self._state.document.repositories)

    def paths(self) -> list[str]:
        return [repo.path for repo in self._state.document.repositories]

    def get_repository(self, path: str | Path) -> RepositoryData:
        return self._must_get(path).model_copy()

    def contains(self, path: str | Path) -> bool:
        return bool(str(path).strip()) and self._key(path) in self._index

    def add_repository(self, repo: RepositoryData) -> RepositoryData:
        """Insert or replace by canonical path."""
        key = self._key(repo.path)
        stored = repo.model_copy(update={"path": key})
        with self._state.batch() as document:
            existing = self._index.get(key)
            if existing is not None:
                position = document.repositories.index(existing)
                document.repositories[position] = stored
            else:
                document.repositories.append(stored)
            self._index[key] = stored
            self._state.save()
        logger.debug("Repository upserted path=%s", key)
        return stored.model_copy()

    def add_repository_from_path(self, path: str | Path) -> RepositoryData:
        try:
            root = find_repository_root(path)
        except NotFoundError as exc:
            raise WorktreeError(f"Not a git repository: {path}", hint=exc.hint) from exc
        key = canonical_path(root)
        if key in self._index:
            self.update_last_accessed(key)
            return self.get_repository(key)
        repo = create_repository_data(root)
        logger.info("Repository added path=%s name=%s", repo.path, repo.name)
        return self.add_repository(repo)

    def remove_repository(self, path: str | Path) -> None:
        """Forget a repository; its instances become orphans."""
        repo = self._must_get(path)
        with self._state.batch() as document:
            document.repositories.remove(repo)
            del self._index[repo.path]
            if document.selected_repository == repo.path:
                document.selected_repository = ""
            self._state.save()
        logger.info("Repository removed path=%s", repo.path)

    def update_repository(self, repo: RepositoryData) -> None:
        self._must_get(repo.path)
        self.add_repository(repo)

    @property
    def selected_repository(self) -> str:
        return self._state.document.selected_repository

    def set_selected_repository(self, path: str | Path) -> None:
        key = ""
        if str(path).strip():
            key = self._must_get(path).path
        with self._state.batch() as document:
            document.selected_repository = key
            self._state.save()

    def update_instance_count(self, path: str | Path, count: int) -> None:
        repo = self._must_get(path)
        with self._state.batch():
            repo.instance_count = max(0, count)
            self._state.save()

    def update_last_accessed(self, path: str | Path) -> None:
        repo = self._must_get(path)
        with self._state.batch():
            repo.last_accessed = utcnow()
            self._state.save()

    def sorted_by_last_accessed(self) -> list[RepositoryData]:
        # sorted() is stable, so ties keep insertion order.
        return sorted(self.repositories(), key=lambda repo: repo.last_accessed, reverse=True)

    def cleanup_invalid_repositories(self) -> int:
        return self._drop(lambda repo: True, reason="invalid")

    def compact_repositories(self) -> int:
        return self._drop(lambda repo: repo.instance_count == 0, reason="empty-and-invalid")

    def _drop(self, eligible: Callable[[RepositoryData], bool], *, reason: str) -> int:
        removed = 0
        with self._state.batch() as document:
            kept: list[RepositoryData] = []
            for repo in document.repositories:
                if eligible(repo):
                    try:
                        validate_repository_path(repo.path)
                    except WorktreeError as exc:
                        logger.info("Removing repository path=%s reason=%s: %s", repo.path, reason, exc.message)
                        removed += 1
                        continue
                kept.append(repo)
            if removed:
                document.repositories = kept
                if document.selected_repository and document.selected_repository not in {
                    repo.path for repo in kept
                }:
                    document.selected_repository = ""
                self._reindex()
                self._state.save()
        return removed

    def stats(self) -> RegistryStats:
        repos = self._state.document.repositories
        total_instances = sum(repo.instance_count for repo in repos)
        stats: RegistryStats = {
            "total_repositories": len(repos),
            "total_instances": total_instances,
            "selected_repository": self.selected_repository,
        }
        if repos:
            stats["average_instances_per_repo"] = total_instances / len(repos)
        return stats
