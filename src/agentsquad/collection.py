"""Ordered instance collection with selection and repository tabs."""

from __future__ import annotations

import logging as py_logging
import threading
from dataclasses import dataclass
from pathlib import Path

from agentsquad.errors import AgentSquadError, ExitCode, NotFoundError
from agentsquad.instance import Instance
from agentsquad.models import Status

logger = py_logging.getLogger(__name__)


class RepoTabs:
    """Repository paths shown as tabs, with one selected."""

    def __init__(self, repos: list[str] | None = None) -> None:
        self._repos: list[str] = []
        self._selected = 0
        self.set_repos(repos or [])

    @property
    def repos(self) -> list[str]:
        return list(self._repos)

    @property
    def selected_index(self) -> int:
        return self._selected

    @property
    def selected_repo(self) -> str:
        if not self._repos:
            return ""
        return self._repos[self._selected]

    @property
    def selected_name(self) -> str:
        repo = self.selected_repo
        return Path(repo).name if repo else ""

    @property
    def should_show(self) -> bool:
        return len(self._repos) > 1

    def __len__(self) -> int:
        return len(self._repos)

    def __contains__(self, path: object) -> bool:
        return path in self._repos

    def set_repos(self, repos: list[str]) -> None:
        current = self.selected_repo
        self._repos = []
        for repo in repos:
            if repo and repo not in self._repos:
                self._repos.append(repo)
        if current in self._repos:
            self._selected = self._repos.index(current)
        else:
            self._selected = 0

    def add(self, path: str) -> bool:
        if not path or path in self._repos:
            return False
        self._repos.append(path)
        return True

    def remove(self, path: str) -> bool:
        if path not in self._repos:
            return False
        position = self._repos.index(path)
        self._repos.pop(position)
        if position < self._selected or self._selected >= len(self._repos):
            self._selected -= 1
        self._selected = max(0, self._selected)
        return True

    def select(self, path: str) -> bool:
        if path not in self._repos:
            return False
        self._selected = self._repos.index(path)
        return True

    def next_repo(self) -> str:
        if self._repos:
            self._selected = (self._selected + 1) % len(self._repos)
        return self.selected_repo

    def prev_repo(self) -> str:
        if self._repos:
            self._selected = (self._selected - 1) % len(self._repos)
        return self.selected_repo


@dataclass(frozen=True)
class DisplayRow:
    title: str
    branch: str
    status: Status
    repo_name: str
    added: int
    removed: int
    selected: bool
    diff_error: str | None = None


def _repo_of(instance: Instance) -> str:
    if not instance.started:
        return ""
    worktree = instance.worktree
    if worktree is not None:
        return worktree.repo_path
    return instance.repository_path


class InstanceCollection:
    """Append-ordered instances indexed by title.

    The selection is a position in the unfiltered sequence and is kept on an
    instance visible under the active repository tab.
    """

    def __init__(self, tabs: RepoTabs | None = None) -> None:
        self.tabs = tabs or RepoTabs()
        self.lock = threading.RLock()
        self._instances: list[Instance] = []
        self._by_title: dict[str, Instance] = {}
        self._selected = 0

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, title: object) -> bool:
        return title in self._by_title

    def instances(self) -> list[Instance]:
        with self.lock:
            return list(self._instances)

    def get(self, title: str) -> Instance:
        with self.lock:
            instance = self._by_title.get(title)
        if instance is None:
            raise NotFoundError(
                f"Instance not found: {title}",
                hint="Run 'agentsquad list --all' to see known instances.",
            )
        return instance

    def add(self, instance: Instance) -> Instance:
        with self.lock:
            if instance.title in self._by_title:
                raise AgentSquadError(
                    f"Instance already exists: {instance.title}",
                    code=ExitCode.VALIDATION_ERROR,
                    hint="Use a unique instance title.",
                )
            self._instances.append(instance)
            self._by_title[instance.title] = instance
            if instance.started:
                self.tabs.add(_repo_of(instance))
            if self._is_visible(instance):
                self._selected = len(self._instances) - 1
            self.ensure_valid_selection()
        logger.debug("Instance added to collection title=%s", instance.title)
        return instance

    def finalize(self, instance: Instance) -> None:
        """Record a freshly started instance's repository as a tab."""
        with self.lock:
            if instance.title not in self._by_title:
                raise NotFoundError(f"Instance not found: {instance.title}")
            repo = _repo_of(instance)
            if self.tabs.add(repo):
                logger.debug("Repository tab added path=%s", repo)
            self.ensure_valid_selection()

    def remove(self, title: str) -> Instance:
        with self.lock:
            instance = self.get(title)
            repo = _repo_of(instance) or instance.repository_path
            position = self._instances.index(instance)
            self._instances.pop(position)
            del self._by_title[title]
            # Earlier removals shift the selected instance down by one.
            if position < self._selected or self._selected >= len(self._instances):
                self._selected = max(0, self._selected - 1)
            if repo and not any(_repo_of(other) == repo for other in self._instances):
                self.tabs.remove(repo)
                logger.debug("Repository tab dropped path=%s", repo)
            self.ensure_valid_selection()
        return instance

    def kill(self, title: str) -> Instance:
        with self.lock:
            instance = self.get(title)
            instance.kill()
            return self.remove(title)

    def kill_selected(self) -> Instance | None:
        with self.lock:
            instance = self.selected
            if instance is None:
                return None
            return self.kill(instance.title)

    def _is_visible(self, instance: Instance) -> bool:
        if not self.tabs.should_show or not instance.started:
            return True
        return _repo_of(instance) == self.tabs.selected_repo

    def filtered(self) -> list[Instance]:
        with self.lock:
            return [instance for instance in self._instances if self._is_visible(instance)]

    @property
    def selected_index(self) -> int:
        """Position of the selection in the unfiltered sequence."""
        return self._selected

    @property
    def selected(self) -> Instance | None:
        with self.lock:
            visible = self.filtered()
            if not visible:
                return None
            if self._selected < len(self._instances):
                current = self._instances[self._selected]
                if self._is_visible(current):
                    return current
            return visible[0]

    def set_selected_index(self, index: int) -> bool:
        with self.lock:
            if index < 0 or index >= len(self._instances):
                return False
            if not self._is_visible(self._instances[index]):
                return False
            self._selected = index
            return True

    def select_title(self, title: str) -> bool:
        with self.lock:
            instance = self._by_title.get(title)
            if instance is None or not self._is_visible(instance):
                return False
            self._selected = self._instances.index(instance)
            return True

    def _step(self, offset: int) -> Instance | None:
        with self.lock:
            visible = self.filtered()
            if not visible:
                return None
            current = self.selected
            position = visible.index(current) if current is not None else 0
            target = visible[min(max(position + offset, 0), len(visible) - 1)]
            self._selected = self._instances.index(target)
            return target

    def select_next(self) -> Instance | None:
        return self._step(1)

    def select_previous(self) -> Instance | None:
        return self._step(-1)

    def ensure_valid_selection(self) -> None:
        """Keep the selection on a visible instance, falling back to the first visible one."""
        with self.lock:
            if not self._instances:
                self._selected = 0
                return
            if self._selected >= len(self._instances) or self._selected < 0:
                self._selected = 0
            if self._is_visible(self._instances[self._selected]):
                return
            visible = self.filtered()
            if visible:
                self._selected = self._instances.index(visible[0])

    def select_repo(self, path: str) -> bool:
        with self.lock:
            if not self.tabs.select(path):
                return False
            self.ensure_valid_selection()
            return True

    def next_repo(self) -> str:
        with self.lock:
            repo = self.tabs.next_repo()
            self.ensure_valid_selection()
            return repo

    def prev_repo(self) -> str:
        with self.lock:
            repo = self.tabs.prev_repo()
            self.ensure_valid_selection()
            return repo

    def set_preview_size(self, width: int, height: int) -> list[tuple[str, AgentSquadError]]:
        """Resize every live session; failures are collected instead of stopping the pass."""
        failures: list[tuple[str, AgentSquadError]] = []
        for instance in self.instances():
            if not instance.started or instance.paused:
                continue
            try:
                instance.set_preview_size(width, height)
            except AgentSquadError as exc:
                logger.warning("Preview resize failed title=%s: %s", instance.title, exc)
                failures.append((instance.title, exc))
        return failures

    def display_rows(self, *, include_all: bool = False) -> list[DisplayRow]:
        with self.lock:
            selected = self.selected
            source = self._instances if include_all else self.filtered()
            rows: list[DisplayRow] = []
            for instance in source:
                stats = instance.get_diff_stats()
                rows.append(
                    DisplayRow(
                        title=instance.title,
                        branch=instance.branch,
                        status=instance.status,
                        repo_name=instance.repo_name(),
                        added=stats.added if stats is not None else 0,
                        removed=stats.removed if stats is not None else 0,
                        selected=instance is selected,
                        diff_error=stats.error if stats is not None else None,
                    )
                )
            return rows
