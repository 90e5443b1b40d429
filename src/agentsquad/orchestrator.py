"""End-to-end orchestration of instances, repositories and persisted state."""

from __future__ import annotations

import logging as py_logging
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from agentsquad.collection import InstanceCollection
from agentsquad.config import AppConfig, default_home, state_path
from agentsquad.errors import AgentSquadError, NotFoundError, StructuralError, WorktreeError
from agentsquad.git.diff import DiffStats
from agentsquad.git.repository import discover_repositories
from agentsquad.instance import Instance, Toolchain
from agentsquad.models import RepositoryData, Status
from agentsquad.monitor import PollSummary, StatusMonitor
from agentsquad.process import SubprocessRunner
from agentsquad.registry import RepositoryRegistry
from agentsquad.state import AppState, FileStateStore
from agentsquad.storage import InstanceStore
from agentsquad.tmux.session import PopenFactory

logger = py_logging.getLogger(__name__)


@dataclass
class RepositoryRemoval:
    path: str
    orphaned: int = 0
    worktrees: list[str] = field(default_factory=list)
    sessions: list[str] = field(default_factory=list)


class SquadOrchestrator:
    """Keeps sessions, worktrees and the state document consistent."""

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        home: Path | None = None,
        state: AppState | None = None,
        runner: SubprocessRunner = subprocess.run,
        popen: PopenFactory = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or AppConfig()
        self.home = home or default_home()
        self.toolchain = Toolchain(
            worktree_root=self.config.resolved_worktree_root(self.home),
            branch_prefix=self.config.branch_prefix,
            runner=runner,
            popen=popen,
            sleep=sleep,
        )
        self.state = state or AppState.load(FileStateStore(state_path(self.home)))
        self.registry = RepositoryRegistry(self.state)
        self.store = InstanceStore(self.state)
        self.collection = InstanceCollection()
        self.monitor = StatusMonitor(
            self.collection,
            workers=self.config.poll_workers,
            interval_ms=self.config.status_interval_ms,
        )

    def __enter__(self) -> SquadOrchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.monitor.close()

    def load(self) -> list[Instance]:
        """Reconcile persisted records with the registry and re-adopt their resources."""
        for repo_path in self.store.migrate_instance_repository_paths():
            if self.registry.contains(repo_path):
                continue
            try:
                self.registry.add_repository_from_path(repo_path)
            except WorktreeError as exc:
                logger.warning("Legacy repository not registered path=%s: %s", repo_path, exc)

        orphans = self.store.cleanup_orphaned_instances(self.registry)
        if orphans:
            logger.info("Removed orphaned instances count=%s", orphans)

        restored: list[Instance] = []
        for instance in self.store.load_instances(self.toolchain):
            try:
                instance.start(first_time=False)
            except StructuralError as exc:
                logger.error("Restore failed title=%s; keeping it paused: %s", instance.title, exc)
                instance.set_status(Status.PAUSED)
                instance.start(first_time=False)
            self.collection.add(instance)
            restored.append(instance)

        selected = self.registry.selected_repository
        if selected:
            self.collection.select_repo(selected)
        self.store.update_instance_counts(self.registry)
        logger.debug("Loaded instances count=%s", len(restored))
        return restored

    def save(self) -> bool:
        return self.store.save_instances(self.collection.instances())

    def _persist(self) -> None:
        with self.state.batch():
            self.save()
            self.store.update_instance_counts(self.registry)

    def get(self, title: str) -> Instance:
        return self.collection.get(title)

    def create_instance(
        self,
        title: str,
        *,
        path: str | Path = ".",
        program: str | None = None,
        branch: str = "",
        auto_yes: bool | None = None,
    ) -> Instance:
        instance = Instance(
            title,
            Path(path).expanduser().resolve(),
            program or self.config.default_program,
            toolchain=self.toolchain,
            branch=branch,
            auto_yes=self.config.auto_yes if auto_yes is None else auto_yes,
        )
        self.collection.add(instance)
        try:
            instance.start(first_time=True)
        except AgentSquadError:
            self.collection.remove(title)
            raise
        self.finalize(instance)
        return instance

    def finalize(self, instance: Instance) -> None:
        """Register a started instance's repository and persist it."""
        with self.state.batch():
            self.registry.add_repository_from_path(instance.repository_path)
            self.registry.update_last_accessed(instance.repository_path)
            self.collection.finalize(instance)
            self.collection.select_title(instance.title)
            self._persist()
        logger.info("Instance finalized title=%s repository=%s", instance.title, instance.repository_path)

    def kill_instance(self, title: str) -> Instance:
        instance = self.collection.kill(title)
        self._persist()
        return instance

    def pause_instance(self, title: str) -> Instance:
        instance = self.collection.get(title)
        instance.pause()
        self._persist()
        return instance

    def resume_instance(self, title: str) -> Instance:
        instance = self.collection.get(title)
        instance.resume()
        self._persist()
        return instance

    def attach(self, title: str, *, terminal: bool = False) -> threading.Event:
        instance = self.collection.get(title)
        if terminal:
            return instance.attach_to_terminal()
        return instance.attach()

    def send_prompt(self, title: str, text: str) -> None:
        self.collection.get(title).send_prompt(text)

    def preview(self, title: str, *, history: bool = False, terminal: bool = False) -> str:
        instance = self.collection.get(title)
        if terminal:
            return instance.terminal_preview()
        if history:
            return instance.preview_full_history()
        return instance.preview()

    def diff(self, title: str) -> DiffStats:
        instance = self.collection.get(title)
        instance.update_diff_stats()
        stats = instance.get_diff_stats()
        if stats is None:
            return DiffStats.failed(f"No diff available for '{title}'")
        self.save()
        return stats

    def refresh(self) -> PollSummary:
        summary = self.monitor.poll_all()
        self.save()
        return summary

    def set_preview_size(self, width: int, height: int) -> list[tuple[str, AgentSquadError]]:
        return self.collection.set_preview_size(width, height)

    def repositories(self) -> list[RepositoryData]:
        return self.registry.sorted_by_last_accessed()

    def add_repository(self, path: str | Path) -> RepositoryData:
        repo = self.registry.add_repository_from_path(path)
        self.store.update_instance_counts(self.registry)
        return self.registry.get_repository(repo.path)

    def remove_repository(self, path: str | Path) -> RepositoryRemoval:
        """Forget a repository and drop its now-orphaned instance records.

        Sessions and worktrees of those instances are left running; the result
        lists them so the caller can clean up by hand.
        """
        repo = self.registry.get_repository(path)
        removal = RepositoryRemoval(path=repo.path)
        for record in self.store.records_for_repository(repo.path):
            if record.worktree.worktree_path:
                removal.worktrees.append(record.worktree.worktree_path)
            if record.worktree.session_name:
                removal.sessions.append(record.worktree.session_name)
            logger.warning(
                "Forgetting instance of removed repository title=%s worktree=%s session=%s",
                record.title,
                record.worktree.worktree_path,
                record.worktree.session_name,
            )
        for instance in self.collection.instances():
            if instance.repository_path == repo.path:
                self.collection.remove(instance.title)
        with self.state.batch():
            self.registry.remove_repository(repo.path)
            removal.orphaned = self.store.cleanup_orphaned_instances(self.registry)
        return removal

    def scan_repositories(self, root: str | Path) -> list[RepositoryData]:
        """Register every git repository found below ``root``."""
        found = discover_repositories(root)
        added: list[RepositoryData] = []
        with self.state.batch():
            for path in found:
                if self.registry.contains(path):
                    continue
                try:
                    added.append(self.registry.add_repository_from_path(path))
                except WorktreeError as exc:
                    logger.warning("Skipping discovered repository path=%s: %s", path, exc)
        logger.info("Repository scan root=%s found=%s added=%s", root, len(found), len(added))
        return added

    def select_repository(self, path: str | Path) -> str:
        self.registry.set_selected_repository(path)
        selected = self.registry.selected_repository
        if selected and not self.collection.select_repo(selected):
            logger.debug("Selected repository has no live instances path=%s", selected)
        return selected

    def cleanup_repositories(self) -> int:
        return self.registry.cleanup_invalid_repositories()

    def compact_repositories(self) -> int:
        return self.registry.compact_repositories()

    def reset(self) -> int:
        """Kill every instance and forget all instance records."""
        killed = 0
        for instance in self.collection.instances():
            try:
                self.collection.kill(instance.title)
            except NotFoundError:
                continue
            killed += 1
        with self.state.batch():
            self.store.delete_all_instances()
            self.store.update_instance_counts(self.registry)
        logger.info("Reset complete killed=%s", killed)
        return killed
