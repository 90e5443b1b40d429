"""Git worktree lifecycle for a single instance."""

from __future__ import annotations

import logging as py_logging
import re
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

from agentsquad.errors import NotFoundError, WorktreeError
from agentsquad.git.diff import DiffStats, parse_diff
from agentsquad.git.repository import (
    find_repository_root,
    sanitize_repository_name,
    validate_repository_path,
)
from agentsquad.models import WorktreeRecord
from agentsquad.process import SubprocessRunner, command_for_log, failure_hint, run_captured

logger = py_logging.getLogger(__name__)

_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")
_ABSENT_WORKTREE_MARKERS = ("is not a working tree", "does not exist", "no such file")
_ABSENT_BRANCH_MARKERS = ("not found",)


def _safe(value: str) -> str:
    cleaned = _SANITIZE_PATTERN.sub("-", value).strip("-")
    return cleaned or "default"


def _is_absent(stderr: str, markers: tuple[str, ...]) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in markers)


def allocate_worktree_path(root: Path, branch: str, *, clock: Callable[[], int] = time.time_ns) -> Path:
    """Return an unused ``<root>/<branch>_<hex ns>`` path, suffixed on collision."""
    base = f"{_safe(branch)}_{clock():x}"
    candidate = root / base
    suffix = 2
    while candidate.exists():
        candidate = root / f"{base}-{suffix}"
        suffix += 1
    return candidate


class GitWorktree:
    def __init__(
        self,
        repo_path: str | Path,
        worktree_path: str | Path,
        session_name: str,
        branch_name: str,
        base_commit_sha: str = "",
        *,
        runner: SubprocessRunner = subprocess.run,
    ) -> None:
        self.repo_path = str(repo_path)
        self.worktree_path = str(worktree_path)
        self.session_name = session_name
        self.branch_name = branch_name
        self.base_commit_sha = base_commit_sha
        self._runner = runner

    def _git(self, cwd: str, *args: str) -> tuple[list[str], subprocess.CompletedProcess[str]]:
        cmd = ["git", "-C", cwd, *args]
        return cmd, run_captured(self._runner, cmd)

    @classmethod
    def create(
        cls,
        path: str | Path,
        session_name: str,
        branch: str,
        *,
        worktree_root: str | Path,
        runner: SubprocessRunner = subprocess.run,
        clock: Callable[[], int] = time.time_ns,
    ) -> GitWorktree:
        try:
            repo_root = find_repository_root(path)
        except NotFoundError as exc:
            raise WorktreeError(exc.message, hint=exc.hint) from exc
        validate_repository_path(repo_root)
        repo = str(repo_root)

        head_cmd = ["git", "-C", repo, "rev-parse", "HEAD"]
        head = run_captured(runner, head_cmd)
        if head.returncode != 0 or not head.stdout.strip():
            logger.error("Failed to resolve HEAD repo=%s stderr=%s", repo, head.stderr.strip())
            raise WorktreeError(
                f"Failed to resolve HEAD for {repo}",
                hint=failure_hint(head_cmd, head, "Repository needs at least one commit."),
            )
        base_sha = head.stdout.strip()

        exists_cmd = ["git", "-C", repo, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"]
        if run_captured(runner, exists_cmd).returncode == 0:
            # remove() runs branch -D, so the branch must be one created here.
            logger.error("Branch already exists repo=%s branch=%s", repo, branch)
            raise WorktreeError(
                f"Branch '{branch}' already exists in {repo}",
                hint="Pick another title or --branch; existing branches are never reused.",
            )

        prune_cmd = ["git", "-C", repo, "worktree", "prune"]
        prune = run_captured(runner, prune_cmd)
        if prune.returncode != 0:
            logger.warning("git worktree prune failed repo=%s stderr=%s", repo, prune.stderr.strip())

        root = Path(worktree_root).expanduser()
        root.mkdir(parents=True, exist_ok=True)
        target = allocate_worktree_path(root, branch, clock=clock)

        cmd = ["git", "-C", repo, "worktree", "add", "-b", branch, str(target), base_sha]
        logger.debug("Adding worktree repo=%s branch=%s target=%s", repo, branch, target)
        result = run_captured(runner, cmd)
        if result.returncode != 0:
            logger.error(
                "git worktree add failed cmd=%s stderr=%s",
                command_for_log(cmd),
                result.stderr.strip(),
            )
            raise WorktreeError(
                f"Failed to create worktree for branch '{branch}'",
                hint=failure_hint(cmd, result, "Check branch name and repository health."),
            )

        logger.info("Created worktree repo=%s branch=%s path=%s base=%s", repo, branch, target, base_sha)
        return cls(repo, target, session_name, branch, base_sha, runner=runner)

    @classmethod
    def from_record(
        cls,
        record: WorktreeRecord,
        *,
        runner: SubprocessRunner = subprocess.run,
    ) -> GitWorktree:
        return cls(
            record.repo_path,
            record.worktree_path,
            record.session_name,
            record.branch_name,
            record.base_commit_sha,
            runner=runner,
        )

    def to_record(self) -> WorktreeRecord:
        return WorktreeRecord(
            repo_path=self.repo_path,
            worktree_path=self.worktree_path,
            session_name=self.session_name,
            branch_name=self.branch_name,
            base_commit_sha=self.base_commit_sha,
        )

    @property
    def repo_name(self) -> str:
        return sanitize_repository_name(self.repo_path)

    def exists(self) -> bool:
        return Path(self.worktree_path).is_dir()

    def remove(self) -> None:
        """Remove the worktree and delete its branch; both steps always run."""
        failures: list[str] = []

        remove_cmd, removed = self._git(
            self.repo_path, "worktree", "remove", "--force", self.worktree_path
        )
        if removed.returncode != 0:
            if _is_absent(removed.stderr, _ABSENT_WORKTREE_MARKERS):
                logger.debug("Worktree already absent path=%s", self.worktree_path)
            else:
                failures.append(failure_hint(remove_cmd, removed, "git worktree remove failed"))

        branch_cmd, deleted = self._git(self.repo_path, "branch", "-D", self.branch_name)
        if deleted.returncode != 0:
            if _is_absent(deleted.stderr, _ABSENT_BRANCH_MARKERS):
                logger.debug("Branch already absent branch=%s", self.branch_name)
            else:
                failures.append(failure_hint(branch_cmd, deleted, "git branch -D failed"))

        _, pruned = self._git(self.repo_path, "worktree", "prune")
        if pruned.returncode != 0:
            logger.warning(
                "git worktree prune failed repo=%s stderr=%s",
                self.repo_path,
                pruned.stderr.strip(),
            )

        if failures:
            logger.error("Worktree cleanup incomplete path=%s failures=%s", self.worktree_path, failures)
            raise WorktreeError(
                f"Cleanup failed for {self.worktree_path}",
                hint="; ".join(failures),
            )
        logger.info("Removed worktree path=%s branch=%s", self.worktree_path, self.branch_name)

    def is_dirty(self) -> bool:
        cmd, result = self._git(self.worktree_path, "status", "--porcelain")
        if result.returncode != 0:
            logger.error("Dirty check failed for %s stderr=%s", self.worktree_path, result.stderr.strip())
            raise WorktreeError(
                f"Dirty check failed for {self.worktree_path}",
                hint=failure_hint(cmd, result, "Run git status manually."),
            )
        dirty = bool(result.stdout.strip())
        logger.debug("Dirty check path=%s dirty=%s", self.worktree_path, dirty)
        return dirty

    def diff_stats(self) -> DiffStats:
        if not self.base_commit_sha:
            return DiffStats.failed("base commit SHA not set")
        if not self.exists():
            return DiffStats.failed(f"worktree path does not exist: {self.worktree_path}")

        # Intent-to-add makes untracked files visible to git diff.
        add_cmd, staged = self._git(self.worktree_path, "add", "-N", ".")
        if staged.returncode != 0:
            return DiffStats.failed(failure_hint(add_cmd, staged, "git add -N failed"))

        diff_cmd, diff = self._git(self.worktree_path, "--no-pager", "diff", self.base_commit_sha)
        if diff.returncode != 0:
            return DiffStats.failed(failure_hint(diff_cmd, diff, "git diff failed"))
        return parse_diff(diff.stdout)

    def __repr__(self) -> str:
        return (
            f"GitWorktree(repo_path={self.repo_path!r}, worktree_path={self.worktree_path!r}, "
            f"branch_name={self.branch_name!r})"
        )
