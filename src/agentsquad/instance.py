"""Instance lifecycle: one agent session bound to one worktree."""

from __future__ import annotations

import logging as py_logging
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from agentsquad.errors import AgentSquadError, ExitCode, SessionError, TransientQueryError, WorktreeError
from agentsquad.git.diff import DiffStats
from agentsquad.git.repository import sanitize_branch_name
from agentsquad.git.worktree import GitWorktree
from agentsquad.models import DiffStatsRecord, InstanceRecord, Status, utcnow
from agentsquad.process import SubprocessRunner
from agentsquad.tmux.session import PopenFactory, TmuxSession, session_name_for

logger = py_logging.getLogger(__name__)

_MISSING_BASE_SHA = "base commit SHA not set"


@dataclass
class Toolchain:
    """External command surfaces and locations shared by every instance."""

    worktree_root: Path
    branch_prefix: str = ""
    runner: SubprocessRunner = subprocess.run
    popen: PopenFactory = subprocess.Popen
    sleep: Callable[[float], None] = field(default=time.sleep)

    def session(self, name: str, program: str) -> TmuxSession:
        return TmuxSession(name, program, runner=self.runner, popen=self.popen, sleep=self.sleep)


def _finished_event() -> threading.Event:
    event = threading.Event()
    event.set()
    return event


class Instance:
    def __init__(
        self,
        title: str,
        path: str | Path,
        program: str,
        *,
        toolchain: Toolchain,
        branch: str = "",
        auto_yes: bool = False,
        status: Status = Status.READY,
        height: int = 0,
        width: int = 0,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        self.title = title
        self.path = str(path)
        self.program = program
        self.branch = branch
        self.auto_yes = auto_yes
        self.status = status
        self.height = height
        self.width = width
        self.created_at = created_at or utcnow()
        self.updated_at = updated_at or self.created_at
        self.repository_path = ""
        self.last_poll_error: TransientQueryError | None = None
        self._toolchain = toolchain
        self._worktree: GitWorktree | None = None
        self._session: TmuxSession | None = None
        self._diff_stats: DiffStats | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def paused(self) -> bool:
        return self.status == Status.PAUSED

    @property
    def worktree(self) -> GitWorktree | None:
        return self._worktree

    @property
    def session(self) -> TmuxSession | None:
        return self._session

    def _touch(self) -> None:
        self.updated_at = utcnow()

    def set_status(self, status: Status) -> None:
        if self.status != status:
            self.status = status
            self._touch()

    def set_title(self, title: str) -> None:
        if self._started:
            raise AgentSquadError(
                "Cannot change the title of a started instance.",
                code=ExitCode.VALIDATION_ERROR,
            )
        self.title = title

    def start(self, first_time: bool = True) -> None:
        """Materialize the worktree and session, or re-adopt them after a restart."""
        if not self.title.strip():
            raise AgentSquadError("Instance title cannot be empty.", code=ExitCode.VALIDATION_ERROR)
        if self._started:
            logger.debug("Instance already started title=%s", self.title)
            return

        session = self._session or self._toolchain.session(session_name_for(self.title), self.program)
        if first_time:
            branch = self.branch or sanitize_branch_name(self.title, self._toolchain.branch_prefix)
            worktree = GitWorktree.create(
                self.path,
                session.name,
                branch,
                worktree_root=self._toolchain.worktree_root,
                runner=self._toolchain.runner,
            )
            try:
                session.start(worktree.worktree_path)
            except SessionError:
                logger.error("Session start failed; rolling back worktree title=%s", self.title)
                try:
                    worktree.remove()
                except WorktreeError as cleanup_error:
                    logger.error("Worktree rollback failed title=%s: %s", self.title, cleanup_error)
                raise
            self.branch = branch
            self.status = Status.RUNNING
        else:
            worktree = self._worktree
            if worktree is None:
                raise WorktreeError(
                    f"Instance '{self.title}' has no worktree to restore.",
                    code=ExitCode.VALIDATION_ERROR,
                )
            if not self.paused:
                if session.exists():
                    session.restore()
                else:
                    if not worktree.exists():
                        raise WorktreeError(
                            f"Worktree missing for '{self.title}': {worktree.worktree_path}",
                            hint="The worktree was removed outside agentsquad.",
                        )
                    session.start(worktree.worktree_path)

        self._worktree = worktree
        self._session = session
        self.repository_path = worktree.repo_path
        self._started = True
        self._touch()
        logger.info(
            "Instance started title=%s branch=%s first_time=%s",
            self.title,
            self.branch,
            first_time,
        )

    def kill(self) -> None:
        """Tear down session then worktree; failures are logged, never raised."""
        if not self._started:
            logger.debug("Kill skipped for unstarted instance title=%s", self.title)
            return

        session, worktree = self._session, self._worktree
        self._started = False
        self._session = None
        self._worktree = None

        # Session first so no attached client points into a deleted worktree.
        if session is not None:
            try:
                session.kill()
            except SessionError as exc:
                logger.error("Failed to kill session title=%s: %s", self.title, exc)
        if worktree is not None:
            try:
                worktree.remove()
            except WorktreeError as exc:
                logger.error("Failed to remove worktree title=%s: %s", self.title, exc)
        logger.info("Instance killed title=%s", self.title)

    def pause(self) -> None:
        if not self._started or self.paused:
            return
        if self._session is not None:
            self._session.kill()
        self.set_status(Status.PAUSED)
        logger.info("Instance paused title=%s", self.title)

    def resume(self) -> None:
        if not self._started or not self.paused:
            return
        worktree = self._worktree
        if worktree is None or not worktree.exists():
            path = worktree.worktree_path if worktree is not None else ""
            raise WorktreeError(
                f"Cannot resume '{self.title}': worktree is missing {path}".rstrip(),
                hint="The worktree was removed outside agentsquad; kill the instance instead.",
            )
        session = self._toolchain.session(session_name_for(self.title), self.program)
        if session.exists():
            session.restore()
        else:
            session.start(worktree.worktree_path)
        self._session = session
        self.set_status(Status.READY)
        logger.info("Instance resumed title=%s", self.title)

    def update_status(self) -> bool:
        """Poll the agent pane; returns False when the poll result is unusable."""
        session = self._session
        if not self._started or self.paused or session is None:
            return False
        try:
            updated, has_prompt = session.has_updated()
        except SessionError as exc:
            self.last_poll_error = TransientQueryError(exc.message, hint=exc.hint)
            logger.debug("Status poll failed title=%s: %s", self.title, exc)
            return False
        if not self._started or self._session is not session:
            # Killed or paused while polling.
            return False
        self.last_poll_error = None
        if updated is None:
            # First sample of this session only sets the baseline.
            return True
        if updated:
            self.set_status(Status.RUNNING)
        elif has_prompt and self.auto_yes:
            try:
                session.tap_enter()
            except SessionError as exc:
                logger.warning("Auto-yes keypress failed title=%s: %s", self.title, exc)
        else:
            self.set_status(Status.READY)
        return True

    def update_diff_stats(self) -> bool:
        worktree = self._worktree
        if not self._started or worktree is None:
            self._diff_stats = None
            return False
        if self.paused:
            return False
        stats = worktree.diff_stats()
        if self._worktree is not worktree:
            return False
        if stats.error == _MISSING_BASE_SHA:
            self._diff_stats = None
        else:
            self._diff_stats = stats
        return True

    def get_diff_stats(self) -> DiffStats | None:
        return self._diff_stats

    def set_preview_size(self, width: int, height: int) -> None:
        if not self._started or self.paused or self._session is None:
            return
        self._session.resize(width, height)
        self.width = width
        self.height = height

    def attach(self) -> threading.Event:
        if not self._started or self.paused or self._session is None:
            logger.warning("Attach ignored for inactive instance title=%s", self.title)
            return _finished_event()
        return self._session.attach()

    def attach_to_terminal(self) -> threading.Event:
        if not self._started or self.paused or self._session is None or self._worktree is None:
            logger.warning("Terminal attach ignored for inactive instance title=%s", self.title)
            return _finished_event()
        return self._session.attach_terminal(self._worktree.worktree_path)

    def preview(self) -> str:
        if not self._started or self.paused or self._session is None:
            return ""
        return self._session.capture_pane_content()

    def preview_full_history(self) -> str:
        if not self._started or self.paused or self._session is None:
            return ""
        return self._session.capture_pane_history()

    def terminal_preview(self) -> str:
        if not self._started or self.paused or self._session is None or self._worktree is None:
            return ""
        return self._session.capture_terminal_content(self._worktree.worktree_path)

    def send_prompt(self, text: str) -> None:
        if not self._started or self.paused or self._session is None:
            return
        self._session.send_keys(text)
        # Give the agent's line editor a beat before submitting.
        self._toolchain.sleep(0.1)
        self._session.tap_enter()

    def repo_name(self) -> str:
        if not self._started or self._worktree is None:
            return ""
        return self._worktree.repo_name

    def to_record(self) -> InstanceRecord:
        stats = self._diff_stats
        diff_record = DiffStatsRecord()
        if stats is not None and stats.error is None:
            diff_record = DiffStatsRecord(added=stats.added, removed=stats.removed, content=stats.content)
        record = InstanceRecord(
            title=self.title,
            path=self.path,
            branch=self.branch,
            status=self.status,
            height=self.height,
            width=self.width,
            created_at=self.created_at,
            updated_at=self.updated_at,
            auto_yes=self.auto_yes,
            repository_path=self.repository_path,
            program=self.program,
        )
        if self._worktree is not None:
            record.worktree = self._worktree.to_record()
        if self._session is not None:
            record.pane_hash = self._session.last_hash
        record.diff_stats = diff_record
        return record

    @classmethod
    def from_record(cls, record: InstanceRecord, *, toolchain: Toolchain) -> Instance:
        """Rebuild an unstarted instance; call ``start(first_time=False)`` to adopt resources."""
        instance = cls(
            record.title,
            record.path,
            record.program,
            toolchain=toolchain,
            branch=record.branch,
            auto_yes=record.auto_yes,
            status=record.status,
            height=record.height,
            width=record.width,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        instance.repository_path = record.repository_path
        instance._worktree = GitWorktree.from_record(record.worktree, runner=toolchain.runner)
        session_name = record.worktree.session_name or session_name_for(record.title)
        instance._session = toolchain.session(session_name, record.program)
        instance._session.seed_hash(record.pane_hash)
        diff = record.diff_stats
        if diff.added or diff.removed or diff.content:
            instance._diff_stats = DiffStats(added=diff.added, removed=diff.removed, content=diff.content)
        return instance

    def __repr__(self) -> str:
        return f"Instance(title={self.title!r}, status={self.status.value}, started={self._started})"
