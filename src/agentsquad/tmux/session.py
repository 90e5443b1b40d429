"""tmux session wrapper: agent window plus a lazily created shell window."""

from __future__ import annotations

import hashlib
import logging as py_logging
import re
import subprocess
import threading
import time
from collections.abc import Callable
from typing import Any

from agentsquad.errors import SessionError
from agentsquad.process import SubprocessRunner, command_for_log, failure_hint, run_captured
from agentsquad.retry import SESSION_START_POLICY, RetryPolicy, wait_until

logger = py_logging.getLogger(__name__)

SESSION_PREFIX = "agentsquad_"
AGENT_WINDOW = "0"
TERMINAL_WINDOW = "terminal"
HISTORY_LIMIT = 10000

_WHITESPACE = re.compile(r"\s+")
_ABSENT_SESSION_MARKERS = (
    "can't find session",
    "session not found",
    "no server running",
    "error connecting",
)

# Confirmation prompts that auto-yes answers with Enter, keyed by program name.
PROMPT_MARKERS: dict[str, str] = {
    "claude": "No, and tell Claude what to do differently",
    "aider": "(Y)es/(N)o/(D)on't ask again",
    "gemini": "Yes, allow once",
}

PopenFactory = Callable[..., Any]


def session_name_for(title: str) -> str:
    cleaned = _WHITESPACE.sub("", title).replace(".", "_").replace(":", "_")
    return f"{SESSION_PREFIX}{cleaned}"


def _is_session_absent(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _ABSENT_SESSION_MARKERS)


def prompt_marker_for(program: str) -> str:
    lowered = program.lower()
    for name, marker in PROMPT_MARKERS.items():
        if name in lowered:
            return marker
    return ""


class TmuxSession:
    def __init__(
        self,
        name: str,
        program: str,
        *,
        runner: SubprocessRunner = subprocess.run,
        popen: PopenFactory = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
        start_policy: RetryPolicy = SESSION_START_POLICY,
    ) -> None:
        self.name = name
        self.program = program
        self._runner = runner
        self._popen = popen
        self._sleep = sleep
        self._start_policy = start_policy
        self._hash_lock = threading.Lock()
        self._last_hash: str | None = None

    @classmethod
    def for_title(cls, title: str, program: str, **kwargs: Any) -> TmuxSession:
        return cls(session_name_for(title), program, **kwargs)

    @property
    def agent_target(self) -> str:
        return f"{self.name}:{AGENT_WINDOW}"

    @property
    def terminal_target(self) -> str:
        return f"{self.name}:{TERMINAL_WINDOW}"

    def _tmux(self, *args: str) -> tuple[list[str], subprocess.CompletedProcess[str]]:
        cmd = ["tmux", *args]
        return cmd, run_captured(self._runner, cmd)

    def _checked(self, message: str, *args: str) -> subprocess.CompletedProcess[str]:
        cmd, result = self._tmux(*args)
        if result.returncode != 0:
            logger.error(
                "tmux command failed session=%s cmd=%s stderr=%s",
                self.name,
                command_for_log(cmd),
                result.stderr.strip(),
            )
            raise SessionError(message, hint=failure_hint(cmd, result, "Inspect tmux output and retry."))
        return result

    def exists(self) -> bool:
        _, result = self._tmux("has-session", "-t", f"={self.name}")
        return result.returncode == 0

    def start(self, cwd: str) -> None:
        if self.exists():
            raise SessionError(
                f"tmux session already exists: {self.name}",
                hint="Kill the stale session or choose another title.",
            )
        self._checked(
            f"Failed to start tmux session {self.name}",
            "new-session",
            "-d",
            "-s",
            self.name,
            "-c",
            cwd,
            self.program,
        )
        if not wait_until(self.exists, policy=self._start_policy, sleep=self._sleep):
            logger.error("tmux session did not come up session=%s", self.name)
            try:
                self.kill()
            except SessionError:
                logger.warning("Cleanup of half-started session failed session=%s", self.name, exc_info=True)
            raise SessionError(
                f"Timed out waiting for tmux session {self.name}",
                hint=f"Check that '{self.program}' starts in {cwd}.",
            )

        for option in (("history-limit", str(HISTORY_LIMIT)), ("mouse", "on")):
            cmd, result = self._tmux("set-option", "-t", self.name, *option)
            if result.returncode != 0:
                logger.warning(
                    "tmux option not applied session=%s cmd=%s stderr=%s",
                    self.name,
                    command_for_log(cmd),
                    result.stderr.strip(),
                )
        with self._hash_lock:
            self._last_hash = None
        logger.info("Started tmux session=%s cwd=%s program=%s", self.name, cwd, self.program)

    def restore(self) -> None:
        """Adopt a session that survived a restart of this process."""
        if not self.exists():
            raise SessionError(
                f"tmux session not found: {self.name}",
                hint="The session ended while the application was not running.",
            )
        logger.debug("Restored tmux session=%s", self.name)

    def kill(self) -> None:
        cmd, result = self._tmux("kill-session", "-t", f"={self.name}")
        if result.returncode != 0:
            if _is_session_absent(result.stderr):
                logger.debug("tmux session already gone session=%s", self.name)
                return
            logger.error("tmux kill-session failed session=%s stderr=%s", self.name, result.stderr.strip())
            raise SessionError(
                f"Failed to kill tmux session {self.name}",
                hint=failure_hint(cmd, result, "tmux kill-session failed"),
            )
        logger.info("Killed tmux session=%s", self.name)

    def capture_pane_content(self) -> str:
        result = self._checked(
            f"Failed to capture pane for {self.name}",
            "capture-pane",
            "-p",
            "-e",
            "-J",
            "-t",
            self.agent_target,
        )
        return result.stdout

    def capture_pane_history(self) -> str:
        result = self._checked(
            f"Failed to capture history for {self.name}",
            "capture-pane",
            "-p",
            "-e",
            "-J",
            "-S",
            "-",
            "-E",
            "-",
            "-t",
            self.agent_target,
        )
        return result.stdout

    def has_terminal_window(self) -> bool:
        result = self._checked(
            f"Failed to list windows for {self.name}",
            "list-windows",
            "-t",
            self.name,
            "-F",
            "#{window_name}",
        )
        return TERMINAL_WINDOW in {line.strip() for line in result.stdout.splitlines()}

    def ensure_terminal_window(self, cwd: str | None = None) -> None:
        if self.has_terminal_window():
            return
        args = ["new-window", "-d", "-t", self.name, "-n", TERMINAL_WINDOW]
        if cwd:
            args.extend(["-c", cwd])
        self._checked(f"Failed to create terminal window for {self.name}", *args)
        logger.debug("Created terminal window session=%s", self.name)

    def capture_terminal_content(self, cwd: str | None = None) -> str:
        self.ensure_terminal_window(cwd)
        result = self._checked(
            f"Failed to capture terminal window for {self.name}",
            "capture-pane",
            "-p",
            "-e",
            "-J",
            "-t",
            self.terminal_target,
        )
        return result.stdout

    def resize(self, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise SessionError(f"Invalid preview size {width}x{height} for {self.name}")
        self._checked(
            f"Failed to resize {self.name}",
            "resize-window",
            "-t",
            self.agent_target,
            "-x",
            str(width),
            "-y",
            str(height),
        )

    @property
    def last_hash(self) -> str:
        with self._hash_lock:
            return self._last_hash or ""

    def seed_hash(self, digest: str) -> None:
        """Use a digest recorded by an earlier process as the comparison baseline."""
        with self._hash_lock:
            self._last_hash = digest or None

    def has_updated(self) -> tuple[bool | None, bool]:
        """Return (content changed since last poll, confirmation prompt visible).

        The first element is None when there is no earlier digest to compare with.
        """
        content = self.capture_pane_content()
        marker = prompt_marker_for(self.program)
        has_prompt = bool(marker) and marker in content
        digest = hashlib.sha256(content.encode("utf-8", errors="replace")).hexdigest()
        with self._hash_lock:
            updated = None if self._last_hash is None else digest != self._last_hash
            self._last_hash = digest
        return updated, has_prompt

    def tap_enter(self) -> None:
        self._checked(f"Failed to send Enter to {self.name}", "send-keys", "-t", self.agent_target, "Enter")

    def send_keys(self, text: str) -> None:
        self._checked(
            f"Failed to send keys to {self.name}",
            "send-keys",
            "-t",
            self.agent_target,
            "-l",
            text,
        )

    def attach(self) -> threading.Event:
        return self._attach(self.agent_target)

    def attach_terminal(self, cwd: str | None = None) -> threading.Event:
        self.ensure_terminal_window(cwd)
        return self._attach(self.terminal_target)

    def _attach(self, target: str) -> threading.Event:
        # An unqualified attach lands on the last active window, so the target always names one.
        cmd = ["tmux", "attach-session", "-t", target]
        try:
            process = self._popen(cmd)
        except OSError as exc:
            raise SessionError(
                f"Failed to attach to {target}",
                hint=f"{exc} (command: {command_for_log(cmd)})",
            ) from exc

        done = threading.Event()

        def _wait() -> None:
            try:
                code = process.wait()
                logger.debug("Attach process exited target=%s code=%s", target, code)
            finally:
                done.set()

        threading.Thread(target=_wait, name=f"attach-{self.name}", daemon=True).start()
        logger.info("Attached to target=%s", target)
        return done
