from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from agentsquad.instance import Toolchain

_SECURITY_TEST_FILES = {
    "test_repository.py",
    "test_process.py",
}


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(getattr(item, "path", item.fspath)))
        name = path.name

        if "integration" in path.parts:
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)

        if name in _SECURITY_TEST_FILES:
            item.add_marker(pytest.mark.security)


def _cp(args: list[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=args, returncode=returncode, stdout=stdout, stderr=stderr)


class FakeProcess:
    def __init__(self, args: list[str]) -> None:
        self.args = args

    def wait(self) -> int:
        return 0


class FakeSystem:
    """In-memory stand-in for the git and tmux command lines."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.sessions: dict[str, list[str]] = {}
        self.session_cwd: dict[str, str] = {}
        self.pane: dict[str, str] = {}
        self.keys: list[tuple[str, str]] = []
        self.branches: set[str] = set()
        self.worktrees: dict[str, str] = {}
        self.head = "0123abcd"
        self.diff_output = ""
        self.dirty = False
        self.attached: list[list[str]] = []
        self._failures: list[tuple[tuple[str, ...], str]] = []

    def fail(self, *tokens: str, stderr: str = "boom") -> None:
        """Fail every later command containing all ``tokens``."""
        self._failures.append((tokens, stderr))

    def clear_failures(self) -> None:
        self._failures.clear()

    def commands(self, program: str, verb: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if cmd and cmd[0] == program and verb in cmd]

    def popen(self, args: list[str], **_: object) -> FakeProcess:
        self.attached.append(list(args))
        return FakeProcess(list(args))

    def __call__(self, args: list[str], **_: object) -> subprocess.CompletedProcess:
        args = list(args)
        self.calls.append(args)
        for tokens, stderr in self._failures:
            if all(token in args for token in tokens):
                return _cp(args, 1, stderr=stderr)
        if args[0] == "git":
            return self._git(args)
        if args[0] == "tmux":
            return self._tmux(args)
        return _cp(args, 127, stderr=f"unknown command {args[0]}")

    def _git(self, args: list[str]) -> subprocess.CompletedProcess:
        rest = args[3:]
        if rest == ["rev-parse", "HEAD"]:
            return _cp(args, stdout=f"{self.head}\n")
        if rest[:2] == ["worktree", "prune"]:
            return _cp(args)
        if rest[:1] == ["show-ref"]:
            branch = rest[-1].removeprefix("refs/heads/")
            return _cp(args, 0 if branch in self.branches else 1)
        if rest[:2] == ["worktree", "add"]:
            branch, target = rest[3], rest[4]
            if branch in self.branches:
                return _cp(args, 255, stderr=f"fatal: a branch named '{branch}' already exists")
            Path(target).mkdir(parents=True, exist_ok=True)
            self.branches.add(branch)
            self.worktrees[target] = branch
            return _cp(args)
        if rest[:2] == ["worktree", "remove"]:
            target = rest[-1]
            if target not in self.worktrees:
                return _cp(args, 128, stderr=f"fatal: '{target}' is not a working tree")
            del self.worktrees[target]
            shutil.rmtree(target, ignore_errors=True)
            return _cp(args)
        if rest[:2] == ["branch", "-D"]:
            branch = rest[2]
            if branch not in self.branches:
                return _cp(args, 1, stderr=f"error: branch '{branch}' not found.")
            self.branches.discard(branch)
            return _cp(args)
        if rest[:2] == ["status", "--porcelain"]:
            return _cp(args, stdout=" M app.py\n" if self.dirty else "")
        if rest[:2] == ["add", "-N"]:
            return _cp(args)
        if rest[:2] == ["--no-pager", "diff"]:
            return _cp(args, stdout=self.diff_output)
        return _cp(args, 1, stderr=f"unsupported git call: {rest}")

    @staticmethod
    def _session_of(target: str) -> str:
        return target.lstrip("=").split(":", 1)[0]

    def _tmux(self, args: list[str]) -> subprocess.CompletedProcess:
        verb = args[1]
        if verb == "-V":
            return _cp(args, stdout="tmux 3.4\n")
        if verb == "new-session":
            name = args[args.index("-s") + 1]
            self.sessions[name] = ["0"]
            self.session_cwd[name] = args[args.index("-c") + 1]
            return _cp(args)

        target = args[args.index("-t") + 1] if "-t" in args else ""
        name = self._session_of(target)
        if name not in self.sessions:
            return _cp(args, 1, stderr=f"can't find session: {name}")

        if verb in ("has-session", "set-option", "resize-window"):
            return _cp(args)
        if verb == "kill-session":
            del self.sessions[name]
            return _cp(args)
        if verb == "capture-pane":
            window = target.split(":", 1)[1] if ":" in target else "0"
            return _cp(args, stdout=self.pane.get(f"{name}:{window}", ""))
        if verb == "list-windows":
            return _cp(args, stdout="\n".join(self.sessions[name]) + "\n")
        if verb == "new-window":
            self.sessions[name].append(args[args.index("-n") + 1])
            return _cp(args)
        if verb == "send-keys":
            self.keys.append((target, args[-1]))
            return _cp(args)
        return _cp(args, 1, stderr=f"unsupported tmux call: {verb}")


@pytest.fixture
def fake_system() -> FakeSystem:
    return FakeSystem()


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    repo = tmp_path / "repos" / "app"
    (repo / ".git").mkdir(parents=True)
    return repo.resolve()


@pytest.fixture
def toolchain(tmp_path: Path, fake_system: FakeSystem) -> Toolchain:
    return Toolchain(
        worktree_root=tmp_path / "worktrees",
        branch_prefix="tester/",
        runner=fake_system,
        popen=fake_system.popen,
        sleep=lambda _: None,
    )
