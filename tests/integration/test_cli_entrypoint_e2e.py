from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path


def _env(tmp_path: Path) -> dict[str, str]:
    env = dict(os.environ)
    existing = env.get("PYTHONPATH", "")
    src_path = str(Path(__file__).resolve().parents[2] / "src")
    env["PYTHONPATH"] = f"{src_path}{os.pathsep}{existing}" if existing else src_path
    env["AGENTSQUAD_HOME"] = str(tmp_path / "home")
    env["HOME"] = str(tmp_path / "user")
    return env


def _run(tmp_path: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "agentsquad", "--log-file", str(tmp_path / "squad.log"), *args],
        capture_output=True,
        text=True,
        check=False,
        env=_env(tmp_path),
    )


def test_cli_module_reports_invalid_args_via_exit_code(tmp_path: Path) -> None:
    completed = _run(tmp_path, "--log-level", "chatty", "list")

    assert completed.returncode == 2
    assert "--log-level must be one of" in completed.stderr


def test_cli_module_manages_repositories(tmp_path: Path) -> None:
    repo = tmp_path / "work" / "app"
    (repo / ".git").mkdir(parents=True)

    added = _run(tmp_path, "repos", "add", str(repo))
    listed = _run(tmp_path, "repos", "list")

    assert added.returncode == 0, added.stderr
    assert "Added app" in added.stdout
    assert listed.stdout.startswith("  app\t0\t")
    assert (tmp_path / "home" / "state.json").exists()
