from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from agentsquad.config import AppConfig
from agentsquad.errors import AgentSquadError, NotFoundError, SessionError
from agentsquad.models import Status
from agentsquad.orchestrator import SquadOrchestrator

pytestmark = pytest.mark.critical_regression


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / "home"


@pytest.fixture
def make_orchestrator(fake_system, home: Path):
    created: list[SquadOrchestrator] = []

    def factory(**overrides) -> SquadOrchestrator:
        config = AppConfig(branch_prefix="tester/", **overrides)
        orchestrator = SquadOrchestrator(
            config,
            home=home,
            runner=fake_system,
            popen=fake_system.popen,
            sleep=lambda _: None,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.close()


def _state(home: Path) -> dict:
    return json.loads((home / "state.json").read_text(encoding="utf-8"))


def test_create_instance_registers_repository_and_persists(make_orchestrator, home: Path, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()

    instance = orchestrator.create_instance("task", path=repo_dir)

    assert instance.started
    assert instance.status == Status.RUNNING
    document = _state(home)
    assert [record["title"] for record in document["instances"]] == ["task"]
    assert document["instances"][0]["repository_path"] == str(repo_dir)
    assert [repo["path"] for repo in document["repositories"]] == [str(repo_dir)]
    assert document["repositories"][0]["instance_count"] == 1


def test_worktrees_live_under_configured_root(make_orchestrator, home: Path, repo_dir: Path) -> None:
    instance = make_orchestrator().create_instance("task", path=repo_dir)

    assert instance.worktree is not None
    assert Path(instance.worktree.worktree_path).parent == home / "worktrees"


def test_create_uses_config_defaults(make_orchestrator, fake_system, repo_dir: Path) -> None:
    orchestrator = make_orchestrator(default_program="aider", auto_yes=True)

    instance = orchestrator.create_instance("task", path=repo_dir)

    assert instance.program == "aider"
    assert instance.auto_yes is True
    assert fake_system.commands("tmux", "new-session")[0][-1] == "aider"


def test_failed_create_leaves_no_trace(make_orchestrator, fake_system, home: Path, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    fake_system.fail("new-session", stderr="no space left")

    with pytest.raises(SessionError):
        orchestrator.create_instance("task", path=repo_dir)

    assert len(orchestrator.collection) == 0
    assert fake_system.worktrees == {}
    assert _state(home)["instances"] == []
    assert _state(home)["repositories"] == []


def test_duplicate_title_is_rejected_before_touching_git(make_orchestrator, fake_system, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    orchestrator.create_instance("task", path=repo_dir)
    calls = len(fake_system.calls)

    with pytest.raises(AgentSquadError):
        orchestrator.create_instance("task", path=repo_dir)

    assert len(fake_system.calls) == calls


def test_kill_updates_state_and_counts(make_orchestrator, fake_system, home: Path, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    orchestrator.create_instance("one", path=repo_dir)
    orchestrator.create_instance("two", path=repo_dir)

    orchestrator.kill_instance("one")

    document = _state(home)
    assert [record["title"] for record in document["instances"]] == ["two"]
    assert document["repositories"][0]["instance_count"] == 1
    assert "agentsquad_one" not in fake_system.sessions
    assert "agentsquad_two" in fake_system.sessions
    with pytest.raises(NotFoundError):
        orchestrator.kill_instance("one")


def test_pause_and_resume_persist_status(make_orchestrator, home: Path, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    orchestrator.create_instance("task", path=repo_dir)

    orchestrator.pause_instance("task")
    assert _state(home)["instances"][0]["status"] == "paused"

    orchestrator.resume_instance("task")
    assert _state(home)["instances"][0]["status"] == "ready"


def test_restart_readopts_live_sessions(make_orchestrator, fake_system, repo_dir: Path) -> None:
    make_orchestrator().create_instance("task", path=repo_dir)

    restored = make_orchestrator().load()

    assert [instance.title for instance in restored] == ["task"]
    assert restored[0].started
    assert len(fake_system.commands("tmux", "new-session")) == 1


def test_restart_with_vanished_worktree_keeps_instance_paused(
    make_orchestrator, fake_system, home: Path, repo_dir: Path
) -> None:
    instance = make_orchestrator().create_instance("task", path=repo_dir)
    assert instance.worktree is not None
    fake_system.sessions.clear()
    shutil.rmtree(instance.worktree.worktree_path)

    orchestrator = make_orchestrator()
    restored = orchestrator.load()

    assert restored[0].started and restored[0].paused
    orchestrator.save()
    assert _state(home)["instances"][0]["status"] == "paused"


def test_load_drops_orphans_and_recounts(make_orchestrator, home: Path, repo_dir: Path) -> None:
    make_orchestrator().create_instance("task", path=repo_dir)
    document = _state(home)
    orphan = dict(document["instances"][0], title="orphan", repository_path="/gone")
    document["instances"].append(orphan)
    document["repositories"][0]["instance_count"] = 42
    (home / "state.json").write_text(json.dumps(document), encoding="utf-8")

    orchestrator = make_orchestrator()
    restored = orchestrator.load()

    assert [instance.title for instance in restored] == ["task"]
    assert _state(home)["repositories"][0]["instance_count"] == 1


def test_load_migrates_v0_document(make_orchestrator, home: Path, repo_dir: Path) -> None:
    make_orchestrator().create_instance("task", path=repo_dir)
    document = _state(home)
    legacy = {
        "help_screens_seen": 1,
        "instances": [dict(document["instances"][0], repository_path="")],
    }
    (home / "state.json").write_text(json.dumps(legacy), encoding="utf-8")

    orchestrator = make_orchestrator()
    restored = orchestrator.load()

    assert restored[0].repository_path == str(repo_dir)
    migrated = _state(home)
    assert migrated["state_version"] == 1
    assert [repo["path"] for repo in migrated["repositories"]] == [str(repo_dir)]
    assert migrated["repositories"][0]["instance_count"] == 1


def test_selected_repository_filters_collection(make_orchestrator, tmp_path: Path) -> None:
    repos = []
    for name in ("r1", "r2"):
        repo = tmp_path / name
        (repo / ".git").mkdir(parents=True)
        repos.append(repo.resolve())
    first = make_orchestrator()
    first.create_instance("i1", path=repos[0])
    first.create_instance("i2", path=repos[1])
    first.select_repository(repos[1])

    orchestrator = make_orchestrator()
    orchestrator.load()

    assert [instance.title for instance in orchestrator.collection.filtered()] == ["i2"]


def test_remove_repository_drops_its_instances(make_orchestrator, fake_system, home: Path, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    instance = orchestrator.create_instance("task", path=repo_dir)
    worktree_path = instance.worktree.worktree_path

    removal = orchestrator.remove_repository(repo_dir)

    assert removal.orphaned == 1
    assert removal.worktrees == [worktree_path]
    assert removal.sessions == ["agentsquad_task"]
    assert "agentsquad_task" in fake_system.sessions

    assert len(orchestrator.collection) == 0
    assert _state(home)["instances"] == []
    assert _state(home)["repositories"] == []


def test_diff_and_prompt(make_orchestrator, fake_system, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    orchestrator.create_instance("task", path=repo_dir)
    fake_system.diff_output = "+a\n+b\n+c\n-d\n"

    stats = orchestrator.diff("task")
    orchestrator.send_prompt("task", "run the tests")

    assert (stats.added, stats.removed, stats.error) == (3, 1, None)
    assert fake_system.keys[-2:] == [("agentsquad_task:0", "run the tests"), ("agentsquad_task:0", "Enter")]


def test_refresh_polls_and_saves(make_orchestrator, fake_system, home: Path, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    orchestrator.create_instance("task", path=repo_dir)
    fake_system.diff_output = "+a\n"

    summary = orchestrator.refresh()

    assert summary.polled == 1
    assert _state(home)["instances"][0]["diff_stats"]["added"] == 1


def test_attach_returns_event(make_orchestrator, fake_system, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    orchestrator.create_instance("task", path=repo_dir)

    assert orchestrator.attach("task").wait(timeout=2)
    assert orchestrator.attach("task", terminal=True).wait(timeout=2)
    assert [cmd[-1] for cmd in fake_system.attached] == ["agentsquad_task:0", "agentsquad_task:terminal"]


def test_reset_kills_everything(make_orchestrator, fake_system, home: Path, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    orchestrator.create_instance("one", path=repo_dir)
    orchestrator.create_instance("two", path=repo_dir)

    assert orchestrator.reset() == 2

    assert fake_system.sessions == {}
    assert fake_system.worktrees == {}
    assert _state(home)["instances"] == []
    assert _state(home)["repositories"][0]["instance_count"] == 0


def test_repository_maintenance(make_orchestrator, tmp_path: Path) -> None:
    orchestrator = make_orchestrator()
    gone = tmp_path / "gone"
    (gone / ".git").mkdir(parents=True)
    orchestrator.add_repository(gone)
    shutil.rmtree(gone)

    assert orchestrator.compact_repositories() == 1
    assert orchestrator.cleanup_repositories() == 0
    assert orchestrator.repositories() == []


def test_scan_registers_discovered_repositories_once(make_orchestrator, tmp_path: Path) -> None:
    orchestrator = make_orchestrator()
    workspace = tmp_path / "workspace"
    for name in ("api", "web", "node_modules/dep"):
        (workspace / name / ".git").mkdir(parents=True)
    (workspace / "notes").mkdir()

    added = orchestrator.scan_repositories(workspace)

    assert sorted(repo.name for repo in added) == ["api", "web"]
    assert orchestrator.scan_repositories(workspace) == []
    assert len(orchestrator.repositories()) == 2


def test_preview_sources(make_orchestrator, fake_system, repo_dir: Path) -> None:
    orchestrator = make_orchestrator()
    orchestrator.create_instance("task", path=repo_dir)
    fake_system.pane["agentsquad_task:0"] = "agent output\n"
    fake_system.pane["agentsquad_task:terminal"] = "$ ls\n"

    assert orchestrator.preview("task") == "agent output\n"
    assert orchestrator.preview("task", history=True) == "agent output\n"
    assert orchestrator.preview("task", terminal=True) == "$ ls\n"
    assert any("-S" in cmd for cmd in fake_system.commands("tmux", "capture-pane"))
    assert fake_system.sessions["agentsquad_task"] == ["0", "terminal"]

    orchestrator.pause_instance("task")
    assert orchestrator.preview("task") == ""


def test_status_settles_to_ready_across_runs(make_orchestrator, fake_system, home: Path, repo_dir: Path) -> None:
    make_orchestrator().create_instance("task", path=repo_dir)
    fake_system.pane["agentsquad_task:0"] = "waiting for input"

    statuses = []
    for _ in range(3):
        orchestrator = make_orchestrator()
        orchestrator.load()
        orchestrator.refresh()
        statuses.append(orchestrator.get("task").status)

    assert statuses == [Status.RUNNING, Status.READY, Status.READY]
    assert _state(home)["instances"][0]["status"] == "ready"

    fake_system.pane["agentsquad_task:0"] = "editing files"
    orchestrator = make_orchestrator()
    orchestrator.load()
    orchestrator.refresh()
    assert orchestrator.get("task").status == Status.RUNNING
