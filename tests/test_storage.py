from __future__ import annotations

from pathlib import Path

import pytest

from agentsquad.errors import NotFoundError
from agentsquad.instance import Instance
from agentsquad.models import InstanceRecord, Status
from agentsquad.registry import RepositoryRegistry
from agentsquad.state import AppState, FileStateStore
from agentsquad.storage import InstanceStore

pytestmark = pytest.mark.critical_regression


@pytest.fixture
def state(tmp_path: Path) -> AppState:
    return AppState.load(FileStateStore(tmp_path / "home" / "state.json"))


@pytest.fixture
def store(state: AppState) -> InstanceStore:
    return InstanceStore(state)


def _record(title: str, repository_path: str = "", **kwargs) -> InstanceRecord:
    return InstanceRecord(title=title, repository_path=repository_path, program="claude", **kwargs)


def test_save_instances_skips_unstarted(store: InstanceStore, toolchain, repo_dir: Path) -> None:
    started = Instance("started", repo_dir, "claude", toolchain=toolchain)
    started.start()
    pending = Instance("pending", repo_dir, "claude", toolchain=toolchain)

    store.save_instances([started, pending])

    assert [record.title for record in store.load_records()] == ["started"]


def test_records_serialize_status_as_string(store: InstanceStore, state: AppState) -> None:
    store.save_records([_record("a", status=Status.PAUSED)])

    raw = state.get_instances()[0]

    assert raw["status"] == "paused"
    assert raw["worktree"]["session_name"] == ""
    assert raw["diff_stats"] == {"added": 0, "removed": 0, "content": ""}


def test_bad_record_is_skipped(store: InstanceStore, state: AppState) -> None:
    good = _record("good").model_dump(mode="json")
    state.save_instances([{"status": "ready"}, good, "garbage", {"title": "bad", "status": "exploded"}])

    assert [record.title for record in store.load_records()] == ["good"]


def test_load_instances_builds_unstarted_instances(store: InstanceStore, toolchain) -> None:
    store.save_records([_record("a"), _record("b")])

    instances = store.load_instances(toolchain)

    assert [instance.title for instance in instances] == ["a", "b"]
    assert not any(instance.started for instance in instances)


def test_delete_and_update_instance(store: InstanceStore, toolchain) -> None:
    store.save_records([_record("a"), _record("b")])

    store.delete_instance("a")
    assert [record.title for record in store.load_records()] == ["b"]
    with pytest.raises(NotFoundError):
        store.delete_instance("a")

    updated = Instance("b", "/elsewhere", "aider", toolchain=toolchain)
    store.update_instance(updated)
    assert store.load_records()[0].program == "aider"

    with pytest.raises(NotFoundError):
        store.update_instance(Instance("zzz", "/x", "claude", toolchain=toolchain))


def test_delete_all_instances(store: InstanceStore) -> None:
    store.save_records([_record("a")])
    store.delete_all_instances()
    assert store.load_records() == []


def test_counts_are_derived_from_instances(store: InstanceStore) -> None:
    store.save_records([_record("a", "/r1"), _record("b", "/r1"), _record("c", "/r2"), _record("d")])

    assert store.instance_count_by_repository() == {"/r1": 2, "/r2": 1}
    assert [record.title for record in store.records_for_repository("/r1")] == ["a", "b"]


def test_update_instance_counts_writes_every_repository(
    store: InstanceStore, state: AppState, tmp_path: Path
) -> None:
    registry = RepositoryRegistry(state)
    repos = []
    for name in ("one", "two"):
        path = tmp_path / name
        (path / ".git").mkdir(parents=True)
        repos.append(registry.add_repository_from_path(path).path)
    registry.update_instance_count(repos[1], 7)
    store.save_records([_record("a", repos[0]), _record("b", repos[0])])

    store.update_instance_counts(registry)

    assert registry.get_repository(repos[0]).instance_count == 2
    assert registry.get_repository(repos[1]).instance_count == 0


def test_cleanup_orphaned_instances(store: InstanceStore, state: AppState, repo_dir: Path) -> None:
    registry = RepositoryRegistry(state)
    registry.add_repository_from_path(repo_dir)
    store.save_records([_record("kept", str(repo_dir)), _record("legacy"), _record("orphan", "/gone")])

    assert store.cleanup_orphaned_instances(registry) == 1
    assert [record.title for record in store.load_records()] == ["kept", "legacy"]
    assert store.cleanup_orphaned_instances(registry) == 0


def test_migrate_repository_paths_fills_legacy_records(store: InstanceStore, repo_dir: Path) -> None:
    nested = repo_dir / "pkg"
    nested.mkdir()
    store.save_records([_record("legacy", path=str(nested)), _record("done", "/already/set")])

    found = store.migrate_instance_repository_paths()

    assert found == [str(repo_dir)]
    records = {record.title: record for record in store.load_records()}
    assert records["legacy"].repository_path == str(repo_dir)
    assert records["done"].repository_path == "/already/set"


def test_associate_instance_with_repository(store: InstanceStore) -> None:
    store.save_records([_record("a")])

    store.associate_instance_with_repository("a", "/repo")

    assert store.load_records()[0].repository_path == "/repo"
    with pytest.raises(NotFoundError):
        store.associate_instance_with_repository("b", "/repo")
