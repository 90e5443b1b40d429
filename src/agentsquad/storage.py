"""Instance persistence on top of the state document."""

from __future__ import annotations

import logging as py_logging
from collections import Counter
from collections.abc import Iterable

from pydantic import ValidationError

from agentsquad.errors import NotFoundError
from agentsquad.git.repository import find_repository_root
from agentsquad.instance import Instance, Toolchain
from agentsquad.models import InstanceRecord
from agentsquad.registry import RepositoryRegistry
from agentsquad.state import InstanceStorage

logger = py_logging.getLogger(__name__)


class InstanceStore:
    def __init__(self, storage: InstanceStorage) -> None:
        self._storage = storage

    def save_records(self, records: Iterable[InstanceRecord]) -> bool:
        return self._storage.save_instances([record.model_dump(mode="json") for record in records])

    def save_instances(self, instances: Iterable[Instance]) -> bool:
        """Persist started instances; unstarted ones have nothing worth restoring."""
        return self.save_records(instance.to_record() for instance in instances if instance.started)

    def load_records(self) -> list[InstanceRecord]:
        records: list[InstanceRecord] = []
        for position, raw in enumerate(self._storage.get_instances()):
            try:
                records.append(InstanceRecord.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping unreadable instance record index=%s: %s", position, exc)
        return records

    def load_instances(self, toolchain: Toolchain) -> list[Instance]:
        return [Instance.from_record(record, toolchain=toolchain) for record in self.load_records()]

    def delete_instance(self, title: str) -> None:
        records = self.load_records()
        remaining = [record for record in records if record.title != title]
        if len(remaining) == len(records):
            raise NotFoundError(f"Instance not found: {title}")
        self.save_records(remaining)

    def update_instance(self, instance: Instance) -> None:
        records = self.load_records()
        for position, record in enumerate(records):
            if record.title == instance.title:
                records[position] = instance.to_record()
                self.save_records(records)
                return
        raise NotFoundError(f"Instance not found: {instance.title}")

    def delete_all_instances(self) -> bool:
        return self._storage.delete_all_instances()

    def records_for_repository(self, repository_path: str) -> list[InstanceRecord]:
        return [record for record in self.load_records() if record.repository_path == repository_path]

    def instance_count_by_repository(self) -> dict[str, int]:
        counts = Counter(record.repository_path for record in self.load_records() if record.repository_path)
        return dict(counts)

    def update_instance_counts(self, registry: RepositoryRegistry) -> dict[str, int]:
        """Recompute every repository's count from the instance list in one persist."""
        counts = self.instance_count_by_repository()
        with registry.batch_update():
            for repo in registry.repositories():
                registry.update_instance_count(repo.path, counts.get(repo.path, 0))
        return counts

    def cleanup_orphaned_instances(self, registry: RepositoryRegistry) -> int:
        records = self.load_records()
        kept: list[InstanceRecord] = []
        orphaned = 0
        for record in records:
            if record.repository_path and not registry.contains(record.repository_path):
                logger.info(
                    "Dropping orphaned instance title=%s repository=%s",
                    record.title,
                    record.repository_path,
                )
                orphaned += 1
                continue
            kept.append(record)
        if orphaned:
            self.save_records(kept)
        return orphaned

    def associate_instance_with_repository(self, title: str, repository_path: str) -> None:
        records = self.load_records()
        for record in records:
            if record.title == title:
                record.repository_path = repository_path
                self.save_records(records)
                return
        raise NotFoundError(f"Instance not found: {title}")

    def migrate_instance_repository_paths(self) -> list[str]:
        """Fill missing repository paths on legacy records; returns the repositories found."""
        records = self.load_records()
        found: list[str] = []
        for record in records:
            if record.repository_path:
                continue
            source = record.worktree.repo_path or record.path
            if not source:
                continue
            try:
                record.repository_path = str(find_repository_root(source))
            except NotFoundError:
                logger.debug("No repository for legacy instance title=%s path=%s", record.title, source)
                continue
            if record.repository_path not in found:
                found.append(record.repository_path)
        if found:
            self.save_records(records)
        return found
