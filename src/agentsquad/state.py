"""Persisted application state document, schema migration and storage backends."""

from __future__ import annotations

import json
import logging as py_logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentsquad.errors import AgentSquadError, ExitCode, PersistenceError
from agentsquad.models import RepositoryData

logger = py_logging.getLogger(__name__)

CURRENT_STATE_VERSION = 1
UINT32_MAX = 2**32 - 1


class State(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    help_screens_seen: int = Field(default=0, ge=0, le=UINT32_MAX)
    instances: list[Any] = Field(default_factory=list)
    repositories: list[RepositoryData] = Field(default_factory=list)
    selected_repository: str = ""
    state_version: int = CURRENT_STATE_VERSION


def default_state() -> State:
    return State()


def _version_of(raw: dict[str, Any]) -> int:
    version = raw.get("state_version", 0)
    if isinstance(version, bool) or not isinstance(version, int):
        return 0
    return version


def migrate_state(raw: dict[str, Any]) -> dict[str, Any]:
    """Bring a decoded document up to the current schema; safe to run repeatedly."""
    migrated = dict(raw)
    if migrated.get("instances") is None:
        migrated["instances"] = []

    version = _version_of(migrated)
    if version < 1:
        if not isinstance(migrated.get("repositories"), list):
            migrated["repositories"] = []
        if not isinstance(migrated.get("selected_repository"), str):
            migrated["selected_repository"] = ""
        migrated["state_version"] = 1
        logger.info("Migrated state from version %s to version 1", version)
    elif version > CURRENT_STATE_VERSION:
        logger.warning(
            "State version %s is newer than supported version %s; leaving it untouched",
            version,
            CURRENT_STATE_VERSION,
        )
    return migrated


class StateStore(Protocol):
    """Byte-level backend for the state document."""

    @property
    def location(self) -> str: ...

    def read(self) -> bytes | None: ...

    def write(self, payload: bytes) -> None: ...


class InstanceStorage(Protocol):
    def save_instances(self, records: list[dict[str, Any]]) -> bool: ...

    def get_instances(self) -> list[Any]: ...

    def delete_all_instances(self) -> bool: ...


class FileStateStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    @property
    def location(self) -> str:
        return str(self.path)

    def read(self) -> bytes | None:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read state file {self.path}", hint=str(exc)) from exc

    def write(self, payload: bytes) -> None:
        """Write to a sibling temp file then rename over the target."""
        tmp_name = ""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            with suppress(OSError):
                os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name:
                with suppress(OSError):
                    os.unlink(tmp_name)
            raise PersistenceError(f"Failed to write state file {self.path}", hint=str(exc)) from exc


class AppState:
    """Live state document; every mutation rewrites the whole document."""

    def __init__(self, document: State, store: StateStore) -> None:
        self._document = document
        self._store = store
        self.lock = threading.RLock()
        self._batch_depth = 0
        self._pending = False

    @classmethod
    def load(cls, store: StateStore) -> AppState:
        try:
            payload = store.read()
        except PersistenceError as exc:
            logger.error("State unreadable location=%s: %s", store.location, exc)
            return cls(default_state(), store)

        if payload is None:
            state = cls(default_state(), store)
            state.save()
            logger.info("Created default state location=%s", store.location)
            return state

        try:
            raw = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("State file corrupt location=%s: %s", store.location, exc)
            return cls(default_state(), store)
        if not isinstance(raw, dict):
            logger.error("State file is not an object location=%s", store.location)
            return cls(default_state(), store)

        migrated = migrate_state(raw)
        try:
            document = State.model_validate(migrated)
        except ValidationError as exc:
            logger.error("State file failed validation location=%s: %s", store.location, exc)
            return cls(default_state(), store)

        state = cls(document, store)
        if _version_of(migrated) != _version_of(raw):
            state.save()
        return state

    @property
    def document(self) -> State:
        return self._document

    def save(self) -> bool:
        with self.lock:
            if self._batch_depth:
                self._pending = True
                return True
            payload = self._document.model_dump_json(indent=2).encode("utf-8")
            try:
                self._store.write(payload)
            except PersistenceError as exc:
                # The in-memory document stays authoritative; a crash now loses this change.
                logger.error("State persist failed location=%s: %s", self._store.location, exc)
                return False
            return True

    @contextmanager
    def batch(self) -> Iterator[State]:
        """Hold the write lock and coalesce saves into one at the outermost exit."""
        with self.lock:
            self._batch_depth += 1
            try:
                yield self._document
            finally:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._pending:
                    self._pending = False
                    self.save()

    def save_instances(self, records: list[dict[str, Any]]) -> bool:
        with self.lock:
            self._document.instances = list(records)
            return self.save()

    def get_instances(self) -> list[Any]:
        with self.lock:
            return list(self._document.instances)

    def delete_all_instances(self) -> bool:
        with self.lock:
            self._document.instances = []
            return self.save()

    @property
    def help_screens_seen(self) -> int:
        return self._document.help_screens_seen

    def set_help_screens_seen(self, seen: int) -> bool:
        if seen < 0 or seen > UINT32_MAX:
            raise AgentSquadError(
                f"Help screen bitmask out of range: {seen}",
                code=ExitCode.VALIDATION_ERROR,
            )
        with self.lock:
            self._document.help_screens_seen = seen
            return self.save()
