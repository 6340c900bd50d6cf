"""Shared test fixtures."""

from __future__ import annotations

import copy
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from hive_coord.coordination.agents import AgentDirectory
from hive_coord.coordination.errors import PersistenceFailure
from hive_coord.coordination.registry import TaskRegistry
from hive_coord.coordination.state_store import StateStore
from hive_coord.storage.json_file import JsonFileStorage

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class MemoryStorage:
    """In-memory adapter whose next ``fail_writes`` writes raise."""

    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self.document = copy.deepcopy(document)
        self.fail_writes = 0
        self.written_versions: list[int] = []
        self.closed = False
        self._lock = threading.Lock()

    def load(self) -> dict[str, Any] | None:
        return copy.deepcopy(self.document)

    def write(self, document: dict[str, Any]) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise PersistenceFailure("disk full")
        self.document = copy.deepcopy(document)
        self.written_versions.append(document["version"])

    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def memory_storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture()
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "state.json"


@pytest.fixture()
def store(state_path: Path, clock: FakeClock):
    state_store = StateStore(JsonFileStorage(state_path), clock=clock)
    yield state_store
    state_store.close()


@pytest.fixture()
def registry(store: StateStore, clock: FakeClock) -> TaskRegistry:
    return TaskRegistry(store, clock=clock)


@pytest.fixture()
def directory(store: StateStore, registry: TaskRegistry, clock: FakeClock) -> AgentDirectory:
    return AgentDirectory(store, registry=registry, clock=clock)
