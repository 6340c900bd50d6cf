from __future__ import annotations

import json
import threading
from pathlib import Path

import allure
import pytest

from hive_coord.coordination.documents import empty_document
from hive_coord.coordination.errors import PersistenceFailure, ValidationError
from hive_coord.coordination.state_store import StateStore
from hive_coord.storage.common import to_iso
from hive_coord.storage.json_file import JsonFileStorage

pytestmark = [
    allure.epic("Coordination Core"),
    allure.feature("State Store"),
]


def test_first_boot_creates_empty_document(state_path: Path, store: StateStore) -> None:
    assert store.version == 0
    persisted = json.loads(state_path.read_text("utf-8"))
    assert persisted["version"] == 0
    assert persisted["tasks"] == {}
    assert persisted["agents"] == {}


def test_commit_is_visible_only_after_flush(store: StateStore) -> None:
    expected = store.commit({"tasks.t1": {"title": "first"}}, "cli")

    assert expected == 1
    assert store.pending_count == 1
    assert store.read(["tasks"]) == {"tasks": {}}

    assert store.flush() == 1
    assert store.version == 1
    assert store.pending_count == 0
    assert store.read(["tasks.t1.title"]) == {"tasks": {"t1": {"title": "first"}}}


def test_flush_bumps_version_once_per_batch(store: StateStore) -> None:
    for index in range(5):
        store.commit({f"tasks.t{index}": {"n": index}}, "cli")

    assert store.flush() == 1
    assert len(store.read()["tasks"]) == 5
    assert store.flush() is None
    assert store.version == 1


def test_commits_apply_in_submission_order(store: StateStore) -> None:
    store.commit({"tasks.t1": {"title": "a", "note": "keep"}}, "cli")
    store.commit({"tasks.t1.title": "b"}, "cli")
    store.commit({"tasks.t1.note": None}, "cli")
    store.flush()

    assert store.read()["tasks"]["t1"] == {"title": "b"}


def test_read_returns_a_private_copy(store: StateStore) -> None:
    store.commit({"tasks.t1": {"tags": ["A"]}}, "cli")
    store.flush()

    snapshot = store.read()
    snapshot["tasks"]["t1"]["tags"].append("B")

    assert store.read()["tasks"]["t1"]["tags"] == ["A"]


def test_commit_value_is_copied_at_submission(store: StateStore) -> None:
    value = {"tags": ["A"]}
    store.commit({"tasks.t1": value}, "cli")
    value["tags"].append("B")
    store.flush()

    assert store.read()["tasks"]["t1"]["tags"] == ["A"]


@pytest.mark.parametrize(
    ("mutations", "actor", "message"),
    [
        ({}, "cli", "at least one mutation"),
        ({"tasks.t1": 1}, "", "actor"),
        ({"version": 3}, "cli", "managed by the store"),
        ({"lastUpdated": "x"}, "cli", "managed by the store"),
        ({"tasks..t1": 1}, "cli", "empty segment"),
        ({"tasks.t1": object()}, "cli", "not JSON-serializable"),
    ],
)
def test_commit_rejects_invalid_input(
    store: StateStore,
    mutations: dict,
    actor: str,
    message: str,
) -> None:
    with pytest.raises(ValidationError, match=message):
        store.commit(mutations, actor)
    assert store.pending_count == 0


def test_guard_rejection_drops_only_that_commit(store: StateStore) -> None:
    store.commit({"tasks.t1": {"owner": "w1"}}, "w1")
    store.commit(
        {"tasks.t1.owner": "w2"},
        "w2",
        guard=lambda document: document["tasks"]["t1"]["owner"] is None,
    )
    store.commit({"tasks.t2": {"owner": "w3"}}, "w3")

    assert store.flush() == 1
    document = store.read()
    assert document["tasks"]["t1"]["owner"] == "w1"
    assert document["tasks"]["t2"]["owner"] == "w3"
    assert store.rejected_commits == 1


def test_guard_sees_earlier_commits_of_the_same_flush(store: StateStore) -> None:
    seen: list[bool] = []

    def guard(document: dict) -> bool:
        seen.append("t1" in document["tasks"])
        return True

    store.commit({"tasks.t1": {"n": 1}}, "cli")
    store.commit({"tasks.t2": {"n": 2}}, "cli", guard=guard)
    store.flush()

    assert seen == [True]


def test_raising_guard_counts_as_rejection(store: StateStore) -> None:
    def guard(_document: dict) -> bool:
        raise KeyError("missing")

    store.commit({"tasks.t1": 1}, "cli", guard=guard)

    assert store.flush() is None
    assert store.rejected_commits == 1
    assert store.version == 0


def test_commit_crossing_a_scalar_is_dropped(store: StateStore) -> None:
    store.commit({"tasks.t1": 5}, "cli")
    store.flush()
    store.commit({"tasks.t1.title": "x"}, "cli")

    assert store.flush() is None
    assert store.read()["tasks"]["t1"] == 5
    assert store.rejected_commits == 1


def test_flush_refreshes_heartbeat_of_acting_agent(store: StateStore, clock) -> None:
    store.commit({"agents.w1": {"id": "w1", "lastHeartbeat": to_iso(clock())}}, "w1")
    store.flush()
    flushed_at = clock.advance(30)

    store.commit({"tasks.t1": {"owner": "w1"}}, "w1")
    store.commit({"tasks.t2": {"owner": "cli"}}, "cli")
    store.flush()

    assert store.read()["agents"]["w1"]["lastHeartbeat"] == to_iso(flushed_at)
    assert "cli" not in store.read()["agents"]


def test_failed_write_requeues_batch(memory_storage, clock) -> None:
    store = StateStore(memory_storage, clock=clock, max_flush_failures=3)
    store.commit({"tasks.t1": 1}, "cli")
    memory_storage.fail_writes = 1

    assert store.flush() is None
    assert store.pending_count == 1
    assert store.version == 0

    store.commit({"tasks.t2": 2}, "cli")
    assert store.flush() == 1
    assert memory_storage.document["tasks"] == {"t1": 1, "t2": 2}
    assert memory_storage.written_versions == [0, 1]


def test_requeued_batch_keeps_order_ahead_of_new_commits(memory_storage, clock) -> None:
    store = StateStore(memory_storage, clock=clock)
    store.commit({"tasks.t1": "old"}, "cli")
    memory_storage.fail_writes = 1
    store.flush()

    store.commit({"tasks.t1": "new"}, "cli")
    store.flush()

    assert store.read()["tasks"]["t1"] == "new"


def test_persistent_write_failure_is_fatal(memory_storage, clock) -> None:
    fatal: list[PersistenceFailure] = []
    store = StateStore(memory_storage, clock=clock, max_flush_failures=2, on_fatal=fatal.append)
    store.commit({"tasks.t1": 1}, "cli")
    memory_storage.fail_writes = 10

    assert store.flush() is None
    with pytest.raises(PersistenceFailure, match="2 consecutive"):
        store.flush()

    assert store.is_failed
    with pytest.raises(PersistenceFailure):
        store.commit({"tasks.t2": 2}, "cli")
    with pytest.raises(PersistenceFailure):
        store.flush()


def test_background_flush_reports_fatal_error(memory_storage, clock) -> None:
    reported = threading.Event()
    store = StateStore(
        memory_storage,
        clock=clock,
        flush_interval_seconds=0.01,
        max_flush_failures=2,
        on_fatal=lambda _error: reported.set(),
    )
    memory_storage.fail_writes = 100
    store.commit({"tasks.t1": 1}, "cli")
    store.start()
    try:
        assert reported.wait(timeout=5)
    finally:
        store.stop()
    assert store.is_failed


def test_listeners_receive_each_flushed_version(store: StateStore) -> None:
    received: list[int] = []

    def broken(_version: int, _document: dict) -> None:
        raise RuntimeError("listener bug")

    store.subscribe(broken)
    store.subscribe(lambda version, _document: received.append(version))
    store.commit({"tasks.t1": 1}, "cli")
    store.flush()
    store.commit({"tasks.t2": 2}, "cli")
    store.flush()

    assert received == [1, 2]


def test_background_flush_makes_commit_visible(state_path: Path, clock) -> None:
    store = StateStore(JsonFileStorage(state_path), clock=clock, flush_interval_seconds=0.01)
    store.start()
    try:
        version = store.commit({"tasks.t1": {"title": "eventually"}}, "cli")
        assert store.wait_for_version(version, timeout=5)
        assert store.read()["tasks"]["t1"]["title"] == "eventually"
    finally:
        store.close()


def test_close_drains_pending_commits(state_path: Path, clock) -> None:
    store = StateStore(JsonFileStorage(state_path), clock=clock)
    store.commit({"tasks.t1": {"title": "queued"}}, "cli")
    store.close()

    reopened = StateStore(JsonFileStorage(state_path), clock=clock)
    assert reopened.version == 1
    assert reopened.read()["tasks"]["t1"]["title"] == "queued"
    reopened.close()


def test_close_releases_adapter(memory_storage, clock) -> None:
    store = StateStore(memory_storage, clock=clock)
    store.close()
    assert memory_storage.closed


def test_store_resumes_existing_document(memory_storage, clock) -> None:
    document = empty_document(clock())
    document["version"] = 41
    memory_storage.document = document

    store = StateStore(memory_storage, clock=clock)
    store.commit({"tasks.t1": 1}, "cli")

    assert store.flush() == 42
    assert store.read()["lastUpdated"] == to_iso(clock())


def test_read_paths_skips_missing(store: StateStore) -> None:
    store.commit({"tasks.t1": {"title": "a", "priority": 3}}, "cli")
    store.flush()

    partial = store.read(["tasks.t1.priority", "tasks.missing", "agents"])

    assert partial == {"tasks": {"t1": {"priority": 3}}, "agents": {}}


def test_invalid_store_settings_are_rejected(memory_storage) -> None:
    with pytest.raises(ValueError, match="flush_interval_seconds"):
        StateStore(memory_storage, flush_interval_seconds=0)
    with pytest.raises(ValueError, match="max_flush_failures"):
        StateStore(memory_storage, max_flush_failures=0)


def test_flush_replays_onto_document_written_by_another_store(state_path: Path, clock) -> None:
    coordinator = StateStore(JsonFileStorage(state_path), clock=clock)
    worker = StateStore(JsonFileStorage(state_path), clock=clock)

    worker.commit({"agents.w1": {"role": "implementer"}}, "w1")
    assert worker.flush() == 1
    worker.close()

    coordinator.commit({"tasks.t1": {"title": "queued"}}, "cli")
    assert coordinator.flush() == 2
    coordinator.close()

    reopened = StateStore(JsonFileStorage(state_path), clock=clock)
    document = reopened.read()
    reopened.close()
    assert document["version"] == 2
    assert document["agents"]["w1"]["role"] == "implementer"
    assert document["tasks"]["t1"]["title"] == "queued"


def test_refresh_adopts_newer_version_from_another_store(state_path: Path, clock) -> None:
    coordinator = StateStore(JsonFileStorage(state_path), clock=clock)
    received: list[tuple[int, list[str]]] = []
    coordinator.subscribe(
        lambda version, document: received.append((version, sorted(document["agents"]))),
    )
    assert coordinator.refresh() is None

    worker = StateStore(JsonFileStorage(state_path), clock=clock)
    worker.commit({"agents.w1": {"role": "validator"}}, "w1")
    worker.close()

    assert coordinator.refresh() == 1
    assert coordinator.read(["agents.w1.role"]) == {"agents": {"w1": {"role": "validator"}}}
    assert received == [(1, ["w1"])]
    assert coordinator.refresh() is None
    coordinator.close()


def test_stores_sharing_storage_keep_versions_monotonic(memory_storage, clock) -> None:
    first = StateStore(memory_storage, clock=clock)
    second = StateStore(memory_storage, clock=clock)

    first.commit({"tasks.a": 1}, "cli")
    assert first.flush() == 1
    second.commit({"tasks.b": 2}, "cli")
    assert second.flush() == 2
    first.commit({"tasks.c": 3}, "cli")
    assert first.flush() == 3

    assert memory_storage.document["tasks"] == {"a": 1, "b": 2, "c": 3}
    assert memory_storage.written_versions == [0, 1, 2, 3]


def test_failure_listeners_hear_about_fatal_store(memory_storage, clock) -> None:
    store = StateStore(memory_storage, clock=clock, max_flush_failures=1)
    failures: list[PersistenceFailure] = []
    store.subscribe_failure(failures.append)
    store.commit({"tasks.t1": 1}, "cli")
    memory_storage.fail_writes = 1

    with pytest.raises(PersistenceFailure):
        store.flush()

    assert len(failures) == 1
    assert store.is_failed
