from __future__ import annotations

import allure
import pytest

from hive_coord.coordination.agents import AgentDirectory, heartbeat_age
from hive_coord.coordination.errors import Forbidden, NotFound, ValidationError
from hive_coord.coordination.models import AgentState, RoleName
from hive_coord.coordination.registry import TaskRegistry
from hive_coord.coordination.state_store import StateStore
from hive_coord.storage.common import to_iso

pytestmark = [
    allure.epic("Coordination Core"),
    allure.feature("Agent Directory"),
]


def test_first_heartbeat_registers_agent(
    directory: AgentDirectory,
    store: StateStore,
    clock,
) -> None:
    record = directory.heartbeat("w1", role="implementer")

    assert record.role == RoleName.IMPLEMENTER
    assert record.state == AgentState.IDLE
    assert record.last_heartbeat == clock()
    assert directory.committed() == {}

    store.flush()
    raw = store.read()["agents"]["w1"]
    assert raw["role"] == "implementer"
    assert raw["state"] == "idle"
    assert raw["metrics"] == {"completed": 0, "failed": 0, "totalActiveTime": 0.0}
    assert directory.committed()["w1"].id == "w1"


def test_first_heartbeat_requires_role(directory: AgentDirectory) -> None:
    with pytest.raises(ValidationError, match="must declare a role"):
        directory.heartbeat("w1")


def test_agent_ids_must_be_path_safe(directory: AgentDirectory) -> None:
    with pytest.raises(ValidationError, match="must not contain"):
        directory.heartbeat("w.1", role="auditor")


def test_heartbeat_updates_liveness_and_state(
    directory: AgentDirectory,
    store: StateStore,
    clock,
) -> None:
    directory.heartbeat("w1", role="validator")
    later = clock.advance(15)

    record = directory.heartbeat("w1", state=AgentState.ERROR)

    assert record.last_heartbeat == later
    assert record.state == AgentState.ERROR
    assert heartbeat_age(record, clock.advance(5)) == 5
    store.flush()
    assert store.read()["agents"]["w1"]["state"] == "error"


def test_flush_time_heartbeat_reaches_the_index(
    directory: AgentDirectory,
    registry: TaskRegistry,
    store: StateStore,
    clock,
) -> None:
    directory.heartbeat("w1", role="implementer")
    store.flush()
    task = registry.create("Work", "", ("FIX",), "planner")
    registry.claim(task.id, "w1")
    flushed_at = clock.advance(12)

    store.flush()

    assert directory.get("w1").last_heartbeat == flushed_at
    assert store.read()["agents"]["w1"]["lastHeartbeat"] == to_iso(flushed_at)


def test_set_state_ignores_unknown_agents(directory: AgentDirectory) -> None:
    assert directory.set_state("ghost", AgentState.OFFLINE) is None
    assert directory.mark_offline("ghost") is None
    with pytest.raises(NotFound):
        directory.get("ghost")


def test_begin_task_requires_assignment(
    directory: AgentDirectory,
    registry: TaskRegistry,
) -> None:
    directory.heartbeat("w1", role="implementer")
    task = registry.create("Work", "", ("FIX",), "planner")

    with pytest.raises(Forbidden):
        directory.begin_task("w1", task.id)

    registry.claim(task.id, "w1")
    record = directory.begin_task("w1", task.id)

    assert record.state == AgentState.WORKING
    assert record.current_task_id == task.id


def test_finish_task_updates_metrics(
    directory: AgentDirectory,
    registry: TaskRegistry,
    store: StateStore,
    clock,
) -> None:
    directory.heartbeat("w1", role="implementer")
    first = registry.create("First", "", ("FIX",), "planner")
    second = registry.create("Second", "", ("FIX",), "planner")

    registry.claim(first.id, "w1")
    directory.begin_task("w1", first.id)
    clock.advance(30)
    directory.finish_task("w1", succeeded=True)

    registry.claim(second.id, "w1")
    directory.begin_task("w1", second.id)
    clock.advance(10)
    record = directory.finish_task("w1", succeeded=False)

    assert record.state == AgentState.IDLE
    assert record.current_task_id is None
    assert record.metrics.completed == 1
    assert record.metrics.failed == 1
    assert record.metrics.total_active_time == 40.0

    store.flush()
    raw = store.read()["agents"]["w1"]
    assert raw["metrics"]["totalActiveTime"] == 40.0
    assert raw.get("currentTaskId") is None


def test_leaving_working_clears_current_task(
    directory: AgentDirectory,
    registry: TaskRegistry,
) -> None:
    directory.heartbeat("w1", role="implementer")
    task = registry.create("Work", "", ("FIX",), "planner")
    registry.claim(task.id, "w1")
    directory.begin_task("w1", task.id)

    record = directory.mark_offline("w1")

    assert record is not None
    assert record.state == AgentState.OFFLINE
    assert record.current_task_id is None


def test_list_is_sorted_and_records_survive_reload(
    directory: AgentDirectory,
    store: StateStore,
) -> None:
    directory.heartbeat("w2", role="validator")
    directory.heartbeat("w1", role="auditor")
    store.flush()

    reloaded = AgentDirectory(store)

    assert [agent.id for agent in reloaded.list()] == ["w1", "w2"]
