"""Agent directory: heartbeats, self-reported state, and per-agent metrics."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from hive_coord.coordination.documents import (
    agent_from_document,
    agent_to_document,
    validate_record_id,
)
from hive_coord.coordination.errors import Forbidden, NotFound, ValidationError
from hive_coord.coordination.models import AgentMetrics, AgentRecord, AgentState, RoleName
from hive_coord.coordination.registry import TaskRegistry
from hive_coord.coordination.state_store import StateStore
from hive_coord.storage.common import utc_now

logger = logging.getLogger(__name__)

SUPERVISOR_ACTOR = "supervisor"


class AgentDirectory:
    """Maintains AgentRecords.

    Records are created on first heartbeat and never deleted. Writes touch
    individual fields so that heartbeats refreshed by the store at flush
    time are never overwritten by an older in-memory copy. Each committed
    version, including ones written by other processes, is folded back into
    the index.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        registry: TaskRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.registry = registry
        self._clock = clock
        self._lock = threading.RLock()
        self._agents: dict[str, AgentRecord] = {}
        self.reload()
        store.subscribe(self._on_flush)

    def reload(self) -> None:
        """Rebuild the index from the last committed document."""

        agents = _parse_agents(self.store.read(["agents"]).get("agents", {}))
        with self._lock:
            self._agents = agents

    def committed(self) -> dict[str, AgentRecord]:
        """Agent records as of the last flush, independent of queued writes."""

        return _parse_agents(self.store.read(["agents"]).get("agents", {}))

    def get(self, agent_id: str) -> AgentRecord:
        with self._lock:
            return self._require(agent_id)

    def find(self, agent_id: str) -> AgentRecord | None:
        with self._lock:
            return self._agents.get(agent_id)

    def list(self) -> list[AgentRecord]:
        with self._lock:
            return sorted(self._agents.values(), key=lambda agent: agent.id)

    def heartbeat(
        self,
        agent_id: str,
        *,
        role: RoleName | str | None = None,
        state: AgentState | None = None,
    ) -> AgentRecord:
        """Record liveness; the first heartbeat must declare the agent's role."""

        validate_record_id(agent_id, kind="Agent")
        role_name = _parse_role(role)
        with self._lock:
            now = self._clock()
            current = self._agents.get(agent_id)
            if current is None:
                if role_name is None:
                    raise ValidationError(
                        f"First heartbeat of agent {agent_id} must declare a role.",
                    )
                record = AgentRecord(
                    id=agent_id,
                    role=role_name,
                    state=state or AgentState.IDLE,
                    last_heartbeat=now,
                )
                self.store.commit({f"agents.{agent_id}": agent_to_document(record)}, agent_id)
                self._agents[agent_id] = record
                logger.info("Registered agent %s role=%s", agent_id, record.role.value)
                return record

            changes: dict[str, Any] = {"last_heartbeat": now}
            if role_name is not None and role_name != current.role:
                changes["role"] = role_name
            if state is not None and state != current.state:
                changes.update(_state_changes(current, state))
            return self._write(current, changes, actor=agent_id)

    def set_state(
        self,
        agent_id: str,
        state: AgentState,
        *,
        actor: str | None = None,
        heartbeat_at: datetime | None = None,
    ) -> AgentRecord | None:
        """Change an agent's state; unknown agents are ignored."""

        with self._lock:
            current = self._agents.get(agent_id)
            if current is None:
                logger.debug("Ignoring state change for unknown agent %s", agent_id)
                return None
            changes = _state_changes(current, state)
            if heartbeat_at is not None:
                changes["last_heartbeat"] = heartbeat_at
            if not changes:
                return current
            return self._write(current, changes, actor=actor or agent_id)

    def mark_offline(self, agent_id: str, *, actor: str = SUPERVISOR_ACTOR) -> AgentRecord | None:
        return self.set_state(agent_id, AgentState.OFFLINE, actor=actor)

    def begin_task(self, agent_id: str, task_id: str) -> AgentRecord:
        """Point the agent at a task it has claimed and mark it working."""

        if self.registry is None:
            raise ValidationError("begin_task requires a task registry.")
        task = self.registry.get(task_id)
        if task.assigned_to != agent_id:
            raise Forbidden(f"Task {task_id} is not assigned to agent {agent_id}.")
        with self._lock:
            current = self._require(agent_id)
            now = self._clock()
            record = self._write(
                current,
                {
                    "state": AgentState.WORKING,
                    "current_task_id": task_id,
                    "current_task_started_at": now,
                    "last_heartbeat": now,
                },
                actor=agent_id,
            )
        logger.info("Agent %s started task %s", agent_id, task_id)
        return record

    def finish_task(self, agent_id: str, *, succeeded: bool) -> AgentRecord:
        """Close the agent's current task, update its metrics, and return it to idle."""

        with self._lock:
            current = self._require(agent_id)
            now = self._clock()
            elapsed = 0.0
            if current.current_task_started_at is not None:
                elapsed = max(0.0, (now - current.current_task_started_at).total_seconds())
            metrics = AgentMetrics(
                completed=current.metrics.completed + (1 if succeeded else 0),
                failed=current.metrics.failed + (0 if succeeded else 1),
                total_active_time=current.metrics.total_active_time + elapsed,
            )
            return self._write(
                current,
                {
                    "state": AgentState.IDLE,
                    "current_task_id": None,
                    "current_task_started_at": None,
                    "metrics": metrics,
                    "last_heartbeat": now,
                },
                actor=agent_id,
            )

    def _require(self, agent_id: str) -> AgentRecord:
        record = self._agents.get(agent_id)
        if record is None:
            raise NotFound(f"Agent {agent_id} not found.")
        return record

    def _write(self, current: AgentRecord, changes: dict[str, Any], *, actor: str) -> AgentRecord:
        updated = dataclasses.replace(current, **changes)
        document = agent_to_document(updated)
        mutations = {
            f"agents.{current.id}.{key}": document[key]
            for key in _changed_keys(changes)
        }
        self.store.commit(mutations, actor)
        self._agents[current.id] = updated
        if updated.state != current.state:
            logger.info(
                "Agent %s state %s -> %s",
                current.id,
                current.state.value,
                updated.state.value,
            )
        return updated

    def _on_flush(self, _version: int, document: Mapping[str, Any]) -> None:
        committed_agents = _parse_agents(document.get("agents", {}))
        with self._lock:
            if not self.store.pending_count:
                self._agents = committed_agents
                return
            for agent_id, committed in committed_agents.items():
                current = self._agents.get(agent_id)
                if current is None:
                    self._agents[agent_id] = committed
                elif committed.last_heartbeat > current.last_heartbeat:
                    self._agents[agent_id] = dataclasses.replace(
                        current,
                        last_heartbeat=committed.last_heartbeat,
                    )


_FIELD_KEYS = {
    "role": "role",
    "state": "state",
    "current_task_id": "currentTaskId",
    "current_task_started_at": "currentTaskStartedAt",
    "last_heartbeat": "lastHeartbeat",
    "metrics": "metrics",
}


def _changed_keys(changes: dict[str, Any]) -> list[str]:
    return [_FIELD_KEYS[name] for name in changes]


def _state_changes(current: AgentRecord, state: AgentState) -> dict[str, Any]:
    """Field changes for a state move; leaving ``working`` clears the current task."""

    if state == current.state:
        return {}
    changes: dict[str, Any] = {"state": state}
    if state != AgentState.WORKING and current.current_task_id is not None:
        changes["current_task_id"] = None
        changes["current_task_started_at"] = None
    return changes


def _parse_agents(raw_agents: Mapping[str, Any]) -> dict[str, AgentRecord]:
    agents: dict[str, AgentRecord] = {}
    for agent_id, raw in raw_agents.items():
        try:
            agents[agent_id] = agent_from_document(raw)
        except ValidationError as error:
            logger.warning("Skipping unreadable agent record %s: %s", agent_id, error)
    return agents


def _parse_role(role: RoleName | str | None) -> RoleName | None:
    if role is None:
        return None
    try:
        return RoleName(role)
    except ValueError as error:
        raise ValidationError(f"Unknown role {role!r}.") from error


def heartbeat_age(record: AgentRecord, now: datetime) -> float:
    """Seconds since the agent's last heartbeat."""

    return (now - record.last_heartbeat).total_seconds()
