"""Dotted-path helpers and record mapping for the coordination document.

Persisted layout::

    {
      "version": int,
      "tasks": {task_id: Task},
      "agents": {agent_id: AgentRecord},
      "lastUpdated": ISO-8601 string
    }

Records are stored with camelCase keys. Paths address nested objects with
dots, e.g. ``tasks.task-1`` or ``agents.worker-a.metrics.completed``, so
record ids must not contain dots.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from hive_coord.coordination.errors import ValidationError
from hive_coord.coordination.models import (
    AgentMetrics,
    AgentRecord,
    AgentState,
    RoleName,
    Task,
    TaskResults,
    TaskStatus,
)
from hive_coord.storage.common import from_iso, to_iso

RESERVED_KEYS = frozenset({"version", "lastUpdated"})


def empty_document(now: datetime) -> dict[str, Any]:
    """Fresh document created on first boot."""

    return {"version": 0, "tasks": {}, "agents": {}, "lastUpdated": to_iso(now)}


def split_path(path: str) -> list[str]:
    """Validate a dotted mutation path and return its segments."""

    if not isinstance(path, str) or not path:
        raise ValidationError(f"Mutation path must be a non-empty string, got {path!r}")
    segments = path.split(".")
    if any(not segment.strip() for segment in segments):
        raise ValidationError(f"Mutation path has an empty segment: {path!r}")
    if segments[0] in RESERVED_KEYS:
        raise ValidationError(f"Path {path!r} is managed by the store and cannot be mutated")
    return segments


def validate_record_id(value: str, *, kind: str) -> str:
    """Ids become path segments, so they must be non-empty and dot-free."""

    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{kind} id must be a non-empty string")
    if "." in value:
        raise ValidationError(f"{kind} id must not contain '.': {value!r}")
    return value


def normalize_value(value: Any) -> Any:
    """Deep-copy a mutation value through JSON so later caller edits cannot leak in."""

    try:
        return json.loads(json.dumps(value, ensure_ascii=False))
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Mutation value is not JSON-serializable: {error}") from error


def check_applicable(document: Mapping[str, Any], segments: list[str]) -> bool:
    """True when every existing parent along ``segments`` is an object."""

    node: Any = document
    for segment in segments[:-1]:
        node = node.get(segment)
        if node is None:
            return True
        if not isinstance(node, dict):
            return False
    return True


def apply_mutation(document: dict[str, Any], segments: list[str], value: Any) -> None:
    """Set the value at ``segments``; ``None`` deletes the key."""

    node = document
    for segment in segments[:-1]:
        child = node.get(segment)
        if child is None:
            if value is None:
                return
            child = {}
            node[segment] = child
        node = child
    if value is None:
        node.pop(segments[-1], None)
    else:
        node[segments[-1]] = value


def get_path(document: Mapping[str, Any], path: str) -> tuple[bool, Any]:
    """Return ``(found, value)`` for a dotted path."""

    node: Any = document
    for segment in path.split("."):
        if not isinstance(node, Mapping) or segment not in node:
            return False, None
        node = node[segment]
    return True, node


def extract_paths(document: Mapping[str, Any], paths: Iterable[str]) -> dict[str, Any]:
    """Build a partial document holding only ``paths``; missing paths are skipped."""

    partial: dict[str, Any] = {}
    for path in paths:
        found, value = get_path(document, path)
        if not found:
            continue
        apply_mutation(partial, path.split("."), copy.deepcopy(value))
    return partial


def task_to_document(task: Task) -> dict[str, Any]:
    """Serialize a task record."""

    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "tags": sorted(task.tags),
        "assignedRole": task.assigned_role.value if task.assigned_role is not None else None,
        "assignedTo": task.assigned_to,
        "status": task.status.value,
        "priority": task.priority,
        "dependencies": list(task.dependencies),
        "blockedBy": task.blocked_by,
        "createdBy": task.created_by,
        "createdAt": to_iso(task.created_at),
        "updatedAt": to_iso(task.updated_at),
        "completedAt": to_iso(task.completed_at) if task.completed_at is not None else None,
        "results": results_to_document(task.results) if task.results is not None else None,
    }


def task_from_document(raw: Mapping[str, Any]) -> Task:
    """Parse a stored task record."""

    try:
        return Task(
            id=str(raw["id"]),
            title=str(raw["title"]),
            description=str(raw.get("description") or ""),
            tags=frozenset(str(tag) for tag in raw.get("tags") or ()),
            status=TaskStatus(raw["status"]),
            priority=int(raw["priority"]),
            created_by=str(raw.get("createdBy") or ""),
            created_at=from_iso(raw["createdAt"]),
            updated_at=from_iso(raw.get("updatedAt") or raw["createdAt"]),
            dependencies=tuple(str(dep) for dep in raw.get("dependencies") or ()),
            assigned_role=RoleName(raw["assignedRole"]) if raw.get("assignedRole") else None,
            assigned_to=raw.get("assignedTo"),
            blocked_by=raw.get("blockedBy"),
            completed_at=from_iso(raw["completedAt"]) if raw.get("completedAt") else None,
            results=results_from_document(raw["results"]) if raw.get("results") else None,
        )
    except (KeyError, TypeError, ValueError) as error:
        raise ValidationError(f"Malformed task record {raw.get('id')!r}: {error}") from error


def results_to_document(results: TaskResults) -> dict[str, Any]:
    return {
        "files": list(results.files),
        "commands": list(results.commands),
        "tests": list(results.tests),
        "metrics": dict(results.metrics),
    }


def results_from_document(raw: Mapping[str, Any]) -> TaskResults:
    return TaskResults(
        files=tuple(raw.get("files") or ()),
        commands=tuple(raw.get("commands") or ()),
        tests=tuple(raw.get("tests") or ()),
        metrics=dict(raw.get("metrics") or {}),
    )


def agent_to_document(agent: AgentRecord) -> dict[str, Any]:
    """Serialize an agent record."""

    return {
        "id": agent.id,
        "role": agent.role.value,
        "state": agent.state.value,
        "currentTaskId": agent.current_task_id,
        "currentTaskStartedAt": (
            to_iso(agent.current_task_started_at)
            if agent.current_task_started_at is not None
            else None
        ),
        "lastHeartbeat": to_iso(agent.last_heartbeat),
        "metrics": {
            "completed": agent.metrics.completed,
            "failed": agent.metrics.failed,
            "totalActiveTime": agent.metrics.total_active_time,
        },
    }


def agent_from_document(raw: Mapping[str, Any]) -> AgentRecord:
    """Parse a stored agent record."""

    try:
        metrics = raw.get("metrics") or {}
        started_at = raw.get("currentTaskStartedAt")
        return AgentRecord(
            id=str(raw["id"]),
            role=RoleName(raw["role"]),
            state=AgentState(raw["state"]),
            last_heartbeat=from_iso(raw["lastHeartbeat"]),
            current_task_id=raw.get("currentTaskId"),
            current_task_started_at=from_iso(started_at) if started_at else None,
            metrics=AgentMetrics(
                completed=int(metrics.get("completed", 0)),
                failed=int(metrics.get("failed", 0)),
                total_active_time=float(metrics.get("totalActiveTime", 0.0)),
            ),
        )
    except (KeyError, TypeError, ValueError) as error:
        raise ValidationError(f"Malformed agent record {raw.get('id')!r}: {error}") from error
