"""Domain models for tasks, agents, and registry queries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MIN_PRIORITY = 1
MAX_PRIORITY = 5
DEFAULT_PRIORITY = 3


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

# pending -> completed covers completion of a task nobody claimed.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {
            TaskStatus.IN_PROGRESS,
            TaskStatus.BLOCKED,
            TaskStatus.COMPLETED,
            TaskStatus.CANCELLED,
        },
    ),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.CANCELLED},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def is_transition_allowed(status_from: TaskStatus, status_to: TaskStatus) -> bool:
    """Return True when a status change is legal; staying put is always legal."""

    if status_from == status_to:
        return True
    return status_to in ALLOWED_TRANSITIONS[status_from]


class RoleName(str, Enum):
    """Worker roles known to the coordinator."""

    AUDITOR = "auditor"
    IMPLEMENTER = "implementer"
    VALIDATOR = "validator"


class AgentState(str, Enum):
    """Self-reported worker state."""

    IDLE = "idle"
    WORKING = "working"
    ERROR = "error"
    OFFLINE = "offline"


@dataclass(slots=True, frozen=True)
class TaskResults:
    """Structured payload attached to a completed task."""

    files: tuple[str, ...] = ()
    commands: tuple[str, ...] = ()
    tests: tuple[str, ...] = ()
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Task:
    """Immutable snapshot of one task record."""

    id: str
    title: str
    description: str
    tags: frozenset[str]
    status: TaskStatus
    priority: int
    created_by: str
    created_at: datetime
    updated_at: datetime
    dependencies: tuple[str, ...] = ()
    assigned_role: RoleName | None = None
    assigned_to: str | None = None
    blocked_by: str | None = None
    completed_at: datetime | None = None
    results: TaskResults | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class TaskPatch:
    """Partial task update; ``None`` fields are left unchanged."""

    title: str | None = None
    description: str | None = None
    tags: frozenset[str] | None = None
    priority: int | None = None
    assigned_role: RoleName | None = None
    assigned_to: str | None = None
    status: TaskStatus | None = None
    dependencies: tuple[str, ...] | None = None
    blocked_by: str | None = None
    results: TaskResults | None = None


@dataclass(slots=True)
class TaskFilter:
    """Registry query filter.

    Set fields combine with AND; values inside one field combine with OR,
    except ``exclude_tags`` which rejects any overlap. ``eligible_only`` is
    the worker polling path: it drops tasks with incomplete dependencies.
    """

    tags: frozenset[str] = frozenset()
    exclude_tags: frozenset[str] = frozenset()
    roles: frozenset[RoleName] = frozenset()
    statuses: frozenset[TaskStatus] = frozenset()
    priorities: frozenset[int] = frozenset()
    assigned_to: str | None = None
    include_completed: bool = False
    eligible_only: bool = False


@dataclass(slots=True, frozen=True)
class AgentMetrics:
    """Per-agent work counters."""

    completed: int = 0
    failed: int = 0
    total_active_time: float = 0.0


@dataclass(slots=True, frozen=True)
class AgentRecord:
    """One worker as seen through the coordination document."""

    id: str
    role: RoleName
    state: AgentState
    last_heartbeat: datetime
    current_task_id: str | None = None
    current_task_started_at: datetime | None = None
    metrics: AgentMetrics = field(default_factory=AgentMetrics)
