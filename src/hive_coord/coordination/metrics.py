"""Backlog and worker statistics for stats commands."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

from hive_coord.coordination.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    AgentRecord,
    AgentState,
    RoleName,
    Task,
    TaskStatus,
)

UNASSIGNED_ROLE = "unassigned"


@dataclass(slots=True)
class TaskStats:
    """Task counts by status, priority, and role hint."""

    total: int
    by_status: dict[str, int]
    by_priority: dict[int, int]
    by_role: dict[str, int]

    @property
    def backlog(self) -> int:
        """Tasks still waiting for a worker."""

        return self.by_status[TaskStatus.PENDING.value] + self.by_status[TaskStatus.BLOCKED.value]


@dataclass(slots=True)
class AgentStats:
    """Worker counts by state plus aggregated work counters."""

    total: int
    by_state: dict[str, int]
    completed: int
    failed: int
    total_active_time: float


def build_task_stats(tasks: Iterable[Task]) -> TaskStats:
    """Count tasks; every status, priority, and role appears even when zero."""

    status_counts: Counter[str] = Counter()
    priority_counts: Counter[int] = Counter()
    role_counts: Counter[str] = Counter()
    total = 0
    for task in tasks:
        total += 1
        status_counts[task.status.value] += 1
        priority_counts[task.priority] += 1
        role_counts[task.assigned_role.value if task.assigned_role else UNASSIGNED_ROLE] += 1

    return TaskStats(
        total=total,
        by_status={status.value: status_counts[status.value] for status in TaskStatus},
        by_priority={
            priority: priority_counts[priority]
            for priority in range(MIN_PRIORITY, MAX_PRIORITY + 1)
        },
        by_role={
            **{role.value: role_counts[role.value] for role in RoleName},
            UNASSIGNED_ROLE: role_counts[UNASSIGNED_ROLE],
        },
    )


def build_agent_stats(agents: Iterable[AgentRecord]) -> AgentStats:
    state_counts: Counter[str] = Counter()
    completed = 0
    failed = 0
    active_time = 0.0
    total = 0
    for agent in agents:
        total += 1
        state_counts[agent.state.value] += 1
        completed += agent.metrics.completed
        failed += agent.metrics.failed
        active_time += agent.metrics.total_active_time
    return AgentStats(
        total=total,
        by_state={state.value: state_counts[state.value] for state in AgentState},
        completed=completed,
        failed=failed,
        total_active_time=active_time,
    )


def render_stats_lines(*, tasks: TaskStats, agents: AgentStats | None = None) -> list[str]:
    """Render operator-facing statistics lines for CLI output."""

    lines = [
        f"Tasks: total={tasks.total} backlog={tasks.backlog}",
        "Tasks by status: " + _fmt_key_value(tasks.by_status),
        "Tasks by priority: "
        + " ".join(f"p{priority}={count}" for priority, count in sorted(tasks.by_priority.items())),
        "Tasks by role: " + _fmt_key_value(tasks.by_role),
    ]
    if agents is not None:
        lines.append(f"Agents: total={agents.total} " + _fmt_key_value(agents.by_state))
        lines.append(
            "Agent work: "
            f"completed={agents.completed} failed={agents.failed} "
            f"active_time={agents.total_active_time:.1f}s",
        )
    return lines


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return "none"
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
