"""Tag routing between tasks and worker roles."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from hive_coord.coordination.errors import ValidationError
from hive_coord.coordination.models import RoleName, Task


@dataclass(slots=True, frozen=True)
class RoleConfig:
    """Routing profile of one worker role."""

    name: RoleName
    description: str
    watch_tags: frozenset[str]
    ignore_tags: frozenset[str] = frozenset()
    priority_threshold: int | None = None
    max_concurrent_tasks: int = 1
    task_timeout_minutes: int | None = None
    check_interval_seconds: int = 60

    def accepts_priority(self, priority: int) -> bool:
        return self.priority_threshold is None or priority >= self.priority_threshold


def route(task: Task, role: RoleConfig) -> bool:
    """A task matches when it shares a watched tag and carries no ignored tag."""

    return bool(task.tags & role.watch_tags) and not (task.tags & role.ignore_tags)


def filter_for_role(tasks: Iterable[Task], role: RoleConfig) -> list[Task]:
    """Keep routed tasks, preserving input order."""

    return [task for task in tasks if route(task, role)]


DEFAULT_ROLES: dict[RoleName, RoleConfig] = {
    RoleName.AUDITOR: RoleConfig(
        name=RoleName.AUDITOR,
        description="Analyzes the codebase for issues and creates improvement tasks",
        watch_tags=frozenset({"ANALYZE", "AUDIT", "REVIEW", "SECURITY", "PERFORMANCE"}),
        ignore_tags=frozenset({"IN_PROGRESS", "BLOCKED"}),
        priority_threshold=2,
        max_concurrent_tasks=1,
        task_timeout_minutes=30,
        check_interval_seconds=60,
    ),
    RoleName.IMPLEMENTER: RoleConfig(
        name=RoleName.IMPLEMENTER,
        description="Implements features and fixes based on tasks",
        watch_tags=frozenset({"IMPLEMENT", "FEATURE", "FIX", "REFACTOR", "UPDATE"}),
        ignore_tags=frozenset({"DRAFT", "NEEDS_REVIEW"}),
        max_concurrent_tasks=1,
        task_timeout_minutes=120,
        check_interval_seconds=30,
    ),
    RoleName.VALIDATOR: RoleConfig(
        name=RoleName.VALIDATOR,
        description="Tests implementations and ensures quality",
        watch_tags=frozenset({"TEST", "VALIDATE", "DEPLOY", "RELEASE", "CHECK"}),
        ignore_tags=frozenset({"UNTESTABLE", "SKIP_TESTS"}),
        max_concurrent_tasks=2,
        task_timeout_minutes=60,
        check_interval_seconds=45,
    ),
}


def role_config(
    name: str | RoleName,
    roles: dict[RoleName, RoleConfig] | None = None,
) -> RoleConfig:
    """Resolve a role name against ``roles`` (built-in roles by default)."""

    catalog = DEFAULT_ROLES if roles is None else roles
    try:
        key = RoleName(name)
    except ValueError as error:
        known = ", ".join(sorted(role.value for role in catalog))
        raise ValidationError(f"Unknown role {name!r}. Known roles: {known}") from error
    if key not in catalog:
        raise ValidationError(f"Role {key.value!r} is not configured.")
    return catalog[key]
