"""Task registry: in-memory task index persisted through the state store."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any
from uuid import uuid4

from hive_coord.coordination.documents import (
    task_from_document,
    task_to_document,
    validate_record_id,
)
from hive_coord.coordination.errors import (
    Conflict,
    DependencyUnmet,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from hive_coord.coordination.metrics import TaskStats, build_task_stats
from hive_coord.coordination.models import (
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    RoleName,
    Task,
    TaskFilter,
    TaskPatch,
    TaskResults,
    TaskStatus,
    is_transition_allowed,
)
from hive_coord.coordination.routing import RoleConfig, filter_for_role
from hive_coord.coordination.state_store import MutationGuard, StateStore
from hive_coord.storage.common import utc_now

logger = logging.getLogger(__name__)

TASK_ID_PREFIX = "task-"


def sort_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Priority descending, then creation time ascending (stable)."""

    return sorted(tasks, key=lambda task: (-task.priority, task.created_at))


class TaskRegistry:
    """Owns task records.

    Every write validates against the in-memory index under a lock, queues
    the full task record on the state store, and only then updates the
    index. Reads are served from the index, so a writer sees its own change
    immediately while ``StateStore.read`` catches up at the next flush.

    Whenever a committed version arrives and no commit is queued, the index
    is rebuilt from it. That drops writes the flush rejected and picks up
    tasks written by other processes.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self.reload()
        store.subscribe(self._on_committed)
        store.subscribe_failure(self._on_store_failed)

    def reload(self) -> None:
        """Rebuild the index from the last committed document."""

        tasks = _parse_tasks(self.store.read(["tasks"]).get("tasks", {}))
        with self._lock:
            self._tasks = tasks
        logger.debug("Task index loaded: %d task(s)", len(tasks))

    def _on_committed(self, version: int, document: Mapping[str, Any]) -> None:
        tasks = _parse_tasks(document.get("tasks", {}))
        with self._lock:
            if self.store.pending_count:
                return
            changed = sum(
                1
                for task_id in tasks.keys() | self._tasks.keys()
                if tasks.get(task_id) != self._tasks.get(task_id)
            )
            self._tasks = tasks
        if changed:
            logger.debug("Task index resynced at version=%d: %d task(s) changed", version, changed)

    def _on_store_failed(self, _error: Exception) -> None:
        self.reload()
        logger.error(
            "State store failed; task index reset to committed version=%d",
            self.store.version,
        )

    # -- writes ---------------------------------------------------------------

    def create(  # noqa: PLR0913
        self,
        title: str,
        description: str,
        tags: Iterable[str],
        creator: str,
        *,
        priority: int = DEFAULT_PRIORITY,
        role: RoleName | str | None = None,
        dependencies: Iterable[str] = (),
    ) -> Task:
        """Create a pending task and queue it for persistence."""

        title = _require_text(title, field_name="title")
        creator = _require_text(creator, field_name="creator")
        tag_set = _normalize_tags(tags)
        _validate_priority(priority)
        role_name = _parse_role(role)
        task_id = f"{TASK_ID_PREFIX}{uuid4()}"

        with self._lock:
            deps = self._validate_dependencies(task_id, dependencies)
            now = self._clock()
            task = Task(
                id=task_id,
                title=title,
                description=description or "",
                tags=tag_set,
                status=TaskStatus.PENDING,
                priority=priority,
                created_by=creator,
                created_at=now,
                updated_at=now,
                dependencies=deps,
                assigned_role=role_name,
            )
            self._persist(task, actor=creator)

        logger.info(
            "Created task %s priority=%d tags=%s by %s",
            task.id,
            task.priority,
            ",".join(sorted(task.tags)),
            creator,
        )
        return task

    def update(self, task_id: str, patch: TaskPatch, actor: str) -> Task:  # noqa: C901
        """Merge ``patch`` into a task, enforcing the status machine."""

        with self._lock:
            current = self._require(task_id)
            changes: dict[str, Any] = {}
            if patch.title is not None:
                changes["title"] = _require_text(patch.title, field_name="title")
            if patch.description is not None:
                changes["description"] = patch.description
            if patch.tags is not None:
                changes["tags"] = _normalize_tags(patch.tags)
            if patch.priority is not None:
                _validate_priority(patch.priority)
                changes["priority"] = patch.priority
            if patch.assigned_role is not None:
                changes["assigned_role"] = _parse_role(patch.assigned_role)
            if patch.assigned_to is not None:
                changes["assigned_to"] = _require_text(patch.assigned_to, field_name="assigned_to")
            if patch.dependencies is not None:
                changes["dependencies"] = self._validate_dependencies(task_id, patch.dependencies)
            if patch.results is not None:
                changes["results"] = patch.results

            target = patch.status if patch.status is not None else current.status
            if target != current.status:
                self._check_transition(current, target)
                changes["status"] = target
                if target == TaskStatus.IN_PROGRESS:
                    self._check_dependencies(current, changes.get("dependencies"))
            if patch.blocked_by is not None:
                if target != TaskStatus.BLOCKED:
                    raise ValidationError("blocked_by can only be set on a blocked task.")
                changes["blocked_by"] = _require_text(patch.blocked_by, field_name="blocked_by")
            elif target != TaskStatus.BLOCKED and current.blocked_by is not None:
                changes["blocked_by"] = None
            if target == TaskStatus.COMPLETED and current.completed_at is None:
                changes["completed_at"] = self._clock()

            if not changes:
                return current
            updated = dataclasses.replace(current, **changes, updated_at=self._clock())
            self._persist(updated, actor=actor)

        if updated.status != current.status:
            logger.info(
                "Task %s status %s -> %s by %s",
                task_id,
                current.status.value,
                updated.status.value,
                actor,
            )
        return updated

    def claim(self, task_id: str, worker_id: str) -> Task:
        """Give ``worker_id`` exclusive ownership of a pending task."""

        worker_id = _require_text(worker_id, field_name="worker_id")
        with self._lock:
            current = self._require(task_id)
            if current.assigned_to is not None and current.assigned_to != worker_id:
                raise Conflict(f"Task {task_id} is already claimed by {current.assigned_to}.")
            if current.status == TaskStatus.IN_PROGRESS:
                return current
            self._check_transition(current, TaskStatus.IN_PROGRESS)
            self._check_dependencies(current)
            claimed = dataclasses.replace(
                current,
                assigned_to=worker_id,
                status=TaskStatus.IN_PROGRESS,
                updated_at=self._clock(),
            )
            self._persist(claimed, actor=worker_id, guard=_owner_guard(task_id, worker_id))

        logger.info("Task %s claimed by %s", task_id, worker_id)
        return claimed

    def complete(
        self,
        task_id: str,
        worker_id: str,
        results: TaskResults | None = None,
    ) -> Task:
        """Mark a task completed; only its owner may do so once it is assigned."""

        worker_id = _require_text(worker_id, field_name="worker_id")
        with self._lock:
            current = self._require(task_id)
            if current.assigned_to is not None and current.assigned_to != worker_id:
                raise Forbidden(
                    f"Task {task_id} is assigned to {current.assigned_to}, not {worker_id}.",
                )
            if current.status == TaskStatus.COMPLETED:
                return current
            self._check_transition(current, TaskStatus.COMPLETED)
            now = self._clock()
            completed = dataclasses.replace(
                current,
                status=TaskStatus.COMPLETED,
                completed_at=current.completed_at or now,
                results=results if results is not None else current.results,
                updated_at=now,
            )
            self._persist(completed, actor=worker_id, guard=_owner_guard(task_id, worker_id))

        logger.info("Task %s completed by %s", task_id, worker_id)
        return completed

    def block(self, task_id: str, actor: str, reason: str) -> Task:
        return self.update(
            task_id,
            TaskPatch(status=TaskStatus.BLOCKED, blocked_by=reason),
            actor,
        )

    def cancel(self, task_id: str, actor: str) -> Task:
        return self.update(task_id, TaskPatch(status=TaskStatus.CANCELLED), actor)

    def release(self, task_id: str, actor: str) -> Task:
        """Drop the owner of a pending or blocked task and return it to the pool.

        A stuck claim is recovered by blocking the task first and then
        releasing it.
        """

        actor = _require_text(actor, field_name="actor")
        with self._lock:
            current = self._require(task_id)
            self._check_transition(current, TaskStatus.PENDING)
            if current.assigned_to is None and current.status == TaskStatus.PENDING:
                return current
            released = dataclasses.replace(
                current,
                status=TaskStatus.PENDING,
                assigned_to=None,
                blocked_by=None,
                updated_at=self._clock(),
            )
            self._persist(
                released,
                actor=actor,
                guard=_owner_guard(task_id, current.assigned_to),
            )

        logger.info("Task %s released from %s by %s", task_id, current.assigned_to, actor)
        return released

    # -- reads ----------------------------------------------------------------

    def get(self, task_id: str) -> Task:
        with self._lock:
            return self._require(task_id)

    def query(self, task_filter: TaskFilter | None = None) -> list[Task]:
        """Filter tasks and return them in dispatch order.

        Completed tasks are hidden unless ``include_completed`` is set or
        ``statuses`` names ``completed`` explicitly.
        """

        task_filter = task_filter or TaskFilter()
        with self._lock:
            tasks = list(self._tasks.values())
            selected = [task for task in tasks if self._matches(task, task_filter)]
        return sort_tasks(selected)

    def eligible_for_role(self, role: RoleConfig) -> list[Task]:
        """Worker polling path: routed, pending, above threshold, dependencies met."""

        candidates = self.query(
            TaskFilter(statuses=frozenset({TaskStatus.PENDING}), eligible_only=True),
        )
        return [
            task
            for task in filter_for_role(candidates, role)
            if role.accepts_priority(task.priority)
        ]

    def related(self, task_id: str) -> list[Task]:
        """Other tasks sharing at least one tag, completed ones included."""

        task = self.get(task_id)
        if not task.tags:
            return []
        matches = self.query(TaskFilter(tags=task.tags, include_completed=True))
        return [candidate for candidate in matches if candidate.id != task_id]

    def can_work_on(self, task: Task, worker_id: str) -> bool:
        """True when ``worker_id`` could claim ``task`` right now."""

        if task.status != TaskStatus.PENDING:
            return False
        if task.assigned_to is not None and task.assigned_to != worker_id:
            return False
        with self._lock:
            return not self._unmet_dependencies(task.dependencies)

    def unmet_dependencies(self, task_id: str) -> tuple[str, ...]:
        with self._lock:
            return self._unmet_dependencies(self._require(task_id).dependencies)

    def stats(self) -> TaskStats:
        with self._lock:
            return build_task_stats(list(self._tasks.values()))

    # -- internals ------------------------------------------------------------

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found.")
        return task

    def _persist(self, task: Task, *, actor: str, guard: MutationGuard | None = None) -> None:
        self.store.commit({f"tasks.{task.id}": task_to_document(task)}, actor, guard=guard)
        self._tasks[task.id] = task

    def _check_transition(self, task: Task, target: TaskStatus) -> None:
        if not is_transition_allowed(task.status, target):
            raise InvalidTransition(task.id, task.status.value, target.value)

    def _check_dependencies(
        self,
        task: Task,
        dependencies: tuple[str, ...] | None = None,
    ) -> None:
        unmet = self._unmet_dependencies(
            dependencies if dependencies is not None else task.dependencies,
        )
        if unmet:
            raise DependencyUnmet(task.id, unmet)

    def _unmet_dependencies(self, dependencies: Iterable[str]) -> tuple[str, ...]:
        unmet: list[str] = []
        for dependency_id in dependencies:
            dependency = self._tasks.get(dependency_id)
            if dependency is None or dependency.status != TaskStatus.COMPLETED:
                unmet.append(dependency_id)
        return tuple(unmet)

    def _validate_dependencies(
        self,
        task_id: str,
        dependencies: Iterable[str],
    ) -> tuple[str, ...]:
        if isinstance(dependencies, str):
            raise ValidationError("dependencies must be a collection of task ids, not a string.")
        ordered = tuple(dict.fromkeys(dependencies))
        for dependency_id in ordered:
            validate_record_id(dependency_id, kind="Dependency")
            if dependency_id == task_id:
                raise ValidationError(f"Task {task_id} cannot depend on itself.")
            if dependency_id not in self._tasks:
                raise ValidationError(f"Unknown dependency {dependency_id}.")
        if self._reaches(ordered, task_id):
            raise ValidationError(f"Dependencies of {task_id} would create a cycle.")
        return ordered

    def _reaches(self, start: Iterable[str], target: str) -> bool:
        stack = list(start)
        seen: set[str] = set()
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            task = self._tasks.get(current)
            if task is not None:
                stack.extend(task.dependencies)
        return False

    def _matches(self, task: Task, task_filter: TaskFilter) -> bool:  # noqa: PLR0911
        if (
            task.status == TaskStatus.COMPLETED
            and not task_filter.include_completed
            and TaskStatus.COMPLETED not in task_filter.statuses
        ):
            return False
        if task_filter.tags and not task.tags & task_filter.tags:
            return False
        if task_filter.exclude_tags and task.tags & task_filter.exclude_tags:
            return False
        if task_filter.roles and task.assigned_role not in task_filter.roles:
            return False
        if task_filter.statuses and task.status not in task_filter.statuses:
            return False
        if task_filter.priorities and task.priority not in task_filter.priorities:
            return False
        if task_filter.assigned_to is not None and task.assigned_to != task_filter.assigned_to:
            return False
        return not (task_filter.eligible_only and self._unmet_dependencies(task.dependencies))


def _parse_tasks(raw_tasks: Mapping[str, Any]) -> dict[str, Task]:
    tasks: dict[str, Task] = {}
    for task_id, raw in raw_tasks.items():
        try:
            tasks[task_id] = task_from_document(raw)
        except ValidationError as error:
            logger.warning("Skipping unreadable task record %s: %s", task_id, error)
    return tasks


def _owner_guard(task_id: str, worker_id: str | None) -> MutationGuard:
    """Flush-time check that the task is still unowned or owned by ``worker_id``."""

    def guard(document: Mapping[str, Any]) -> bool:
        raw = document["tasks"].get(task_id)
        if not isinstance(raw, Mapping):
            return False
        owner = raw.get("assignedTo")
        return owner is None or owner == worker_id

    return guard


def _require_text(value: str, *, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string.")
    return value.strip()


def _normalize_tags(tags: Iterable[str]) -> frozenset[str]:
    if isinstance(tags, str):
        raise ValidationError("tags must be a collection of strings, not a string.")
    normalized: set[str] = set()
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip():
            raise ValidationError(f"Invalid tag {tag!r}.")
        normalized.add(tag.strip())
    return frozenset(normalized)


def _validate_priority(priority: int) -> None:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError(f"priority must be an integer, got {priority!r}.")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValidationError(
            f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}.",
        )


def _parse_role(role: RoleName | str | None) -> RoleName | None:
    if role is None:
        return None
    try:
        return RoleName(role)
    except ValueError as error:
        raise ValidationError(f"Unknown role {role!r}.") from error
