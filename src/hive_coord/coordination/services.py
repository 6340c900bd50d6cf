"""Worker-facing use cases composed from the registry, directory, and collaborators."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from hive_coord.coordination.agents import AgentDirectory
from hive_coord.coordination.collaborators.base import (
    CollaboratorError,
    MemoryMatch,
    SemanticMemory,
    WorkspaceIsolation,
)
from hive_coord.coordination.errors import Conflict, DependencyUnmet, Forbidden
from hive_coord.coordination.models import (
    DEFAULT_PRIORITY,
    AgentState,
    RoleName,
    Task,
    TaskPatch,
    TaskResults,
    TaskStatus,
)
from hive_coord.coordination.registry import TaskRegistry
from hive_coord.coordination.routing import DEFAULT_ROLES, RoleConfig, role_config

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_MAX_RESULTS = 10
DEFAULT_MEMORY_THRESHOLD = 0.7


@dataclass(slots=True)
class CreateTask:
    """High-level command to create a task."""

    title: str
    description: str
    tags: tuple[str, ...]
    creator: str
    priority: int = DEFAULT_PRIORITY
    role: RoleName | str | None = None
    dependencies: tuple[str, ...] = ()


class CoordinationService:
    """Coordinates task flow for workers and records memory annotations."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: TaskRegistry,
        directory: AgentDirectory,
        roles: Mapping[RoleName, RoleConfig] | None = None,
        memory: SemanticMemory | None = None,
        workspace: WorkspaceIsolation | None = None,
        memory_max_results: int = DEFAULT_MEMORY_MAX_RESULTS,
        memory_threshold: float = DEFAULT_MEMORY_THRESHOLD,
    ) -> None:
        self.registry = registry
        self.directory = directory
        self.roles = dict(roles or DEFAULT_ROLES)
        self.memory = memory
        self.workspace = workspace
        self.memory_max_results = memory_max_results
        self.memory_threshold = memory_threshold

    def create_task(self, command: CreateTask) -> Task:
        task = self.registry.create(
            command.title,
            command.description,
            command.tags,
            command.creator,
            priority=command.priority,
            role=command.role,
            dependencies=command.dependencies,
        )
        self._annotate(
            f"Task created: {task.title}\n{task.description}",
            task=task,
            event="created",
        )
        return task

    def poll(self, worker_id: str, role: RoleName | str) -> list[Task]:
        """Tasks ``worker_id`` may claim now, in dispatch order."""

        config = role_config(role, self.roles)
        return [
            task
            for task in self.registry.eligible_for_role(config)
            if task.assigned_to is None or task.assigned_to == worker_id
        ]

    def claim(self, task_id: str, worker_id: str) -> Task:
        task = self.registry.claim(task_id, worker_id)
        if self.directory.find(worker_id) is not None:
            self.directory.begin_task(worker_id, task_id)
        return task

    def claim_next(self, worker_id: str, role: RoleName | str) -> Task | None:
        """Claim the first task from ``poll`` that is still available."""

        for candidate in self.poll(worker_id, role):
            try:
                return self.claim(candidate.id, worker_id)
            except (Conflict, DependencyUnmet) as error:
                logger.debug("Skipping task %s for %s: %s", candidate.id, worker_id, error)
        return None

    def complete(
        self,
        task_id: str,
        worker_id: str,
        results: TaskResults | None = None,
        *,
        commit_message: str | None = None,
    ) -> Task:
        """Complete a task, optionally committing the worker's workspace first."""

        if commit_message and self.workspace is not None:
            revision = self.workspace.commit_changes(worker_id, commit_message)
            base = results or TaskResults()
            results = dataclasses.replace(base, metrics={**base.metrics, "revision": revision})
        task = self.registry.complete(task_id, worker_id, results)
        self._finish_agent(worker_id, task_id, succeeded=True)
        self._annotate(f"Task completed: {task.title}", task=task, event="completed")
        return task

    def fail(self, task_id: str, worker_id: str, reason: str) -> Task:
        """Report an obstruction: the task moves to blocked and the worker's failure count grows."""

        current = self.registry.get(task_id)
        if current.assigned_to is not None and current.assigned_to != worker_id:
            raise Forbidden(
                f"Task {task_id} is assigned to {current.assigned_to}, not {worker_id}.",
            )
        task = self.registry.block(task_id, worker_id, reason)
        self._finish_agent(worker_id, task_id, succeeded=False)
        self._annotate(f"Task blocked: {task.title}\n{reason}", task=task, event="blocked")
        return task

    def release(self, task_id: str, actor: str) -> Task:
        """Take a task back from its owner so any worker can claim it again.

        An in-progress claim passes through blocked on its way back to
        pending. An owner still working on the task goes back to idle.
        """

        current = self.registry.get(task_id)
        if current.status == TaskStatus.IN_PROGRESS:
            self.registry.block(task_id, actor, f"Released by {actor}")
        task = self.registry.release(task_id, actor)
        owner = current.assigned_to
        if owner is not None:
            agent = self.directory.find(owner)
            if agent is not None and agent.current_task_id == task_id:
                self.directory.set_state(owner, AgentState.IDLE, actor=actor)
        self._annotate(f"Task released: {task.title}", task=task, event="released")
        return task

    def update_task(self, task_id: str, patch: TaskPatch, actor: str) -> Task:
        before = self.registry.get(task_id)
        task = self.registry.update(task_id, patch, actor)
        if task.status != before.status:
            self._annotate(
                f"Task {task.title} moved from {before.status.value} to {task.status.value}",
                task=task,
                event="status_changed",
            )
        return task

    def search_memory(
        self,
        text: str,
        *,
        max_results: int | None = None,
        threshold: float | None = None,
    ) -> list[MemoryMatch]:
        if self.memory is None:
            return []
        return self.memory.query(
            text,
            max_results or self.memory_max_results,
            self.memory_threshold if threshold is None else threshold,
        )

    def _finish_agent(self, worker_id: str, task_id: str, *, succeeded: bool) -> None:
        agent = self.directory.find(worker_id)
        if agent is not None and agent.current_task_id == task_id:
            self.directory.finish_task(worker_id, succeeded=succeeded)

    def _annotate(self, content: str, *, task: Task, event: str) -> None:
        if self.memory is None:
            return
        metadata: dict[str, Any] = {
            "type": "task",
            "event": event,
            "taskId": task.id,
            "status": task.status.value,
            "priority": task.priority,
            "tags": sorted(task.tags),
        }
        try:
            self.memory.store(content, metadata)
        except CollaboratorError as error:
            logger.warning("Memory annotation for task %s failed: %s", task.id, error)
