"""Controllers for coordination CLI commands."""

from __future__ import annotations

import json
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from hive_coord.config import Settings
from hive_coord.coordination.agents import AgentDirectory
from hive_coord.coordination.backoff import build_backoff
from hive_coord.coordination.collaborators.base import SemanticMemory, WorkspaceIsolation
from hive_coord.coordination.collaborators.memory import (
    HttpSemanticMemory,
    InMemorySemanticMemory,
)
from hive_coord.coordination.collaborators.process import SubprocessLifecycle
from hive_coord.coordination.collaborators.workspace import GitWorktreeWorkspace
from hive_coord.coordination.documents import task_to_document
from hive_coord.coordination.errors import Conflict, PersistenceFailure
from hive_coord.coordination.metrics import build_agent_stats, render_stats_lines
from hive_coord.coordination.models import (
    AgentState,
    RoleName,
    Task,
    TaskFilter,
    TaskPatch,
    TaskResults,
    TaskStatus,
)
from hive_coord.coordination.registry import TaskRegistry
from hive_coord.coordination.routing import role_config
from hive_coord.coordination.services import CoordinationService, CreateTask
from hive_coord.coordination.state_store import StateStore
from hive_coord.coordination.supervisor import HealthSupervisor, SupervisorEvent
from hive_coord.storage.base import StorageAdapter
from hive_coord.storage.json_file import JsonFileStorage
from hive_coord.storage.sqlite import SqliteStorage

CLI_ACTOR = "cli"


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    state_path: Path | None
    title: str
    description: str
    tags: tuple[str, ...]
    creator: str
    priority: int
    role: str | None
    dependencies: tuple[str, ...]


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    state_path: Path | None
    tags: tuple[str, ...] = ()
    exclude_tags: tuple[str, ...] = ()
    statuses: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()
    assigned_to: str | None = None
    include_completed: bool = False
    eligible_only: bool = False
    for_role: str | None = None
    output_format: str = "table"


@dataclass(slots=True)
class TaskShowCommand:
    """CLI input for task inspection."""

    state_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskClaimCommand:
    """CLI input for claiming a task (explicit id or next for a role)."""

    state_path: Path | None
    worker_id: str
    task_id: str | None = None
    role: str | None = None


@dataclass(slots=True)
class TaskCompleteCommand:
    """CLI input for task completion."""

    state_path: Path | None
    task_id: str
    worker_id: str
    files: tuple[str, ...] = ()
    commands: tuple[str, ...] = ()
    tests: tuple[str, ...] = ()
    commit_message: str | None = None


@dataclass(slots=True)
class TaskUpdateCommand:
    """CLI input for a partial task update."""

    state_path: Path | None
    task_id: str
    actor: str
    title: str | None = None
    description: str | None = None
    tags: tuple[str, ...] | None = None
    priority: int | None = None
    role: str | None = None
    status: str | None = None
    dependencies: tuple[str, ...] | None = None


@dataclass(slots=True)
class TaskBlockCommand:
    """CLI input for blocking or failing a task."""

    state_path: Path | None
    task_id: str
    actor: str
    reason: str


@dataclass(slots=True)
class TaskCancelCommand:
    """CLI input for task cancellation."""

    state_path: Path | None
    task_id: str
    actor: str


@dataclass(slots=True)
class TaskReleaseCommand:
    """CLI input for taking a task back from its owner."""

    state_path: Path | None
    task_id: str
    actor: str


@dataclass(slots=True)
class StatsCommand:
    """CLI input for backlog statistics."""

    state_path: Path | None


@dataclass(slots=True)
class AgentHeartbeatCommand:
    """CLI input for a worker heartbeat."""

    state_path: Path | None
    agent_id: str
    role: str | None
    state: str | None


@dataclass(slots=True)
class AgentListCommand:
    """CLI input for agent listing."""

    state_path: Path | None


@dataclass(slots=True)
class StateShowCommand:
    """CLI input for raw document inspection."""

    state_path: Path | None
    paths: tuple[str, ...]


@dataclass(slots=True)
class SuperviseCommand:
    """CLI input for the supervisor loop."""

    state_path: Path | None
    agents: tuple[tuple[str, str], ...]
    max_polls: int | None = None


@dataclass(slots=True)
class CoordinationContext:
    """Components opened for one CLI command."""

    settings: Settings
    store: StateStore
    registry: TaskRegistry
    directory: AgentDirectory
    service: CoordinationService


class CoordinationCliController:
    """Coordinates task, agent, state, and supervisor CLI operations."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            task = ctx.service.create_task(
                CreateTask(
                    title=command.title,
                    description=command.description,
                    tags=command.tags,
                    creator=command.creator,
                    priority=command.priority,
                    role=command.role,
                    dependencies=command.dependencies,
                ),
            )
        return [
            f"Task created: task_id={task.id} status={task.status.value} "
            f"priority={task.priority} tags={_fmt_tags(task)}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            if command.for_role is not None:
                tasks = ctx.registry.eligible_for_role(role_config(command.for_role))
            else:
                tasks = ctx.registry.query(
                    TaskFilter(
                        tags=frozenset(command.tags),
                        exclude_tags=frozenset(command.exclude_tags),
                        roles=frozenset(RoleName(role) for role in command.roles),
                        statuses=frozenset(TaskStatus(status) for status in command.statuses),
                        assigned_to=command.assigned_to,
                        include_completed=command.include_completed,
                        eligible_only=command.eligible_only,
                    ),
                )

        if command.output_format == "json":
            return [json.dumps([task_to_document(task) for task in tasks], indent=2)]
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks]

    def show_task(self, command: TaskShowCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            task = ctx.registry.get(command.task_id)
            unmet = ctx.registry.unmet_dependencies(command.task_id)
            related = ctx.registry.related(command.task_id)

        lines = [
            f"Task: {task.id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Tags: {_fmt_tags(task)}",
            f"Role: {task.assigned_role.value if task.assigned_role else '-'}",
            f"Assigned to: {task.assigned_to or '-'}",
            f"Blocked by: {task.blocked_by or '-'}",
            f"Dependencies: {', '.join(task.dependencies) or '-'}",
            f"Unmet dependencies: {', '.join(unmet) or '-'}",
            f"Created: {task.created_at.isoformat()} by {task.created_by}",
            f"Updated: {task.updated_at.isoformat()}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Related tasks: {len(related)}",
        ]
        if task.description:
            lines.append(f"Description: {task.description}")
        if task.results is not None:
            lines.append(
                f"Results: files={len(task.results.files)} "
                f"commands={len(task.results.commands)} tests={len(task.results.tests)}",
            )
        return lines

    def claim_task(self, command: TaskClaimCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            if command.task_id is not None:
                task = ctx.service.claim(command.task_id, command.worker_id)
            else:
                if command.role is None:
                    raise ValueError("Either a task id or --role is required.")
                task = ctx.service.claim_next(command.worker_id, command.role)
            if task is not None:
                task = _confirm_claim(ctx, task, command.worker_id)
        if task is None:
            return [f"No eligible task for worker {command.worker_id}."]
        return [f"Task claimed: task_id={task.id} worker={command.worker_id}"]

    def complete_task(self, command: TaskCompleteCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        results = TaskResults(files=command.files, commands=command.commands, tests=command.tests)
        with _coordination(settings) as ctx:
            task = ctx.service.complete(
                command.task_id,
                command.worker_id,
                results,
                commit_message=command.commit_message,
            )
        revision = task.results.metrics.get("revision") if task.results else None
        line = f"Task completed: task_id={task.id} worker={command.worker_id}"
        if revision:
            line += f" revision={revision}"
        return [line]

    def update_task(self, command: TaskUpdateCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        patch = TaskPatch(
            title=command.title,
            description=command.description,
            tags=frozenset(command.tags) if command.tags is not None else None,
            priority=command.priority,
            assigned_role=RoleName(command.role) if command.role else None,
            status=TaskStatus(command.status) if command.status else None,
            dependencies=command.dependencies,
        )
        with _coordination(settings) as ctx:
            task = ctx.service.update_task(command.task_id, patch, command.actor)
        return [f"Task updated: task_id={task.id} status={task.status.value}"]

    def block_task(self, command: TaskBlockCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            task = ctx.service.fail(command.task_id, command.actor, command.reason)
        return [f"Task blocked: task_id={task.id} reason={task.blocked_by}"]

    def cancel_task(self, command: TaskCancelCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            task = ctx.registry.cancel(command.task_id, command.actor)
        return [f"Task cancelled: task_id={task.id}"]

    def release_task(self, command: TaskReleaseCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            task = ctx.service.release(command.task_id, command.actor)
        return [f"Task released: task_id={task.id} status={task.status.value}"]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            task_stats = ctx.registry.stats()
            agent_stats = build_agent_stats(ctx.directory.list())
            version = ctx.store.version
        return [
            f"Coordination state version={version}",
            *render_stats_lines(tasks=task_stats, agents=agent_stats),
        ]

    def heartbeat(self, command: AgentHeartbeatCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            record = ctx.directory.heartbeat(
                command.agent_id,
                role=command.role,
                state=AgentState(command.state) if command.state else None,
            )
        return [
            f"Heartbeat recorded: agent={record.id} role={record.role.value} "
            f"state={record.state.value}",
        ]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            agents = ctx.directory.list()
        if not agents:
            return ["No agents registered."]
        return [
            f"{agent.id} role={agent.role.value} state={agent.state.value} "
            f"task={agent.current_task_id or '-'} "
            f"heartbeat={agent.last_heartbeat.isoformat()} "
            f"completed={agent.metrics.completed} failed={agent.metrics.failed}"
            for agent in agents
        ]

    def show_state(self, command: StateShowCommand) -> list[str]:
        settings = Settings.from_env(state_path=command.state_path)
        with _coordination(settings) as ctx:
            document = ctx.store.read(list(command.paths) or None)
        return [json.dumps(document, indent=2, ensure_ascii=False)]

    def supervise(self, command: SuperviseCommand) -> list[str]:
        """Run the flush timer and supervisor loop until a signal or ``max_polls``."""

        settings = Settings.from_env(state_path=command.state_path)
        if not command.agents:
            raise ValueError("At least one --agent id:role is required.")
        if not settings.supervisor.worker_command.strip():
            raise ValueError("HIVE_COORD_WORKER_COMMAND must be set to supervise workers.")

        stop_event = threading.Event()
        fatal: list[PersistenceFailure] = []

        def _on_fatal(error: PersistenceFailure) -> None:
            fatal.append(error)
            stop_event.set()

        lifecycle = SubprocessLifecycle(
            command_template=settings.supervisor.worker_command,
            roles={agent_id: role for agent_id, role in command.agents},
            log_dir=settings.supervisor.worker_log_dir,
        )
        events: list[SupervisorEvent] = []
        with _coordination(settings, on_fatal=_on_fatal) as ctx:
            supervisor = HealthSupervisor(
                store=ctx.store,
                directory=ctx.directory,
                lifecycle=lifecycle,
                poll_interval_seconds=settings.supervisor.poll_interval_seconds,
                stale_after_seconds=settings.supervisor.heartbeat_stale_seconds,
                max_restart_attempts=settings.supervisor.max_restart_attempts,
                backoff=build_backoff(
                    settings.supervisor.restart_backoff,
                    delay_seconds=settings.supervisor.restart_delay_seconds,
                    max_delay_seconds=settings.supervisor.restart_max_delay_seconds,
                ),
                backlog_alert_threshold=settings.supervisor.backlog_alert_threshold,
            )
            supervisor.subscribe(events.append)
            for agent_id, role in command.agents:
                supervisor.register(agent_id, role)

            ctx.store.start()
            with _signal_handlers(stop_event.set):
                supervisor.start_all()
                try:
                    polls = supervisor.run(stop_event, max_polls=command.max_polls)
                finally:
                    supervisor.stop_all()
            health = supervisor.system_health()

        if fatal:
            raise fatal[0]
        lines = [
            f"Supervisor summary: polls={polls} healthy={health.healthy} "
            f"unhealthy={health.unhealthy} failed={health.failed} "
            f"restarts={health.total_restarts}",
        ]
        lines.extend(
            f"  {event.kind} agent={event.agent_id or '-'} {_fmt_details(event.details)}"
            for event in events
        )
        return lines


def build_storage(settings: Settings) -> StorageAdapter:
    """Storage adapter selected by ``HIVE_COORD_STORE_BACKEND``."""

    if settings.store.backend == "sqlite":
        return SqliteStorage(
            settings.state_path,
            busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
        )
    return JsonFileStorage(settings.state_path)


def build_memory(settings: Settings) -> SemanticMemory:
    if settings.memory.url:
        return HttpSemanticMemory(
            base_url=settings.memory.url,
            timeout_seconds=settings.memory.timeout_seconds,
        )
    return InMemorySemanticMemory()


def build_workspace(settings: Settings) -> WorkspaceIsolation | None:
    if not settings.workspace.enabled:
        return None
    return GitWorktreeWorkspace(
        repo_path=settings.workspace.repo_path,
        root=settings.workspace.root,
        base_branch=settings.workspace.base_branch,
    )


def _confirm_claim(ctx: CoordinationContext, task: Task, worker_id: str) -> Task:
    """Flush the claim and check that it survived the owner guard."""

    ctx.store.flush()
    confirmed = ctx.registry.get(task.id)
    if confirmed.assigned_to != worker_id:
        agent = ctx.directory.find(worker_id)
        if agent is not None and agent.current_task_id == task.id:
            ctx.directory.set_state(worker_id, AgentState.IDLE)
        raise Conflict(f"Task {task.id} is already claimed by {confirmed.assigned_to}.")
    return confirmed


@contextmanager
def _coordination(
    settings: Settings,
    *,
    on_fatal: Callable[[PersistenceFailure], None] | None = None,
) -> Iterator[CoordinationContext]:
    settings.validate()
    store = StateStore(
        build_storage(settings),
        flush_interval_seconds=settings.store.flush_interval_seconds,
        max_flush_failures=settings.store.flush_max_failures,
        on_fatal=on_fatal,
    )
    memory = build_memory(settings)
    try:
        registry = TaskRegistry(store)
        directory = AgentDirectory(store, registry=registry)
        yield CoordinationContext(
            settings=settings,
            store=store,
            registry=registry,
            directory=directory,
            service=CoordinationService(
                registry=registry,
                directory=directory,
                memory=memory,
                workspace=build_workspace(settings),
                memory_max_results=settings.memory.max_results,
                memory_threshold=settings.memory.threshold,
            ),
        )
    finally:
        try:
            store.close()
        finally:
            if isinstance(memory, HttpSemanticMemory):
                memory.close()


@contextmanager
def _signal_handlers(request_stop: Callable[[], None]) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(_signum: int, _: object | None) -> None:
        request_stop()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _task_line(task: Task) -> str:
    return (
        f"{task.id} p{task.priority} {task.status.value:<11} "
        f"[{_fmt_tags(task)}] {task.title}"
        + (f" (assigned_to={task.assigned_to})" if task.assigned_to else "")
    )


def _fmt_tags(task: Task) -> str:
    return ",".join(sorted(task.tags)) or "-"


def _fmt_details(details: dict[str, object]) -> str:
    return " ".join(f"{key}={details[key]}" for key in sorted(details))
