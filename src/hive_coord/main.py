"""CLI entrypoint for hive-coord."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from hive_coord import __version__
from hive_coord.config import configure_logging
from hive_coord.coordination.collaborators.base import CollaboratorError
from hive_coord.coordination.controllers import (
    CLI_ACTOR,
    AgentHeartbeatCommand,
    AgentListCommand,
    CoordinationCliController,
    StateShowCommand,
    StatsCommand,
    SuperviseCommand,
    TaskBlockCommand,
    TaskCancelCommand,
    TaskClaimCommand,
    TaskCompleteCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskReleaseCommand,
    TaskShowCommand,
    TaskUpdateCommand,
)
from hive_coord.coordination.errors import CoordinationError
from hive_coord.coordination.models import (
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    AgentState,
    RoleName,
    TaskStatus,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoordinationCliController()

CommandT = TypeVar("CommandT")

STATE_PATH_OPTION = click.option(
    "--state-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Coordination document path (default: HIVE_COORD_STATE_PATH).",
)
ROLE_CHOICE = click.Choice([role.value for role in RoleName])
STATUS_CHOICE = click.Choice([status.value for status in TaskStatus])
PRIORITY_RANGE = click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY)


@click.group()
@click.version_option(version=__version__, prog_name="hive-coord")
@click.option(
    "--log-level",
    envvar="HIVE_COORD_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level.",
)
def hive_coord(log_level: str) -> None:
    """Coordinate worker processes around a shared task backlog."""

    configure_logging(log_level)


@hive_coord.group()
def tasks() -> None:
    """Task registry commands."""


@tasks.command("create")
@STATE_PATH_OPTION
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option("--tag", "tags", multiple=True, help="Routing tag. Can be repeated.")
@click.option("--creator", default=CLI_ACTOR, show_default=True, help="Creator id.")
@click.option(
    "--priority",
    type=PRIORITY_RANGE,
    default=DEFAULT_PRIORITY,
    show_default=True,
    help="Priority, 5 is highest.",
)
@click.option("--role", type=ROLE_CHOICE, default=None, help="Role hint.")
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Task id that must complete first. Can be repeated.",
)
def tasks_create(  # noqa: PLR0913
    state_path: Path | None,
    title: str,
    description: str,
    tags: tuple[str, ...],
    creator: str,
    priority: int,
    role: str | None,
    dependencies: tuple[str, ...],
) -> None:
    """Create a pending task."""

    _emit_lines(
        _run(
            CONTROLLER.create_task,
            TaskCreateCommand(
                state_path=state_path,
                title=title,
                description=description,
                tags=tags,
                creator=creator,
                priority=priority,
                role=role,
                dependencies=dependencies,
            ),
        ),
    )


@tasks.command("list")
@STATE_PATH_OPTION
@click.option("--tag", "tags", multiple=True, help="Match any of these tags.")
@click.option("--exclude-tag", "exclude_tags", multiple=True, help="Reject these tags.")
@click.option("--status", "statuses", type=STATUS_CHOICE, multiple=True, help="Status filter.")
@click.option("--role", "roles", type=ROLE_CHOICE, multiple=True, help="Role hint filter.")
@click.option("--assigned-to", default=None, help="Exact assignee filter.")
@click.option("--include-completed", is_flag=True, default=False, help="Show completed tasks.")
@click.option(
    "--eligible-only",
    is_flag=True,
    default=False,
    help="Hide tasks whose dependencies are not completed.",
)
@click.option(
    "--for-role",
    type=ROLE_CHOICE,
    default=None,
    help="Worker polling view for a role (overrides other filters).",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def tasks_list(  # noqa: PLR0913
    state_path: Path | None,
    tags: tuple[str, ...],
    exclude_tags: tuple[str, ...],
    statuses: tuple[str, ...],
    roles: tuple[str, ...],
    assigned_to: str | None,
    include_completed: bool,
    eligible_only: bool,
    for_role: str | None,
    output_format: str,
) -> None:
    """List tasks in dispatch order (priority, then age)."""

    _emit_lines(
        _run(
            CONTROLLER.list_tasks,
            TaskListCommand(
                state_path=state_path,
                tags=tags,
                exclude_tags=exclude_tags,
                statuses=statuses,
                roles=roles,
                assigned_to=assigned_to,
                include_completed=include_completed,
                eligible_only=eligible_only,
                for_role=for_role,
                output_format=output_format,
            ),
        ),
    )


@tasks.command("show")
@STATE_PATH_OPTION
@click.argument("task_id")
def tasks_show(state_path: Path | None, task_id: str) -> None:
    """Show one task."""

    _emit_lines(_run(CONTROLLER.show_task, TaskShowCommand(state_path=state_path, task_id=task_id)))


@tasks.command("claim")
@STATE_PATH_OPTION
@click.argument("task_id", required=False)
@click.option("--worker", "worker_id", required=True, help="Claiming worker id.")
@click.option("--role", type=ROLE_CHOICE, default=None, help="Claim the next task for this role.")
def tasks_claim(
    state_path: Path | None,
    task_id: str | None,
    worker_id: str,
    role: str | None,
) -> None:
    """Claim a task by id, or the next eligible task for --role."""

    _emit_lines(
        _run(
            CONTROLLER.claim_task,
            TaskClaimCommand(
                state_path=state_path,
                worker_id=worker_id,
                task_id=task_id,
                role=role,
            ),
        ),
    )


@tasks.command("complete")
@STATE_PATH_OPTION
@click.argument("task_id")
@click.option("--worker", "worker_id", required=True, help="Completing worker id.")
@click.option("--file", "files", multiple=True, help="File touched. Can be repeated.")
@click.option("--command", "commands", multiple=True, help="Command run. Can be repeated.")
@click.option("--test", "tests", multiple=True, help="Test run. Can be repeated.")
@click.option(
    "--commit-message",
    default=None,
    help="Commit the worker's workspace with this message before completing.",
)
def tasks_complete(  # noqa: PLR0913
    state_path: Path | None,
    task_id: str,
    worker_id: str,
    files: tuple[str, ...],
    commands: tuple[str, ...],
    tests: tuple[str, ...],
    commit_message: str | None,
) -> None:
    """Complete a task and attach results."""

    _emit_lines(
        _run(
            CONTROLLER.complete_task,
            TaskCompleteCommand(
                state_path=state_path,
                task_id=task_id,
                worker_id=worker_id,
                files=files,
                commands=commands,
                tests=tests,
                commit_message=commit_message,
            ),
        ),
    )


@tasks.command("update")
@STATE_PATH_OPTION
@click.argument("task_id")
@click.option("--actor", default=CLI_ACTOR, show_default=True, help="Acting id.")
@click.option("--title", default=None)
@click.option("--description", default=None)
@click.option("--tag", "tags", multiple=True, help="Replace tags. Can be repeated.")
@click.option("--priority", type=PRIORITY_RANGE, default=None)
@click.option("--role", type=ROLE_CHOICE, default=None)
@click.option("--status", type=STATUS_CHOICE, default=None)
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Replace dependencies. Can be repeated.",
)
def tasks_update(  # noqa: PLR0913
    state_path: Path | None,
    task_id: str,
    actor: str,
    title: str | None,
    description: str | None,
    tags: tuple[str, ...],
    priority: int | None,
    role: str | None,
    status: str | None,
    dependencies: tuple[str, ...],
) -> None:
    """Apply a partial update to a task."""

    _emit_lines(
        _run(
            CONTROLLER.update_task,
            TaskUpdateCommand(
                state_path=state_path,
                task_id=task_id,
                actor=actor,
                title=title,
                description=description,
                tags=tags or None,
                priority=priority,
                role=role,
                status=status,
                dependencies=dependencies or None,
            ),
        ),
    )


@tasks.command("block")
@STATE_PATH_OPTION
@click.argument("task_id")
@click.option("--actor", default=CLI_ACTOR, show_default=True, help="Acting worker id.")
@click.option("--reason", required=True, help="Why the task is blocked.")
def tasks_block(state_path: Path | None, task_id: str, actor: str, reason: str) -> None:
    """Move a task to blocked."""

    _emit_lines(
        _run(
            CONTROLLER.block_task,
            TaskBlockCommand(state_path=state_path, task_id=task_id, actor=actor, reason=reason),
        ),
    )


@tasks.command("cancel")
@STATE_PATH_OPTION
@click.argument("task_id")
@click.option("--actor", default=CLI_ACTOR, show_default=True, help="Acting id.")
def tasks_cancel(state_path: Path | None, task_id: str, actor: str) -> None:
    """Cancel a task; it stays in the document for history."""

    _emit_lines(
        _run(
            CONTROLLER.cancel_task,
            TaskCancelCommand(state_path=state_path, task_id=task_id, actor=actor),
        ),
    )


@tasks.command("release")
@STATE_PATH_OPTION
@click.argument("task_id")
@click.option("--actor", default=CLI_ACTOR, show_default=True, help="Acting id.")
def tasks_release(state_path: Path | None, task_id: str, actor: str) -> None:
    """Take a task back from its owner and return it to pending."""

    _emit_lines(
        _run(
            CONTROLLER.release_task,
            TaskReleaseCommand(state_path=state_path, task_id=task_id, actor=actor),
        ),
    )


@tasks.command("stats")
@STATE_PATH_OPTION
def tasks_stats(state_path: Path | None) -> None:
    """Show task and agent statistics."""

    _emit_lines(_run(CONTROLLER.stats, StatsCommand(state_path=state_path)))


@hive_coord.group()
def agents() -> None:
    """Agent directory commands."""


@agents.command("heartbeat")
@STATE_PATH_OPTION
@click.argument("agent_id")
@click.option("--role", type=ROLE_CHOICE, default=None, help="Required on first heartbeat.")
@click.option(
    "--state",
    type=click.Choice([state.value for state in AgentState]),
    default=None,
    help="Self-reported state.",
)
def agents_heartbeat(
    state_path: Path | None,
    agent_id: str,
    role: str | None,
    state: str | None,
) -> None:
    """Record a worker heartbeat."""

    _emit_lines(
        _run(
            CONTROLLER.heartbeat,
            AgentHeartbeatCommand(
                state_path=state_path,
                agent_id=agent_id,
                role=role,
                state=state,
            ),
        ),
    )


@agents.command("list")
@STATE_PATH_OPTION
def agents_list(state_path: Path | None) -> None:
    """List known agents."""

    _emit_lines(_run(CONTROLLER.list_agents, AgentListCommand(state_path=state_path)))


@hive_coord.group()
def state() -> None:
    """Raw coordination document commands."""


@state.command("show")
@STATE_PATH_OPTION
@click.option("--path", "paths", multiple=True, help="Dotted path to include. Can be repeated.")
def state_show(state_path: Path | None, paths: tuple[str, ...]) -> None:
    """Print the committed coordination document."""

    _emit_lines(_run(CONTROLLER.show_state, StateShowCommand(state_path=state_path, paths=paths)))


@hive_coord.command("supervise")
@STATE_PATH_OPTION
@click.option(
    "--agent",
    "agent_specs",
    multiple=True,
    required=True,
    help="Supervised worker as <id>:<role>. Can be repeated.",
)
@click.option(
    "--max-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many health checks (default: run until SIGINT/SIGTERM).",
)
def supervise(state_path: Path | None, agent_specs: tuple[str, ...], max_polls: int | None) -> None:
    """Start workers and keep them healthy."""

    _emit_lines(
        _run(
            CONTROLLER.supervise,
            SuperviseCommand(
                state_path=state_path,
                agents=tuple(_parse_agent_spec(spec) for spec in agent_specs),
                max_polls=max_polls,
            ),
        ),
    )


def _parse_agent_spec(spec: str) -> tuple[str, str]:
    agent_id, separator, role = spec.partition(":")
    if not separator or not agent_id.strip() or not role.strip():
        raise click.BadParameter(f"Expected <id>:<role>, got {spec!r}.", param_hint="--agent")
    try:
        RoleName(role.strip())
    except ValueError as error:
        raise click.BadParameter(f"Unknown role {role!r}.", param_hint="--agent") from error
    return agent_id.strip(), role.strip()


def _run(action: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return action(command)
    except (CoordinationError, CollaboratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    hive_coord()
