"""Error taxonomy for the coordination core.

Registry errors (everything except ``PersistenceFailure``) are caller-correctable:
they are raised synchronously and never retried internally.
"""

from __future__ import annotations


class CoordinationError(RuntimeError):
    """Base class for coordination failures."""


class NotFound(CoordinationError):
    """Unknown task or agent id."""


class Conflict(CoordinationError):
    """A claim race was lost: the task is owned by another worker."""


class Forbidden(CoordinationError):
    """Action attempted by a worker that does not own the task."""


class InvalidTransition(CoordinationError):
    """Illegal task status change."""

    def __init__(self, task_id: str, status_from: str, status_to: str) -> None:
        super().__init__(
            f"Task {task_id} cannot move from status={status_from} to status={status_to}",
        )
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class DependencyUnmet(CoordinationError):
    """Claim attempted before every dependency is completed."""

    def __init__(self, task_id: str, unmet: tuple[str, ...]) -> None:
        super().__init__(f"Task {task_id} has unmet dependencies: {', '.join(unmet)}")
        self.task_id = task_id
        self.unmet = unmet


class ValidationError(CoordinationError, ValueError):
    """Malformed input, for example a dependency cycle or an invalid path."""


class PersistenceFailure(CoordinationError):
    """Durable read or write of the coordination document failed."""
