"""Interfaces of the external collaborators used by the coordinator."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

ExitCallback = Callable[[str, int], None]


class CollaboratorError(RuntimeError):
    """An external collaborator reported failure."""


@dataclass(slots=True, frozen=True)
class MemoryMatch:
    """One ranked semantic-memory result."""

    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class ProcessLifecycle(Protocol):
    """Starts and stops worker processes and reports their exits."""

    def start(self, agent_id: str) -> None:
        """Start the worker process for ``agent_id``."""

    def stop(self, agent_id: str) -> None:
        """Stop the worker process; stopping a stopped worker is a no-op."""

    def on_exit(self, callback: ExitCallback) -> None:
        """Register ``callback(agent_id, exit_code)`` for unexpected exits."""


class WorkspaceIsolation(Protocol):
    """Gives every worker a private checkout."""

    def create_workspace(self, agent_id: str) -> Path:
        """Create (or reuse) the worker's checkout and return its path."""

    def commit_changes(self, agent_id: str, message: str) -> str:
        """Commit the worker's changes and return the revision id."""

    def sync(self, agent_id: str) -> None:
        """Bring the worker's checkout up to date with the base branch."""

    def merge(self, agent_id: str) -> None:
        """Merge the worker's branch into the base branch."""


class SemanticMemory(Protocol):
    """Opaque annotation and similarity-search service."""

    def store(self, content: str, metadata: dict[str, Any]) -> str:
        """Store ``content`` and return its document id."""

    def query(self, text: str, max_results: int, threshold: float) -> list[MemoryMatch]:
        """Return matches scoring at least ``threshold``, best first."""
