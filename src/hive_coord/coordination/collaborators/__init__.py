"""External collaborators: process lifecycle, workspace isolation, semantic memory."""

from hive_coord.coordination.collaborators.base import (
    CollaboratorError,
    MemoryMatch,
    ProcessLifecycle,
    SemanticMemory,
    WorkspaceIsolation,
)

__all__ = [
    "CollaboratorError",
    "MemoryMatch",
    "ProcessLifecycle",
    "SemanticMemory",
    "WorkspaceIsolation",
]
