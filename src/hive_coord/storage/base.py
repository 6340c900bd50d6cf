"""Storage adapter interface for the coordination document."""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Protocol

REQUIRED_SECTIONS = ("tasks", "agents")


class StorageAdapter(Protocol):
    """Durable home of the coordination document.

    ``load`` returns ``None`` on first boot. It falls back to the retained
    backup generation when the primary copy cannot be parsed and raises
    ``PersistenceFailure`` when neither generation is usable. ``write`` must
    never leave a torn primary copy behind. ``lock`` serializes
    read-modify-write cycles of every process sharing the same storage.
    """

    def load(self) -> dict[str, Any] | None:
        """Return the last durable document, or ``None`` if none exists."""

    def write(self, document: dict[str, Any]) -> None:
        """Persist ``document`` and retain the previous generation as backup."""

    def lock(self) -> AbstractContextManager[None]:
        """Exclusive cross-process lock held around load-apply-write."""

    def close(self) -> None:
        """Release adapter resources."""


def validate_document(document: object) -> dict[str, Any]:
    """Check the top-level shape of a loaded document."""

    if not isinstance(document, dict):
        raise TypeError("Coordination document must be a JSON object.")
    version = document.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 0:
        raise TypeError(f"Invalid document version: {version!r}")
    for section in REQUIRED_SECTIONS:
        if not isinstance(document.get(section), dict):
            raise TypeError(f"Document section {section!r} must be an object.")
    if not isinstance(document.get("lastUpdated"), str):
        raise TypeError("Document lastUpdated must be an ISO-8601 string.")
    return document
