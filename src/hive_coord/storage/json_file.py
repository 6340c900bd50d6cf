"""JSON file storage adapter with atomic replace and one-generation backup."""

from __future__ import annotations

import json
import logging
import os
import shutil
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Any

from hive_coord.coordination.errors import PersistenceFailure
from hive_coord.storage.base import validate_document
from hive_coord.storage.common import exclusive_file_lock

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".backup"


def backup_path_for(path: Path) -> Path:
    """Well-known location of the previous generation for ``path``."""

    return path.with_name(path.name + BACKUP_SUFFIX)


class JsonFileStorage:
    """Stores the coordination document as one JSON file.

    Write sequence: the new document goes to ``<name>.tmp`` and is fsynced,
    the current primary is copied to ``<name>.backup``, then the temp file
    replaces the primary. The primary is never absent or half-written. An
    unreadable primary is never rotated into the backup slot, so the last
    good generation survives until a readable primary replaces it.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.backup_path = backup_path_for(path)
        self._tmp_path = path.with_name(path.name + ".tmp")

    def load(self) -> dict[str, Any] | None:
        primary_error: Exception | None = None
        if self.path.exists():
            try:
                return _read_document(self.path)
            except (OSError, ValueError, TypeError) as error:
                primary_error = error
                logger.warning("Failed to parse %s: %s", self.path, error)

        if not self.backup_path.exists():
            if primary_error is not None:
                raise PersistenceFailure(
                    f"Coordination document {self.path} is unreadable and no backup exists.",
                ) from primary_error
            return None

        try:
            document = _read_document(self.backup_path)
        except (OSError, ValueError, TypeError) as error:
            raise PersistenceFailure(
                f"Both {self.path} and its backup {self.backup_path} are unreadable.",
            ) from error
        logger.warning(
            "Recovered coordination document version=%s from backup %s",
            document["version"],
            self.backup_path,
        )
        return document

    def write(self, document: dict[str, Any]) -> None:
        payload = json.dumps(document, ensure_ascii=False, indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            if _is_readable(self.path):
                backup_tmp = self.backup_path.with_name(self.backup_path.name + ".tmp")
                shutil.copy2(self.path, backup_tmp)
                os.replace(backup_tmp, self.backup_path)
            os.replace(self._tmp_path, self.path)
        except OSError as error:
            raise PersistenceFailure(f"Failed to write {self.path}: {error}") from error

    def lock(self) -> AbstractContextManager[None]:
        return exclusive_file_lock(self.path)

    def close(self) -> None:
        """Nothing to release for file storage."""


def _read_document(path: Path) -> dict[str, Any]:
    return validate_document(json.loads(path.read_text("utf-8")))


def _is_readable(path: Path) -> bool:
    if not path.exists():
        return False
    try:
        _read_document(path)
    except (ValueError, TypeError) as error:
        logger.warning("Not rotating unreadable %s into backup: %s", path, error)
        return False
    return True
