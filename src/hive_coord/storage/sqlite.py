"""SQLite storage adapter backed by SQLModel."""

from __future__ import annotations

import json
import logging
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, col, select

from hive_coord.coordination.errors import PersistenceFailure
from hive_coord.storage.base import validate_document
from hive_coord.storage.common import build_sqlite_engine, exclusive_file_lock, utc_now
from hive_coord.storage.sqlmodel_models import CoordinationDocumentRow

logger = logging.getLogger(__name__)

RETAINED_GENERATIONS = 2


class SqliteStorage:
    """Keeps the current document and its previous generation as table rows.

    Each write inserts the new version and prunes everything but the two
    newest rows inside one transaction, so the previous generation doubles
    as the backup.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        SQLModel.metadata.create_all(self.engine, tables=[CoordinationDocumentRow.__table__])

    def load(self) -> dict[str, Any] | None:
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(CoordinationDocumentRow)
                    .order_by(col(CoordinationDocumentRow.version).desc())
                    .limit(RETAINED_GENERATIONS),
                ).all()
        except SQLAlchemyError as error:
            raise PersistenceFailure(f"Failed to read {self.db_path}: {error}") from error

        if not rows:
            return None

        last_error: Exception | None = None
        for index, row in enumerate(rows):
            try:
                document = validate_document(json.loads(row.document_json))
            except (ValueError, TypeError) as error:
                last_error = error
                logger.warning("Stored document version=%s is unreadable: %s", row.version, error)
                continue
            if index > 0:
                logger.warning(
                    "Recovered coordination document version=%s from backup row",
                    row.version,
                )
            return document

        raise PersistenceFailure(
            f"No readable coordination document generation in {self.db_path}.",
        ) from last_error

    def write(self, document: dict[str, Any]) -> None:
        version = int(document["version"])
        try:
            with Session(self.engine) as session:
                session.merge(
                    CoordinationDocumentRow(
                        version=version,
                        document_json=json.dumps(document, ensure_ascii=False),
                        committed_at=utc_now(),
                    ),
                )
                retained = session.exec(
                    select(CoordinationDocumentRow.version)
                    .order_by(col(CoordinationDocumentRow.version).desc())
                    .limit(RETAINED_GENERATIONS),
                ).all()
                session.exec(
                    delete(CoordinationDocumentRow).where(
                        col(CoordinationDocumentRow.version).not_in(list(retained)),
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise PersistenceFailure(f"Failed to write {self.db_path}: {error}") from error

    def lock(self) -> AbstractContextManager[None]:
        return exclusive_file_lock(self.db_path)

    def close(self) -> None:
        """Dispose the engine."""

        self.engine.dispose()
