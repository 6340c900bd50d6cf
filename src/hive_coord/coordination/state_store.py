"""Versioned coordination document with queued commits and periodic flush."""

from __future__ import annotations

import copy
import logging
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from hive_coord.coordination.documents import (
    apply_mutation,
    check_applicable,
    empty_document,
    extract_paths,
    normalize_value,
    split_path,
)
from hive_coord.coordination.errors import PersistenceFailure, ValidationError
from hive_coord.storage.base import StorageAdapter
from hive_coord.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

MutationGuard = Callable[[Mapping[str, Any]], bool]
FlushListener = Callable[[int, Mapping[str, Any]], None]
FatalHandler = Callable[[PersistenceFailure], None]

DEFAULT_FLUSH_INTERVAL_SECONDS = 2.0
DEFAULT_MAX_FLUSH_FAILURES = 5


@dataclass(slots=True)
class PendingCommit:
    """One queued ``commit`` call."""

    mutations: list[tuple[list[str], Any]]
    actor: str
    guard: MutationGuard | None
    submitted_at: datetime


class StateStore:
    """Single owner of the coordination document.

    ``commit`` only validates and enqueues. ``flush`` drains the queue,
    applies every entry in submission order on a private copy of the
    committed document, bumps ``version`` once, persists through the
    storage adapter, and then swaps the committed reference. ``read``
    copies the committed reference and never waits for a flush, so readers
    observe whole committed versions only.

    Several processes may share one storage. Each flush holds the adapter
    lock, re-reads the durable document, and replays its queue on top of the
    newest version; ``refresh`` adopts newer versions between flushes.
    """

    def __init__(  # noqa: PLR0913
        self,
        adapter: StorageAdapter,
        *,
        flush_interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        max_flush_failures: int = DEFAULT_MAX_FLUSH_FAILURES,
        clock: Callable[[], datetime] = utc_now,
        on_fatal: FatalHandler | None = None,
    ) -> None:
        if flush_interval_seconds <= 0:
            raise ValueError("flush_interval_seconds must be > 0.")
        if max_flush_failures < 1:
            raise ValueError("max_flush_failures must be >= 1.")
        self.adapter = adapter
        self.flush_interval_seconds = flush_interval_seconds
        self.max_flush_failures = max_flush_failures
        self._clock = clock
        self._on_fatal = on_fatal

        self._pending: deque[PendingCommit] = deque()
        self._queue_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._version_changed = threading.Condition()
        self._listeners: list[FlushListener] = []
        self._failure_listeners: list[FatalHandler] = []
        self._consecutive_failures = 0
        self._fatal_error: PersistenceFailure | None = None
        self._rejected_commits = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        self._committed = self._load_or_create()

    def _load_or_create(self) -> dict[str, Any]:
        with self.adapter.lock():
            document = self.adapter.load()
            if document is not None:
                logger.info("Loaded coordination document version=%s", document["version"])
                return document
            document = empty_document(self._clock())
            self.adapter.write(document)
        logger.info("Created empty coordination document")
        return document

    @property
    def version(self) -> int:
        return int(self._committed["version"])

    @property
    def pending_count(self) -> int:
        with self._queue_lock:
            return len(self._pending)

    @property
    def rejected_commits(self) -> int:
        """Commits dropped at flush time because their guard failed."""

        return self._rejected_commits

    @property
    def is_failed(self) -> bool:
        return self._fatal_error is not None

    def commit(
        self,
        mutations: Mapping[str, Any],
        actor: str,
        *,
        guard: MutationGuard | None = None,
    ) -> int:
        """Queue ``mutations`` for the next flush.

        Values of ``None`` delete their path. ``guard`` receives the
        document as logically applied so far in the flush and may veto the
        whole commit. Returns the earliest version that can contain the
        commit; use ``wait_for_version`` to observe it.
        """

        if self._fatal_error is not None:
            raise PersistenceFailure(
                "State store has failed; commits are no longer accepted.",
            ) from self._fatal_error
        if not mutations:
            raise ValidationError("Commit requires at least one mutation.")
        if not isinstance(actor, str) or not actor:
            raise ValidationError("Commit actor must be a non-empty string.")
        prepared = [(split_path(path), normalize_value(value)) for path, value in mutations.items()]
        entry = PendingCommit(
            mutations=prepared,
            actor=actor,
            guard=guard,
            submitted_at=self._clock(),
        )
        with self._queue_lock:
            self._pending.append(entry)
            return self.version + 1

    def read(self, paths: list[str] | None = None) -> dict[str, Any]:
        """Return a deep copy of the committed document, or only ``paths`` of it."""

        document = self._committed
        if paths is None:
            return copy.deepcopy(document)
        return extract_paths(document, paths)

    def subscribe(self, listener: FlushListener) -> None:
        """Call ``listener(version, document)`` after every new committed version.

        The document passed to listeners is a shared snapshot and must not
        be mutated.
        """

        self._listeners.append(listener)

    def subscribe_failure(self, listener: FatalHandler) -> None:
        """Call ``listener(error)`` once when the store turns failed."""

        self._failure_listeners.append(listener)

    def wait_for_version(self, version: int, *, timeout: float | None = None) -> bool:
        """Block until the committed version reaches ``version``."""

        with self._version_changed:
            return self._version_changed.wait_for(lambda: self.version >= version, timeout)

    def flush(self) -> int | None:
        """Apply queued commits; return the new version or ``None`` if nothing was written.

        I/O failures re-queue the batch and return ``None``. Once
        ``max_flush_failures`` consecutive flushes fail the store is marked
        failed and ``PersistenceFailure`` is raised.
        """

        with self._flush_lock:
            if self._fatal_error is not None:
                raise PersistenceFailure("State store has failed.") from self._fatal_error
            with self._queue_lock:
                batch = list(self._pending)
                self._pending.clear()
            if not batch:
                return None

            adopted = False
            applied: list[PendingCommit] | None = None
            try:
                with self.adapter.lock():
                    adopted = self._adopt(self.adapter.load())
                    document = copy.deepcopy(self._committed)
                    flushed_at = self._clock()
                    applied = [
                        entry for entry in batch if self._apply_entry(document, entry, flushed_at)
                    ]
                    if applied:
                        version = int(document["version"]) + 1
                        document["version"] = version
                        document["lastUpdated"] = to_iso(flushed_at)
                        self.adapter.write(document)
            except (PersistenceFailure, OSError) as error:
                requeued = batch if applied is None else applied
                with self._queue_lock:
                    self._pending.extendleft(reversed(requeued))
                self._record_failure(error, batch_size=len(requeued))
                return None

            if not applied:
                adopted_version = self.version
            else:
                self._committed = document
                self._consecutive_failures = 0
                self._signal_version()
                logger.info("Flushed %d commit(s), version=%d", len(applied), version)

        if not applied:
            if adopted:
                self._notify_listeners(adopted_version, self._committed)
            return None
        self._notify_listeners(version, document)
        return version

    def refresh(self) -> int | None:
        """Adopt a newer durable document written by another process.

        Returns the adopted version, or ``None`` when the committed copy is
        already current. Skipped while a flush is running, since that flush
        re-reads durable storage itself.
        """

        if not self._flush_lock.acquire(blocking=False):
            return None
        try:
            if self._fatal_error is not None:
                return None
            try:
                adopted = self._adopt(self.adapter.load())
            except (PersistenceFailure, OSError) as error:
                logger.warning("Refresh of coordination document failed: %s", error)
                return None
            if not adopted:
                return None
            document = self._committed
        finally:
            self._flush_lock.release()
        version = int(document["version"])
        self._notify_listeners(version, document)
        return version

    def _adopt(self, durable: dict[str, Any] | None) -> bool:
        if durable is None or int(durable["version"]) <= self.version:
            return False
        logger.info(
            "Adopted coordination document version=%s written by another process",
            durable["version"],
        )
        self._committed = durable
        self._signal_version()
        return True

    def _signal_version(self) -> None:
        with self._version_changed:
            self._version_changed.notify_all()

    def _apply_entry(
        self,
        document: dict[str, Any],
        entry: PendingCommit,
        flushed_at: datetime,
    ) -> bool:
        if entry.guard is not None:
            try:
                allowed = entry.guard(document)
            except Exception:
                logger.exception("Commit guard from actor=%s raised; commit dropped", entry.actor)
                allowed = False
            if not allowed:
                self._rejected_commits += 1
                logger.warning("Commit from actor=%s rejected by its guard", entry.actor)
                return False

        for segments, _ in entry.mutations:
            if not check_applicable(document, segments):
                self._rejected_commits += 1
                logger.warning(
                    "Commit from actor=%s dropped: %s crosses a non-object value",
                    entry.actor,
                    ".".join(segments),
                )
                return False

        for segments, value in entry.mutations:
            apply_mutation(document, segments, copy.deepcopy(value))
            logger.debug("Applied %s from actor=%s", ".".join(segments), entry.actor)

        agent = document["agents"].get(entry.actor)
        if isinstance(agent, dict):
            agent["lastHeartbeat"] = to_iso(flushed_at)
        return True

    def _record_failure(self, error: Exception, *, batch_size: int) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures >= self.max_flush_failures:
            failure = PersistenceFailure(
                f"Flush failed {self._consecutive_failures} consecutive times: {error}",
            )
            failure.__cause__ = error
            self._fatal_error = failure
            logger.critical(
                "Persistence retries exhausted after %d attempts; state store failed: %s",
                self._consecutive_failures,
                error,
            )
            self._notify_failure(failure)
            raise failure
        logger.warning(
            "Flush of %d commit(s) failed (attempt %d/%d), re-queued: %s",
            batch_size,
            self._consecutive_failures,
            self.max_flush_failures,
            error,
        )

    def _notify_failure(self, failure: PersistenceFailure) -> None:
        for listener in list(self._failure_listeners):
            try:
                listener(failure)
            except Exception:
                logger.exception("Failure listener raised")

    def _notify_listeners(self, version: int, document: Mapping[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(version, document)
            except Exception:
                logger.exception("Flush listener failed for version=%d", version)

    # -- background flush -----------------------------------------------------

    def start(self) -> None:
        """Run ``flush`` every ``flush_interval_seconds`` on a daemon thread."""

        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._flush_loop,
            daemon=True,
            name="hive-coord-flush",
        )
        self._thread.start()
        logger.info("Flush thread started (interval=%.2fs)", self.flush_interval_seconds)

    def _flush_loop(self) -> None:
        while not self._stop.wait(self.flush_interval_seconds):
            try:
                if self.flush() is None:
                    self.refresh()
            except PersistenceFailure as error:
                if self._on_fatal is not None:
                    self._on_fatal(error)
                return

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=max(5.0, self.flush_interval_seconds * 2))
        self._thread = None
        logger.info("Flush thread stopped")

    def close(self) -> None:
        """Stop the flush thread, drain pending commits, and release the adapter."""

        self.stop()
        try:
            if self._fatal_error is not None:
                logger.error(
                    "Closing failed state store with %d unflushed commit(s)",
                    self.pending_count,
                )
                return
            for _ in range(self.max_flush_failures):
                if self.pending_count == 0:
                    break
                self.flush()
        finally:
            self.adapter.close()
