"""Runtime configuration for the coordinator."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

STORE_BACKENDS = frozenset({"json", "sqlite"})
BACKOFF_POLICIES = frozenset({"fixed", "exponential"})
LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(slots=True)
class StoreSettings:
    """State store and storage adapter settings."""

    backend: str = "json"
    flush_interval_seconds: float = 2.0
    flush_max_failures: int = 5
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class SupervisorSettings:
    """Health supervisor settings."""

    poll_interval_seconds: float = 10.0
    heartbeat_stale_seconds: float = 20.0
    max_restart_attempts: int = 3
    restart_delay_seconds: float = 5.0
    restart_backoff: str = "fixed"
    restart_max_delay_seconds: float = 300.0
    backlog_alert_threshold: int = 50
    worker_command: str = ""
    worker_log_dir: Path | None = None


@dataclass(slots=True)
class WorkspaceSettings:
    """Git worktree isolation settings."""

    enabled: bool = False
    root: Path = Path("worktrees")
    repo_path: Path = Path(".")
    base_branch: str = "main"


@dataclass(slots=True)
class MemorySettings:
    """Semantic memory collaborator settings."""

    url: str = ""
    max_results: int = 10
    threshold: float = 0.7
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    state_path: Path = Path(".hive_coord/state.json")
    store: StoreSettings = field(default_factory=StoreSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, state_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        log_dir = os.getenv("HIVE_COORD_WORKER_LOG_DIR", "").strip()
        return cls(
            state_path=state_path
            or Path(os.getenv("HIVE_COORD_STATE_PATH", ".hive_coord/state.json")),
            store=StoreSettings(
                backend=os.getenv("HIVE_COORD_STORE_BACKEND", "json").strip().lower(),
                flush_interval_seconds=float(
                    os.getenv("HIVE_COORD_FLUSH_INTERVAL_SECONDS", "2.0"),
                ),
                flush_max_failures=int(os.getenv("HIVE_COORD_FLUSH_MAX_FAILURES", "5")),
                sqlite_busy_timeout_ms=int(
                    os.getenv("HIVE_COORD_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            supervisor=SupervisorSettings(
                poll_interval_seconds=float(
                    os.getenv("HIVE_COORD_POLL_INTERVAL_SECONDS", "10.0"),
                ),
                heartbeat_stale_seconds=float(
                    os.getenv("HIVE_COORD_HEARTBEAT_STALE_SECONDS", "20.0"),
                ),
                max_restart_attempts=int(os.getenv("HIVE_COORD_MAX_RESTART_ATTEMPTS", "3")),
                restart_delay_seconds=float(
                    os.getenv("HIVE_COORD_RESTART_DELAY_SECONDS", "5.0"),
                ),
                restart_backoff=os.getenv("HIVE_COORD_RESTART_BACKOFF", "fixed").strip().lower(),
                restart_max_delay_seconds=float(
                    os.getenv("HIVE_COORD_RESTART_MAX_DELAY_SECONDS", "300.0"),
                ),
                backlog_alert_threshold=int(
                    os.getenv("HIVE_COORD_BACKLOG_ALERT_THRESHOLD", "50"),
                ),
                worker_command=os.getenv("HIVE_COORD_WORKER_COMMAND", ""),
                worker_log_dir=Path(log_dir) if log_dir else None,
            ),
            workspace=WorkspaceSettings(
                enabled=_env_bool("HIVE_COORD_WORKSPACE_ENABLED", default=False),
                root=Path(os.getenv("HIVE_COORD_WORKSPACE_ROOT", "worktrees")),
                repo_path=Path(os.getenv("HIVE_COORD_REPO_PATH", ".")),
                base_branch=os.getenv("HIVE_COORD_BASE_BRANCH", "main"),
            ),
            memory=MemorySettings(
                url=os.getenv("HIVE_COORD_MEMORY_URL", "").strip(),
                max_results=int(os.getenv("HIVE_COORD_MEMORY_MAX_RESULTS", "10")),
                threshold=float(os.getenv("HIVE_COORD_MEMORY_THRESHOLD", "0.7")),
                timeout_seconds=float(os.getenv("HIVE_COORD_MEMORY_TIMEOUT_SECONDS", "10.0")),
            ),
            log_level=os.getenv("HIVE_COORD_LOG_LEVEL", "INFO").strip().upper(),
        )

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error naming the offending variable."""

        if self.store.backend not in STORE_BACKENDS:
            raise ValueError(
                f"HIVE_COORD_STORE_BACKEND must be one of {sorted(STORE_BACKENDS)}, "
                f"got {self.store.backend!r}.",
            )
        if self.store.flush_interval_seconds <= 0:
            raise ValueError("HIVE_COORD_FLUSH_INTERVAL_SECONDS must be > 0.")
        if self.store.flush_max_failures < 1:
            raise ValueError("HIVE_COORD_FLUSH_MAX_FAILURES must be >= 1.")
        if self.supervisor.poll_interval_seconds <= 0:
            raise ValueError("HIVE_COORD_POLL_INTERVAL_SECONDS must be > 0.")
        if self.supervisor.heartbeat_stale_seconds < self.supervisor.poll_interval_seconds:
            raise ValueError(
                "HIVE_COORD_HEARTBEAT_STALE_SECONDS must be >= HIVE_COORD_POLL_INTERVAL_SECONDS.",
            )
        if self.supervisor.max_restart_attempts < 0:
            raise ValueError("HIVE_COORD_MAX_RESTART_ATTEMPTS must be >= 0.")
        if self.supervisor.restart_delay_seconds < 0:
            raise ValueError("HIVE_COORD_RESTART_DELAY_SECONDS must be >= 0.")
        if self.supervisor.restart_backoff not in BACKOFF_POLICIES:
            raise ValueError(
                f"HIVE_COORD_RESTART_BACKOFF must be one of {sorted(BACKOFF_POLICIES)}, "
                f"got {self.supervisor.restart_backoff!r}.",
            )
        if self.supervisor.restart_max_delay_seconds < self.supervisor.restart_delay_seconds:
            raise ValueError(
                "HIVE_COORD_RESTART_MAX_DELAY_SECONDS must be >= HIVE_COORD_RESTART_DELAY_SECONDS.",
            )
        if self.supervisor.backlog_alert_threshold < 0:
            raise ValueError("HIVE_COORD_BACKLOG_ALERT_THRESHOLD must be >= 0.")
        if self.memory.max_results <= 0:
            raise ValueError("HIVE_COORD_MEMORY_MAX_RESULTS must be > 0.")
        if not 0.0 <= self.memory.threshold <= 1.0:
            raise ValueError("HIVE_COORD_MEMORY_THRESHOLD must be between 0 and 1.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"HIVE_COORD_LOG_LEVEL must be one of {sorted(LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )


def configure_logging(level: str) -> None:
    """Configure the root logger once for CLI runs."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
