"""Health supervisor: heartbeat polling and bounded worker restarts."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from hive_coord.coordination.agents import SUPERVISOR_ACTOR, AgentDirectory
from hive_coord.coordination.backoff import BackoffPolicy, FixedBackoff
from hive_coord.coordination.collaborators.base import CollaboratorError, ProcessLifecycle
from hive_coord.coordination.errors import CoordinationError
from hive_coord.coordination.models import AgentRecord, AgentState, RoleName, TaskStatus
from hive_coord.coordination.state_store import StateStore
from hive_coord.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_STALE_AFTER_SECONDS = 2 * DEFAULT_POLL_INTERVAL_SECONDS
DEFAULT_MAX_RESTART_ATTEMPTS = 3
DEFAULT_RESTART_DELAY_SECONDS = 5.0
DEFAULT_BACKLOG_ALERT_THRESHOLD = 50

EVENT_AGENT_FAILED = "agent_failed"
EVENT_AGENT_RECOVERED = "agent_recovered"
EVENT_BACKLOG_ALERT = "backlog_alert"

_BACKLOG_STATUSES = frozenset({TaskStatus.PENDING.value, TaskStatus.BLOCKED.value})


class AgentHealth(str, Enum):
    """Supervisor's view of one worker."""

    HEALTHY = "healthy"
    SUSPECT = "suspect"
    RECOVERING = "recovering"
    FAILED = "failed"


@dataclass(slots=True)
class SupervisedAgent:
    """Per-worker recovery bookkeeping."""

    agent_id: str
    role: RoleName
    started_at: datetime
    health: AgentHealth = AgentHealth.HEALTHY
    restart_count: int = 0
    next_check_at: datetime | None = None
    recovering: bool = False
    exit_code: int | None = None
    last_reason: str | None = None
    history: list[AgentHealth] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class SupervisorEvent:
    """Notification for external alerting."""

    kind: str
    agent_id: str | None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SystemHealth:
    """Aggregate supervisor status."""

    healthy: int
    unhealthy: int
    failed: int
    total_restarts: int
    uptime_seconds: float
    agents: dict[str, AgentHealth]


SupervisorListener = Callable[[SupervisorEvent], None]


class HealthSupervisor:
    """Drives each registered worker through healthy/suspect/recovering/failed.

    Evaluation reads the last committed agent records only, so a slow flush
    never blocks it. A restart is stop-then-start on the process lifecycle
    collaborator followed by a backoff window during which the agent is not
    re-evaluated. After ``max_restart_attempts`` restarts the next unhealthy
    evaluation moves the agent to ``failed``; nothing restarts it again until
    ``reset`` is called.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StateStore,
        directory: AgentDirectory,
        lifecycle: ProcessLifecycle,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        max_restart_attempts: int = DEFAULT_MAX_RESTART_ATTEMPTS,
        backoff: BackoffPolicy | None = None,
        backlog_alert_threshold: int | None = DEFAULT_BACKLOG_ALERT_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.directory = directory
        self.lifecycle = lifecycle
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.max_restart_attempts = max_restart_attempts
        self.backoff = backoff or FixedBackoff(delay_seconds=DEFAULT_RESTART_DELAY_SECONDS)
        self.backlog_alert_threshold = backlog_alert_threshold
        self._clock = clock
        self._agents: dict[str, SupervisedAgent] = {}
        self._listeners: list[SupervisorListener] = []
        self._lock = threading.RLock()
        self._backlog_alerted = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        lifecycle.on_exit(self.notify_exit)
        if backlog_alert_threshold is not None:
            store.subscribe(self._check_backlog)

    # -- registration and control ---------------------------------------------

    def register(self, agent_id: str, role: RoleName | str) -> SupervisedAgent:
        with self._lock:
            supervised = self._agents.get(agent_id)
            if supervised is None:
                supervised = SupervisedAgent(
                    agent_id=agent_id,
                    role=RoleName(role),
                    started_at=self._clock(),
                )
                self._agents[agent_id] = supervised
            return supervised

    def agent(self, agent_id: str) -> SupervisedAgent | None:
        with self._lock:
            return self._agents.get(agent_id)

    def subscribe(self, listener: SupervisorListener) -> None:
        self._listeners.append(listener)

    def start_all(self) -> None:
        """Start every registered worker process."""

        with self._lock:
            agents = list(self._agents.values())
        for supervised in agents:
            self.lifecycle.start(supervised.agent_id)
            supervised.started_at = self._clock()
        logger.info("Started %d supervised agent(s)", len(agents))

    def stop_all(self) -> None:
        with self._lock:
            agents = list(self._agents.values())
        for supervised in agents:
            try:
                self.lifecycle.stop(supervised.agent_id)
            except CollaboratorError as error:
                logger.warning("Failed to stop agent %s: %s", supervised.agent_id, error)
            self.directory.mark_offline(supervised.agent_id)

    def reset(self, agent_id: str) -> None:
        """Manual intervention: clear the restart counter and resume supervision."""

        with self._lock:
            supervised = self._agents[agent_id]
            supervised.restart_count = 0
            supervised.next_check_at = None
            supervised.exit_code = None
            supervised.last_reason = None
            supervised.started_at = self._clock()
            self._transition(supervised, AgentHealth.HEALTHY)
        logger.info("Supervision of agent %s reset", agent_id)

    def notify_exit(self, agent_id: str, exit_code: int) -> None:
        """Process exit notification; a non-zero code triggers evaluation right away."""

        with self._lock:
            supervised = self._agents.get(agent_id)
            if supervised is None:
                return
            if exit_code == 0:
                logger.info("Agent %s exited cleanly", agent_id)
            else:
                supervised.exit_code = exit_code
        self.directory.mark_offline(agent_id)
        if exit_code != 0:
            record = self.directory.committed().get(agent_id)
            self._emit_all(self._evaluate(supervised, record, self._clock()))

    # -- evaluation ------------------------------------------------------------

    def poll_once(self) -> list[SupervisorEvent]:
        """Evaluate every registered agent once; return the events emitted.

        Heartbeats written by worker processes reach this process through
        ``StateStore.refresh``, which never waits on an in-flight flush.
        """

        self.store.refresh()
        now = self._clock()
        records = self.directory.committed()
        with self._lock:
            agents = list(self._agents.values())
        events: list[SupervisorEvent] = []
        for supervised in agents:
            events.extend(self._evaluate(supervised, records.get(supervised.agent_id), now))
        self._emit_all(events)
        return events

    def _evaluate(
        self,
        supervised: SupervisedAgent,
        record: AgentRecord | None,
        now: datetime,
    ) -> list[SupervisorEvent]:
        with self._lock:
            if supervised.health == AgentHealth.FAILED or supervised.recovering:
                return []
            if supervised.next_check_at is not None and now < supervised.next_check_at:
                return []

            reason = self._unhealthy_reason(supervised, record, now)
            if reason is None:
                logger.debug("Agent %s healthy", supervised.agent_id)
                if supervised.health == AgentHealth.HEALTHY:
                    return []
                self._transition(supervised, AgentHealth.HEALTHY)
                logger.info(
                    "Agent %s recovered after %d restart(s)",
                    supervised.agent_id,
                    supervised.restart_count,
                )
                return [
                    SupervisorEvent(
                        kind=EVENT_AGENT_RECOVERED,
                        agent_id=supervised.agent_id,
                        details={"restart_count": supervised.restart_count},
                    ),
                ]

            supervised.last_reason = reason
            logger.warning("Agent %s unhealthy: %s", supervised.agent_id, reason)
            self._transition(supervised, AgentHealth.SUSPECT)

            if supervised.restart_count >= self.max_restart_attempts:
                self._transition(supervised, AgentHealth.FAILED)
                logger.critical(
                    "Agent %s failed after %d restart attempt(s); manual intervention required",
                    supervised.agent_id,
                    supervised.restart_count,
                )
                return [
                    SupervisorEvent(
                        kind=EVENT_AGENT_FAILED,
                        agent_id=supervised.agent_id,
                        details={
                            "reason": "max_restarts_exceeded",
                            "restart_count": supervised.restart_count,
                            "last_reason": reason,
                        },
                    ),
                ]

            supervised.recovering = True
            supervised.restart_count += 1
            attempt = supervised.restart_count
            self._transition(supervised, AgentHealth.RECOVERING)

        self._restart(supervised, attempt=attempt, now=now)
        return []

    def _unhealthy_reason(
        self,
        supervised: SupervisedAgent,
        record: AgentRecord | None,
        now: datetime,
    ) -> str | None:
        if supervised.exit_code is not None:
            return f"process exited with code {supervised.exit_code}"
        if record is not None and record.state == AgentState.ERROR:
            return "agent reported error state"
        last_seen = supervised.started_at
        if record is not None and record.last_heartbeat > last_seen:
            last_seen = record.last_heartbeat
        age = (now - last_seen).total_seconds()
        if age > self.stale_after_seconds:
            if record is None:
                return f"no heartbeat recorded in {age:.1f}s"
            return f"heartbeat is {age:.1f}s old"
        return None

    def _restart(self, supervised: SupervisedAgent, *, attempt: int, now: datetime) -> None:
        agent_id = supervised.agent_id
        logger.info(
            "Restarting agent %s (attempt %d/%d)",
            agent_id,
            attempt,
            self.max_restart_attempts,
        )
        try:
            self.lifecycle.stop(agent_id)
            self.directory.mark_offline(agent_id)
            self.lifecycle.start(agent_id)
            self.directory.set_state(
                agent_id,
                AgentState.IDLE,
                actor=SUPERVISOR_ACTOR,
                heartbeat_at=now,
            )
        except (CollaboratorError, CoordinationError, OSError) as error:
            logger.error("Restart attempt %d of agent %s failed: %s", attempt, agent_id, error)
        finally:
            delay = self.backoff.delay(attempt)
            with self._lock:
                supervised.exit_code = None
                supervised.started_at = now
                supervised.next_check_at = now + timedelta(seconds=delay)
                supervised.recovering = False
            logger.debug("Agent %s next check in %.1fs", agent_id, delay)

    def _transition(self, supervised: SupervisedAgent, health: AgentHealth) -> None:
        if supervised.health == health:
            return
        supervised.health = health
        supervised.history.append(health)

    # -- backlog ---------------------------------------------------------------

    def _check_backlog(self, _version: int, document: Mapping[str, Any]) -> None:
        threshold = self.backlog_alert_threshold
        if threshold is None:
            return
        backlog = sum(
            1
            for raw in document.get("tasks", {}).values()
            if isinstance(raw, Mapping) and raw.get("status") in _BACKLOG_STATUSES
        )
        if backlog <= threshold:
            self._backlog_alerted = False
            return
        if self._backlog_alerted:
            return
        self._backlog_alerted = True
        logger.warning("Task backlog %d exceeds alert threshold %d", backlog, threshold)
        self._emit_all(
            [
                SupervisorEvent(
                    kind=EVENT_BACKLOG_ALERT,
                    agent_id=None,
                    details={"backlog": backlog, "threshold": threshold},
                ),
            ],
        )

    # -- reporting -------------------------------------------------------------

    def system_health(self) -> SystemHealth:
        now = self._clock()
        with self._lock:
            agents = list(self._agents.values())
        healthy = sum(1 for agent in agents if agent.health == AgentHealth.HEALTHY)
        failed = sum(1 for agent in agents if agent.health == AgentHealth.FAILED)
        earliest = min((agent.started_at for agent in agents), default=now)
        return SystemHealth(
            healthy=healthy,
            unhealthy=len(agents) - healthy,
            failed=failed,
            total_restarts=sum(agent.restart_count for agent in agents),
            uptime_seconds=max(0.0, (now - earliest).total_seconds()),
            agents={agent.agent_id: agent.health for agent in agents},
        )

    def _emit_all(self, events: list[SupervisorEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception("Supervisor listener failed for %s", event.kind)

    # -- loop ------------------------------------------------------------------

    def run(self, stop_event: threading.Event, *, max_polls: int | None = None) -> int:
        """Poll until ``stop_event`` is set or ``max_polls`` evaluations ran."""

        polls = 0
        while not stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Health check failed")
            polls += 1
            if max_polls is not None and polls >= max_polls:
                break
            stop_event.wait(self.poll_interval_seconds)
        return polls

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run,
            args=(self._stop,),
            daemon=True,
            name="hive-coord-supervisor",
        )
        self._thread.start()
        logger.info("Health supervisor started (interval=%.1fs)", self.poll_interval_seconds)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=max(5.0, self.poll_interval_seconds))
        self._thread = None
        logger.info("Health supervisor stopped")
