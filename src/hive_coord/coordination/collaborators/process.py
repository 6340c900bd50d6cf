"""Subprocess-based worker lifecycle."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from hive_coord.coordination.collaborators.base import CollaboratorError, ExitCallback

logger = logging.getLogger(__name__)

AGENT_ID_ENV = "HIVE_COORD_AGENT_ID"
AGENT_ROLE_ENV = "HIVE_COORD_AGENT_ROLE"
DEFAULT_GRACE_SECONDS = 5.0


@dataclass(slots=True)
class _ManagedProcess:
    process: subprocess.Popen[bytes]
    log_handle: IO[bytes] | None = None
    stopping: bool = False
    watcher: threading.Thread | None = field(default=None)


class SubprocessLifecycle:
    """Runs one OS process per worker from a command template.

    The template is rendered with ``{agent_id}`` and ``{role}``; the same
    values are exported as ``HIVE_COORD_AGENT_ID`` / ``HIVE_COORD_AGENT_ROLE``.
    A watcher thread per process reports exits that were not requested via
    ``stop``.
    """

    def __init__(
        self,
        *,
        command_template: str,
        roles: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
        log_dir: Path | None = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> None:
        if not command_template.strip():
            raise CollaboratorError("Worker command template is empty.")
        self.command_template = command_template.strip()
        self.log_dir = log_dir
        self.grace_seconds = grace_seconds
        self._roles: dict[str, str] = dict(roles or {})
        self._env = dict(env or {})
        self._processes: dict[str, _ManagedProcess] = {}
        self._callbacks: list[ExitCallback] = []
        self._lock = threading.Lock()

    def register_role(self, agent_id: str, role: str) -> None:
        self._roles[agent_id] = role

    def on_exit(self, callback: ExitCallback) -> None:
        self._callbacks.append(callback)

    def is_running(self, agent_id: str) -> bool:
        with self._lock:
            managed = self._processes.get(agent_id)
        return managed is not None and managed.process.poll() is None

    def pid(self, agent_id: str) -> int | None:
        with self._lock:
            managed = self._processes.get(agent_id)
        return managed.process.pid if managed is not None else None

    def start(self, agent_id: str) -> None:
        if self.is_running(agent_id):
            logger.debug("Worker %s already running", agent_id)
            return
        role = self._roles.get(agent_id, "")
        argv = _build_argv(self.command_template, agent_id=agent_id, role=role)
        env = {**os.environ, **self._env, AGENT_ID_ENV: agent_id, AGENT_ROLE_ENV: role}
        log_handle = self._open_log(agent_id)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle if log_handle is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT if log_handle is not None else subprocess.DEVNULL,
            )
        except OSError as error:
            if log_handle is not None:
                log_handle.close()
            raise CollaboratorError(f"Failed to start worker {agent_id}: {error}") from error

        managed = _ManagedProcess(process=process, log_handle=log_handle)
        managed.watcher = threading.Thread(
            target=self._watch,
            args=(agent_id, managed),
            daemon=True,
            name=f"hive-coord-exit-{agent_id}",
        )
        with self._lock:
            self._processes[agent_id] = managed
        managed.watcher.start()
        logger.info("Started worker %s pid=%d", agent_id, process.pid)

    def stop(self, agent_id: str) -> None:
        with self._lock:
            managed = self._processes.pop(agent_id, None)
            if managed is None:
                return
            managed.stopping = True
        _terminate_process(managed.process, grace_seconds=self.grace_seconds)
        if managed.watcher is not None:
            managed.watcher.join(timeout=self.grace_seconds + 2)
        logger.info("Stopped worker %s", agent_id)

    def stop_all(self) -> None:
        with self._lock:
            agent_ids = list(self._processes)
        for agent_id in agent_ids:
            self.stop(agent_id)

    def _watch(self, agent_id: str, managed: _ManagedProcess) -> None:
        exit_code = managed.process.wait()
        if managed.log_handle is not None:
            managed.log_handle.close()
        with self._lock:
            if managed.stopping:
                return
            if self._processes.get(agent_id) is managed:
                del self._processes[agent_id]
        logger.warning("Worker %s exited with code %d", agent_id, exit_code)
        for callback in list(self._callbacks):
            try:
                callback(agent_id, exit_code)
            except Exception:
                logger.exception("Exit callback failed for worker %s", agent_id)

    def _open_log(self, agent_id: str) -> IO[bytes] | None:
        if self.log_dir is None:
            return None
        self.log_dir.mkdir(parents=True, exist_ok=True)
        return (self.log_dir / f"agent-{agent_id}.log").open("ab")


def _build_argv(template: str, *, agent_id: str, role: str) -> list[str]:
    try:
        rendered = template.format(agent_id=shlex.quote(agent_id), role=shlex.quote(role or "-"))
    except (KeyError, IndexError) as error:
        raise CollaboratorError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise CollaboratorError("Worker command template rendered an empty command.")
    return argv


def _terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
