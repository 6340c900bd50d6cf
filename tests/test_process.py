from __future__ import annotations

import json
import shlex
import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from hive_coord.coordination.collaborators.base import CollaboratorError
from hive_coord.coordination.collaborators.process import SubprocessLifecycle

pytestmark = [
    allure.epic("Collaborators"),
    allure.feature("Process Lifecycle"),
]

_WORKER_SCRIPT = """
import json
import os
import sys
import time

out_path, mode = sys.argv[1], sys.argv[2]
with open(out_path, "w", encoding="utf-8") as handle:
    json.dump(
        {
            "argv": sys.argv[3:],
            "agent_id": os.environ.get("HIVE_COORD_AGENT_ID"),
            "role": os.environ.get("HIVE_COORD_AGENT_ROLE"),
        },
        handle,
    )
print("worker output", flush=True)
if mode == "sleep":
    time.sleep(60)
sys.exit(int(mode))
"""


def _template(tmp_path: Path, mode: str) -> str:
    script = tmp_path / "worker.py"
    script.write_text(_WORKER_SCRIPT, encoding="utf-8")
    out_path = tmp_path / "worker-{agent_id}.json"
    return (
        f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} "
        f"{shlex.quote(str(out_path))} {mode} --agent {{agent_id}} --role {{role}}"
    )


def _wait_for(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_unexpected_exit_is_reported(tmp_path: Path) -> None:
    exits: list[tuple[str, int]] = []
    exited = threading.Event()

    def on_exit(agent_id: str, exit_code: int) -> None:
        exits.append((agent_id, exit_code))
        exited.set()

    lifecycle = SubprocessLifecycle(
        command_template=_template(tmp_path, "3"),
        roles={"w1": "implementer"},
        log_dir=tmp_path / "logs",
    )
    lifecycle.on_exit(on_exit)

    lifecycle.start("w1")

    assert exited.wait(timeout=10)
    assert exits == [("w1", 3)]
    assert not lifecycle.is_running("w1")
    report = json.loads((tmp_path / "worker-w1.json").read_text("utf-8"))
    assert report == {
        "argv": ["--agent", "w1", "--role", "implementer"],
        "agent_id": "w1",
        "role": "implementer",
    }
    assert _wait_for(
        lambda: "worker output" in (tmp_path / "logs" / "agent-w1.log").read_text("utf-8"),
    )


def test_requested_stop_is_not_reported(tmp_path: Path) -> None:
    exits: list[tuple[str, int]] = []
    lifecycle = SubprocessLifecycle(command_template=_template(tmp_path, "sleep"), grace_seconds=2)
    lifecycle.on_exit(lambda agent_id, code: exits.append((agent_id, code)))
    lifecycle.register_role("w2", "validator")

    lifecycle.start("w2")
    assert lifecycle.is_running("w2")
    pid = lifecycle.pid("w2")
    lifecycle.start("w2")
    assert lifecycle.pid("w2") == pid

    lifecycle.stop("w2")

    assert not lifecycle.is_running("w2")
    assert lifecycle.pid("w2") is None
    assert exits == []
    lifecycle.stop("w2")


def test_stop_all_stops_every_worker(tmp_path: Path) -> None:
    lifecycle = SubprocessLifecycle(command_template=_template(tmp_path, "sleep"), grace_seconds=2)
    lifecycle.start("a")
    lifecycle.start("b")

    lifecycle.stop_all()

    assert not lifecycle.is_running("a")
    assert not lifecycle.is_running("b")


def test_invalid_templates_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(CollaboratorError, match="empty"):
        SubprocessLifecycle(command_template="   ")

    lifecycle = SubprocessLifecycle(command_template="worker --id {agent_id} --zone {zone}")
    with pytest.raises(CollaboratorError, match="placeholder"):
        lifecycle.start("w1")

    missing = SubprocessLifecycle(command_template=str(tmp_path / "no-such-binary"))
    with pytest.raises(CollaboratorError, match="Failed to start"):
        missing.start("w1")
