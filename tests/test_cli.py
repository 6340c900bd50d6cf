from __future__ import annotations

import json
import re
import shlex
import sys
from pathlib import Path

import allure
from click.testing import CliRunner

from hive_coord.main import hive_coord

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Coordination CLI"),
]

_TASK_ID_RE = re.compile(r"task_id=(task-[0-9a-f-]+)")


def _invoke(runner: CliRunner, state_path: Path, *args: str, env: dict | None = None):
    group, command, *rest = args
    return runner.invoke(
        hive_coord,
        [group, command, "--state-path", str(state_path), *rest],
        env=env,
    )


def _create(runner: CliRunner, state_path: Path, title: str, *args: str) -> str:
    result = _invoke(runner, state_path, "tasks", "create", "--title", title, *args)
    assert result.exit_code == 0, result.output
    match = _TASK_ID_RE.search(result.output)
    assert match is not None, result.output
    return match.group(1)


def test_task_lifecycle_through_cli(tmp_path: Path) -> None:
    runner = CliRunner()
    state_path = tmp_path / "state.json"

    low = _create(runner, state_path, "Low fix", "--tag", "FIX", "--priority", "2")
    high = _create(runner, state_path, "Urgent fix", "--tag", "FIX", "--priority", "5")
    dependent = _create(runner, state_path, "Follow-up", "--tag", "FIX", "--depends-on", high)

    listed = _invoke(runner, state_path, "tasks", "list")
    assert listed.exit_code == 0, listed.output
    lines = listed.output.strip().splitlines()
    assert [line.split()[0] for line in lines] == [high, dependent, low]

    eligible = _invoke(runner, state_path, "tasks", "list", "--for-role", "implementer")
    assert dependent not in eligible.output

    claimed = _invoke(
        runner,
        state_path,
        "tasks",
        "claim",
        "--worker",
        "w1",
        "--role",
        "implementer",
    )
    assert claimed.exit_code == 0, claimed.output
    assert f"task_id={high}" in claimed.output

    completed = _invoke(
        runner,
        state_path,
        "tasks",
        "complete",
        high,
        "--worker",
        "w1",
        "--file",
        "src/app.py",
    )
    assert completed.exit_code == 0, completed.output

    shown = _invoke(runner, state_path, "tasks", "show", dependent)
    assert "Unmet dependencies: -" in shown.output
    assert "Status: pending" in shown.output

    stats = _invoke(runner, state_path, "tasks", "stats")
    assert stats.exit_code == 0, stats.output
    assert "completed=1" in stats.output
    assert "pending=2" in stats.output

    raw = _invoke(runner, state_path, "state", "show", "--path", f"tasks.{high}.status")
    assert json.loads(raw.output) == {"tasks": {high: {"status": "completed"}}}


def test_list_json_format(tmp_path: Path) -> None:
    runner = CliRunner()
    state_path = tmp_path / "state.json"
    task_id = _create(runner, state_path, "Audit auth", "--tag", "AUDIT", "--role", "auditor")

    result = _invoke(runner, state_path, "tasks", "list", "--format", "json")

    payload = json.loads(result.output)
    assert [task["id"] for task in payload] == [task_id]
    assert payload[0]["assignedRole"] == "auditor"


def test_block_update_and_cancel(tmp_path: Path) -> None:
    runner = CliRunner()
    state_path = tmp_path / "state.json"
    task_id = _create(runner, state_path, "Flaky", "--tag", "TEST")

    blocked = _invoke(runner, state_path, "tasks", "block", task_id, "--reason", "CI is down")
    assert blocked.exit_code == 0, blocked.output
    assert "reason=CI is down" in blocked.output

    reopened = _invoke(runner, state_path, "tasks", "update", task_id, "--status", "pending")
    assert "status=pending" in reopened.output

    cancelled = _invoke(runner, state_path, "tasks", "cancel", task_id)
    assert cancelled.exit_code == 0, cancelled.output

    illegal = _invoke(runner, state_path, "tasks", "update", task_id, "--status", "pending")
    assert illegal.exit_code == 1
    assert "cannot" in illegal.output


def test_errors_are_reported_as_cli_errors(tmp_path: Path) -> None:
    runner = CliRunner()
    state_path = tmp_path / "state.json"

    missing = _invoke(runner, state_path, "tasks", "show", "task-missing")
    assert missing.exit_code == 1
    assert "not found" in missing.output

    no_target = _invoke(runner, state_path, "tasks", "claim", "--worker", "w1")
    assert no_target.exit_code == 1
    assert "--role" in no_target.output

    invalid_priority = _invoke(
        runner,
        state_path,
        "tasks",
        "create",
        "--title",
        "x",
        "--priority",
        "9",
    )
    assert invalid_priority.exit_code == 2


def test_claim_reports_when_nothing_is_eligible(tmp_path: Path) -> None:
    runner = CliRunner()
    state_path = tmp_path / "state.json"
    _create(runner, state_path, "Docs", "--tag", "DOCS")

    result = _invoke(runner, state_path, "tasks", "claim", "--worker", "w1", "--role", "validator")

    assert result.exit_code == 0, result.output
    assert "No eligible task for worker w1." in result.output


def test_release_lets_another_worker_claim(tmp_path: Path) -> None:
    runner = CliRunner()
    state_path = tmp_path / "state.json"
    task_id = _create(runner, state_path, "Stuck fix", "--tag", "FIX")

    first = _invoke(runner, state_path, "tasks", "claim", task_id, "--worker", "w1")
    assert first.exit_code == 0, first.output

    taken = _invoke(runner, state_path, "tasks", "claim", task_id, "--worker", "w2")
    assert taken.exit_code == 1
    assert "w1" in taken.output

    released = _invoke(runner, state_path, "tasks", "release", task_id)
    assert released.exit_code == 0, released.output
    assert f"task_id={task_id} status=pending" in released.output

    second = _invoke(runner, state_path, "tasks", "claim", task_id, "--worker", "w2")
    assert second.exit_code == 0, second.output
    assert f"task_id={task_id} worker=w2" in second.output

    shown = _invoke(runner, state_path, "tasks", "show", task_id)
    assert "w2" in shown.output


def test_agent_heartbeat_and_listing(tmp_path: Path) -> None:
    runner = CliRunner()
    state_path = tmp_path / "state.json"

    empty = _invoke(runner, state_path, "agents", "list")
    assert "No agents registered." in empty.output

    missing_role = _invoke(runner, state_path, "agents", "heartbeat", "w1")
    assert missing_role.exit_code == 1

    registered = _invoke(runner, state_path, "agents", "heartbeat", "w1", "--role", "validator")
    assert registered.exit_code == 0, registered.output
    assert "role=validator state=idle" in registered.output

    listed = _invoke(runner, state_path, "agents", "list")
    assert listed.output.startswith("w1 role=validator state=idle")


def test_sqlite_backend_via_environment(tmp_path: Path) -> None:
    runner = CliRunner()
    state_path = tmp_path / "state.db"
    env = {"HIVE_COORD_STORE_BACKEND": "sqlite"}

    created = _invoke(
        runner,
        state_path,
        "tasks",
        "create",
        "--title",
        "Stored in sqlite",
        "--tag",
        "FIX",
        env=env,
    )
    assert created.exit_code == 0, created.output

    listed = _invoke(runner, state_path, "tasks", "list", env=env)
    assert "Stored in sqlite" in listed.output


def test_supervise_requires_worker_command(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(
        hive_coord,
        ["supervise", "--state-path", str(tmp_path / "state.json"), "--agent", "w1:implementer"],
        env={"HIVE_COORD_WORKER_COMMAND": ""},
    )

    assert result.exit_code == 1
    assert "HIVE_COORD_WORKER_COMMAND" in result.output


def test_supervise_rejects_malformed_agent_spec(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        hive_coord,
        ["supervise", "--state-path", str(tmp_path / "state.json"), "--agent", "w1"],
    )

    assert result.exit_code == 2


def test_supervise_runs_workers_for_bounded_polls(tmp_path: Path) -> None:
    runner = CliRunner()
    command = f'{shlex.quote(sys.executable)} -c "import time; time.sleep(30)"'

    result = runner.invoke(
        hive_coord,
        [
            "supervise",
            "--state-path",
            str(tmp_path / "state.json"),
            "--agent",
            "w1:implementer",
            "--agent",
            "w2:validator",
            "--max-polls",
            "1",
        ],
        env={
            "HIVE_COORD_WORKER_COMMAND": command,
            "HIVE_COORD_WORKER_LOG_DIR": str(tmp_path / "logs"),
        },
    )

    assert result.exit_code == 0, result.output
    assert "Supervisor summary: polls=1 healthy=2 unhealthy=0 failed=0 restarts=0" in result.output
