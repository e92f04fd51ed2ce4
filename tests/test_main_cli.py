from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_command.main import agent_command

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Operator CLI"),
]


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.mark.parametrize(
    ("prompt", "expected"),
    [
        ("First refactor the parser and then update the docs for the new grammar", "true"),
        ("Fix the typo", "false"),
    ],
)
def test_should_decompose_reports_decision(runner, prompt: str, expected: str) -> None:
    result = runner.invoke(agent_command, ["should-decompose", prompt])

    assert result.exit_code == 0, result.output
    assert result.output.strip() == f"should_decompose={expected}"


def test_read_commands_on_empty_database(runner, tmp_path: Path) -> None:
    db_path = str(tmp_path / "empty.db")

    resumes = runner.invoke(agent_command, ["resumes", "--db-path", db_path])
    queue = runner.invoke(agent_command, ["queue", "cmd-1", "--db-path", db_path])
    snapshot = runner.invoke(agent_command, ["snapshot", "--db-path", db_path])

    assert resumes.exit_code == 0, resumes.output
    assert "No pending resume contexts." in resumes.output
    assert queue.exit_code == 0, queue.output
    assert "No queue for commander cmd-1." in queue.output
    assert snapshot.exit_code == 0, snapshot.output
    assert "No snapshot saved." in snapshot.output


def test_run_executes_sub_tasks_with_echo_agent(runner, tmp_path: Path, echo_agent_env) -> None:
    db_path = str(tmp_path / "run.db")

    result = runner.invoke(
        agent_command,
        [
            "run",
            "write the changelog; bump the version",
            "--db-path",
            db_path,
            "--commander-id",
            "cmd-cli",
            "--timeout-seconds",
            "60",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "completed: 2/2 sub-task(s) completed across 1 wave(s)" in result.output
    assert "[completed] 0: write the changelog" in result.output
    assert "[completed] 1: bump the version" in result.output
    assert "echo: You are synthesizing the results" in result.output

    queue = runner.invoke(agent_command, ["queue", "cmd-cli", "--db-path", db_path])
    assert queue.exit_code == 0, queue.output
    assert "Queue for commander cmd-cli: 2 item(s)" in queue.output
    assert "completed" in queue.output

    snapshot = runner.invoke(agent_command, ["snapshot", "--db-path", db_path])
    assert snapshot.exit_code == 0, snapshot.output
    assert "resume_contexts=0 runs=1" in snapshot.output


def test_run_reports_decomposition_failure(runner, tmp_path: Path, echo_agent_env) -> None:
    result = runner.invoke(
        agent_command,
        [
            "run",
            "[crash] rewrite everything",
            "--db-path",
            str(tmp_path / "crash.db"),
            "--no-restore",
        ],
    )

    assert result.exit_code == 1
    assert "Error: decomposition:" in result.output
    assert "re-issue the prompt to a single agent" in result.output
