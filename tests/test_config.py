from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_command.config import (
    CleanupSettings,
    CliSettings,
    RetrySettings,
    Settings,
)

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_uses_local_defaults(monkeypatch) -> None:
    for name in (
        "AGENT_COMMAND_DB_PATH",
        "AGENT_COMMAND_MAX_RETRIES",
        "AGENT_COMMAND_POOL_CAPACITY",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_command.db")
    assert settings.retry.max_retries == 2
    assert settings.retry.retry_delay_seconds == 3.0
    assert settings.cleanup.max_concurrent_agents == 24
    assert settings.cleanup.max_concurrent_processes == 8
    assert settings.pool.capacity == 12
    assert settings.cli.decomposition_model == "haiku"
    assert settings.orchestration.max_subtasks == 6
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_COMMAND_MAX_RETRIES", "5")
    monkeypatch.setenv("AGENT_COMMAND_MAX_CONCURRENT_PROCESSES", "3")
    monkeypatch.setenv("AGENT_COMMAND_ENABLE_AUTO_POOL_RETURN", "off")
    monkeypatch.setenv("AGENT_COMMAND_SYNTHESIZE_WITH_CLI", "no")
    monkeypatch.setenv("AGENT_COMMAND_WORKING_DIRECTORY", str(tmp_path))

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.retry.max_retries == 5
    assert settings.cleanup.max_concurrent_processes == 3
    assert settings.cleanup.enable_auto_pool_return is False
    assert settings.orchestration.synthesize_with_cli is False
    assert settings.cli.working_directory == tmp_path


def test_from_env_rejects_unparseable_flag(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_COMMAND_ENABLE_RESOURCE_MONITORING", "sometimes")

    with pytest.raises(ValueError, match="AGENT_COMMAND_ENABLE_RESOURCE_MONITORING"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "variable"),
    [
        (Settings(retry=RetrySettings(max_retries=-1)), "MAX_RETRIES"),
        (Settings(retry=RetrySettings(retry_delay_seconds=-0.5)), "RETRY_DELAY_SECONDS"),
        (Settings(retry=RetrySettings(backoff_multiplier=0.5)), "BACKOFF_MULTIPLIER"),
        (Settings(cleanup=CleanupSettings(max_concurrent_agents=0)), "MAX_CONCURRENT_AGENTS"),
        (
            Settings(cleanup=CleanupSettings(max_concurrent_processes=0)),
            "MAX_CONCURRENT_PROCESSES",
        ),
        (
            Settings(
                cleanup=CleanupSettings(
                    memory_warning_threshold_mb=4096,
                    memory_critical_threshold_mb=1024,
                ),
            ),
            "MEMORY_CRITICAL_THRESHOLD_MB",
        ),
        (Settings(cli=CliSettings(command_template="claude --model {model}")), "COMMAND_TEMPLATE"),
        (Settings(cli=CliSettings(resume_args="--resume")), "RESUME_ARGS"),
    ],
)
def test_validate_names_the_offending_variable(settings: Settings, variable: str) -> None:
    with pytest.raises(ValueError, match=variable):
        settings.validate()
