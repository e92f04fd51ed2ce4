"""Shared test fixtures."""

from __future__ import annotations

import sys

import pytest

from agent_command.config import (
    CleanupSettings,
    CliSettings,
    OrchestrationSettings,
    PersistenceSettings,
    RetrySettings,
    Settings,
)
from agent_command.orchestrator.retry_policy import RetryPolicy
from agent_command.persistence.state_store import AgentStateStore
from agent_command.persistence.store import InMemoryKeyValueStore

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m agent_command.backend.echo_agent -p {{prompt}} --model {{model}}"
)


@pytest.fixture()
def echo_command_template() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def memory_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture()
def state_store(memory_store: InMemoryKeyValueStore) -> AgentStateStore:
    return AgentStateStore(memory_store)


@pytest.fixture()
def fast_retry_policy() -> RetryPolicy:
    """Two retries with near-zero backoff so retry timers fire within a test."""
    return RetryPolicy(max_retries=2, retry_delay=0.01, backoff_multiplier=1.0)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=tmp_path / "agent-command.db",
        retry=RetrySettings(max_retries=2, retry_delay_seconds=0.01, backoff_multiplier=1.0),
        cleanup=CleanupSettings(process_hang_timeout_seconds=30.0),
        cli=CliSettings(
            command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            working_directory=tmp_path,
            graceful_terminate_seconds=0.5,
        ),
        orchestration=OrchestrationSettings(synthesize_with_cli=False),
        persistence=PersistenceSettings(
            auto_save_interval_seconds=60.0,
            monitor_interval_seconds=60.0,
        ),
    )


@pytest.fixture()
def echo_agent_env(monkeypatch, tmp_path):
    """Point ``Settings.from_env`` at the echo agent and a temp working directory."""
    monkeypatch.setenv("AGENT_COMMAND_CLI_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("AGENT_COMMAND_WORKING_DIRECTORY", str(tmp_path))
    monkeypatch.setenv("AGENT_COMMAND_RETRY_DELAY_SECONDS", "0.01")
    monkeypatch.setenv("AGENT_COMMAND_MONITOR_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("AGENT_COMMAND_AUTO_SAVE_INTERVAL_SECONDS", "60")
