"""Runtime configuration for the agent lifecycle and orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_command import __version__

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p {prompt} --model {model} --output-format stream-json --verbose "
    "--dangerously-skip-permissions"
)


@dataclass(slots=True)
class RetrySettings:
    """Sub-task retry settings."""

    max_retries: int = 2
    retry_delay_seconds: float = 3.0
    backoff_multiplier: float = 2.0


@dataclass(slots=True)
class CleanupSettings:
    """Cleanup timers and resource thresholds."""

    completed_team_delay_seconds: float = 15.0
    failed_team_delay_seconds: float = 10.0
    idle_agent_timeout_seconds: float = 120.0
    suspended_idle_timeout_seconds: float = 300.0
    max_concurrent_agents: int = 24
    max_concurrent_processes: int = 8
    memory_warning_threshold_mb: int = 2048
    memory_critical_threshold_mb: int = 3072
    process_hang_timeout_seconds: float = 300.0
    enable_auto_pool_return: bool = True
    enable_resource_monitoring: bool = True


@dataclass(slots=True)
class PoolSettings:
    """Reusable sub-agent pool settings."""

    capacity: int = 12
    max_per_role: int = 3
    ttl_seconds: float = 600.0


@dataclass(slots=True)
class CliSettings:
    """CLI agent invocation settings."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    resume_args: str = "--resume {session_id}"
    default_model: str = "sonnet"
    decomposition_model: str = "haiku"
    working_directory: Path = Path()
    graceful_terminate_seconds: float = 2.0


@dataclass(slots=True)
class OrchestrationSettings:
    """Decomposition and synthesis settings."""

    max_subtasks: int = 6
    synthesize_with_cli: bool = True
    dependency_context_chars: int = 500
    synthesis_result_chars: int = 800


@dataclass(slots=True)
class PersistenceSettings:
    """State store settings."""

    auto_save_interval_seconds: float = 30.0
    sqlite_busy_timeout_ms: int = 5_000
    monitor_interval_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_command.db")
    app_version: str = __version__
    retry: RetrySettings = field(default_factory=RetrySettings)
    cleanup: CleanupSettings = field(default_factory=CleanupSettings)
    pool: PoolSettings = field(default_factory=PoolSettings)
    cli: CliSettings = field(default_factory=CliSettings)
    orchestration: OrchestrationSettings = field(default_factory=OrchestrationSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_COMMAND_DB_PATH", ".agent_command.db")),
            app_version=os.getenv("AGENT_COMMAND_APP_VERSION", __version__),
            retry=RetrySettings(
                max_retries=int(os.getenv("AGENT_COMMAND_MAX_RETRIES", "2")),
                retry_delay_seconds=float(os.getenv("AGENT_COMMAND_RETRY_DELAY_SECONDS", "3.0")),
                backoff_multiplier=float(
                    os.getenv("AGENT_COMMAND_RETRY_BACKOFF_MULTIPLIER", "2.0"),
                ),
            ),
            cleanup=CleanupSettings(
                completed_team_delay_seconds=float(
                    os.getenv("AGENT_COMMAND_COMPLETED_TEAM_DELAY_SECONDS", "15"),
                ),
                failed_team_delay_seconds=float(
                    os.getenv("AGENT_COMMAND_FAILED_TEAM_DELAY_SECONDS", "10"),
                ),
                idle_agent_timeout_seconds=float(
                    os.getenv("AGENT_COMMAND_IDLE_AGENT_TIMEOUT_SECONDS", "120"),
                ),
                suspended_idle_timeout_seconds=float(
                    os.getenv("AGENT_COMMAND_SUSPENDED_IDLE_TIMEOUT_SECONDS", "300"),
                ),
                max_concurrent_agents=int(os.getenv("AGENT_COMMAND_MAX_CONCURRENT_AGENTS", "24")),
                max_concurrent_processes=int(
                    os.getenv("AGENT_COMMAND_MAX_CONCURRENT_PROCESSES", "8"),
                ),
                memory_warning_threshold_mb=int(
                    os.getenv("AGENT_COMMAND_MEMORY_WARNING_THRESHOLD_MB", "2048"),
                ),
                memory_critical_threshold_mb=int(
                    os.getenv("AGENT_COMMAND_MEMORY_CRITICAL_THRESHOLD_MB", "3072"),
                ),
                process_hang_timeout_seconds=float(
                    os.getenv("AGENT_COMMAND_PROCESS_HANG_TIMEOUT_SECONDS", "300"),
                ),
                enable_auto_pool_return=_env_bool(
                    "AGENT_COMMAND_ENABLE_AUTO_POOL_RETURN",
                    default=True,
                ),
                enable_resource_monitoring=_env_bool(
                    "AGENT_COMMAND_ENABLE_RESOURCE_MONITORING",
                    default=True,
                ),
            ),
            pool=PoolSettings(
                capacity=int(os.getenv("AGENT_COMMAND_POOL_CAPACITY", "12")),
                max_per_role=int(os.getenv("AGENT_COMMAND_POOL_MAX_PER_ROLE", "3")),
                ttl_seconds=float(os.getenv("AGENT_COMMAND_POOL_TTL_SECONDS", "600")),
            ),
            cli=CliSettings(
                command_template=os.getenv(
                    "AGENT_COMMAND_CLI_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                resume_args=os.getenv("AGENT_COMMAND_CLI_RESUME_ARGS", "--resume {session_id}"),
                default_model=os.getenv("AGENT_COMMAND_DEFAULT_MODEL", "sonnet"),
                decomposition_model=os.getenv("AGENT_COMMAND_DECOMPOSITION_MODEL", "haiku"),
                working_directory=Path(os.getenv("AGENT_COMMAND_WORKING_DIRECTORY", ".")),
                graceful_terminate_seconds=float(
                    os.getenv("AGENT_COMMAND_GRACEFUL_TERMINATE_SECONDS", "2.0"),
                ),
            ),
            orchestration=OrchestrationSettings(
                max_subtasks=int(os.getenv("AGENT_COMMAND_MAX_SUBTASKS", "6")),
                synthesize_with_cli=_env_bool("AGENT_COMMAND_SYNTHESIZE_WITH_CLI", default=True),
                dependency_context_chars=int(
                    os.getenv("AGENT_COMMAND_DEPENDENCY_CONTEXT_CHARS", "500"),
                ),
                synthesis_result_chars=int(
                    os.getenv("AGENT_COMMAND_SYNTHESIS_RESULT_CHARS", "800"),
                ),
            ),
            persistence=PersistenceSettings(
                auto_save_interval_seconds=float(
                    os.getenv("AGENT_COMMAND_AUTO_SAVE_INTERVAL_SECONDS", "30"),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("AGENT_COMMAND_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
                monitor_interval_seconds=float(
                    os.getenv("AGENT_COMMAND_MONITOR_INTERVAL_SECONDS", "5"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if limits or templates are unusable."""

        if self.retry.max_retries < 0:
            raise ValueError("AGENT_COMMAND_MAX_RETRIES must be >= 0.")
        if self.retry.retry_delay_seconds < 0:
            raise ValueError("AGENT_COMMAND_RETRY_DELAY_SECONDS must be >= 0.")
        if self.retry.backoff_multiplier < 1:
            raise ValueError("AGENT_COMMAND_RETRY_BACKOFF_MULTIPLIER must be >= 1.")
        if self.cleanup.max_concurrent_agents <= 0:
            raise ValueError("AGENT_COMMAND_MAX_CONCURRENT_AGENTS must be > 0.")
        if self.cleanup.max_concurrent_processes <= 0:
            raise ValueError("AGENT_COMMAND_MAX_CONCURRENT_PROCESSES must be > 0.")
        if self.cleanup.memory_critical_threshold_mb < self.cleanup.memory_warning_threshold_mb:
            raise ValueError(
                "AGENT_COMMAND_MEMORY_CRITICAL_THRESHOLD_MB must be >= the warning threshold.",
            )
        if self.cleanup.process_hang_timeout_seconds <= 0:
            raise ValueError("AGENT_COMMAND_PROCESS_HANG_TIMEOUT_SECONDS must be > 0.")
        if self.pool.capacity < 0:
            raise ValueError("AGENT_COMMAND_POOL_CAPACITY must be >= 0.")
        if self.orchestration.max_subtasks <= 0:
            raise ValueError("AGENT_COMMAND_MAX_SUBTASKS must be > 0.")
        if "{prompt}" not in self.cli.command_template:
            raise ValueError("AGENT_COMMAND_CLI_COMMAND_TEMPLATE must include {prompt}.")
        if "{session_id}" not in self.cli.resume_args:
            raise ValueError("AGENT_COMMAND_CLI_RESUME_ARGS must include {session_id}.")


def _env_bool(name: str, *, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {value!r}.")
