"""Controllers for operator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_command.backend import CLIProcessManager
from agent_command.config import Settings
from agent_command.errors import StorageError
from agent_command.orchestrator.decomposition import should_decompose
from agent_command.orchestrator.engine import (
    EngineNotification,
    NotificationKind,
    OrchestrationEngine,
)
from agent_command.orchestrator.models import (
    OrchestrationPhase,
    OrchestrationState,
    SubTaskStatus,
)
from agent_command.persistence.common import to_iso
from agent_command.persistence.state_store import AgentStateStore
from agent_command.persistence.store import SqliteKeyValueStore


@dataclass(slots=True)
class RunCommand:
    """CLI input for one decompose-and-execute run."""

    db_path: Path | None
    prompt: str
    commander_id: str | None
    timeout_seconds: float
    project_context: str | None = None
    restore: bool = True


@dataclass(slots=True)
class RunResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class ShouldDecomposeCommand:
    prompt: str


@dataclass(slots=True)
class StoreCommand:
    """CLI input for commands that only read the state store."""

    db_path: Path | None


@dataclass(slots=True)
class QueueCommand:
    db_path: Path | None
    commander_id: str


class AgentCommandCliController:
    """Builds the engine and its collaborators for each CLI command."""

    def run(self, command: RunCommand) -> RunResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        interactions: list[str] = []

        def remember_interaction(notification: EngineNotification) -> None:
            if notification.kind is NotificationKind.INTERACTION_REQUIRED:
                kind = notification.interaction.type.value if notification.interaction else "?"
                interactions.append(f"Agent {notification.agent_id} is waiting for {kind}.")

        with _state_store(settings) as state_store:
            engine = OrchestrationEngine(
                CLIProcessManager(
                    command_template=settings.cli.command_template,
                    resume_args=settings.cli.resume_args,
                    graceful_terminate_seconds=settings.cli.graceful_terminate_seconds,
                ),
                settings=settings,
                state_store=state_store,
            )
            engine.add_listener(remember_interaction)
            if command.restore:
                engine.restore()
            engine.start_background()
            try:
                run = engine.start(
                    command.prompt,
                    commander_id=command.commander_id,
                    project_context=command.project_context,
                )
                final = engine.wait(run.id, timeout=command.timeout_seconds)
            finally:
                snapshot = engine.shutdown()

        lines = _render_run(final)
        lines.extend(interactions)
        if not final.is_finished:
            lines.append(
                f"Run did not finish within {command.timeout_seconds:g}s; "
                f"{len(snapshot.resume_contexts)} agent(s) suspended for resume.",
            )
        return RunResult(
            lines=lines,
            success=final.phase is OrchestrationPhase.COMPLETED,
        )

    def should_decompose(self, command: ShouldDecomposeCommand) -> list[str]:
        decision = should_decompose(command.prompt)
        return [f"should_decompose={str(decision).lower()}"]

    def resumes(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_store(settings) as state_store:
            contexts = state_store.pending_resumes()
        if not contexts:
            return ["No pending resume contexts."]
        lines = [f"Pending resume contexts: {len(contexts)}"]
        for context in contexts:
            interaction = (
                context.pending_interaction.type.value if context.pending_interaction else "-"
            )
            linkage = (
                f"{context.orchestration_id}#{context.orchestration_task_index}"
                if context.orchestration_id is not None
                else "-"
            )
            lines.append(
                f"- agent={context.agent_id} role={context.agent.role.value} "
                f"reason={context.suspension_reason.value} interaction={interaction} "
                f"run={linkage} session={context.session_id or '-'} "
                f"suspended_at={to_iso(context.suspended_at)}",
            )
        return lines

    def queue(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_store(settings) as state_store:
            items = state_store.load_queue(command.commander_id)
        if not items:
            return [f"No queue for commander {command.commander_id}."]
        lines = [f"Queue for commander {command.commander_id}: {len(items)} item(s)"]
        for item in items:
            depends = ",".join(str(dependency) for dependency in item.dependencies) or "-"
            line = (
                f"- [{item.task_index}] {item.status.value:<11} retries={item.retry_count} "
                f"depends={depends} {item.title}"
            )
            if item.error is not None:
                line += f" ({item.error.kind.value}: {item.error.message})"
            lines.append(line)
        return lines

    def snapshot(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_store(settings) as state_store:
            try:
                snapshot = state_store.load_snapshot()
            except StorageError as error:
                return [f"Snapshot unreadable: {error}"]
            run_ids = state_store.orchestration_ids()
        if snapshot is None:
            return ["No snapshot saved."]
        return [
            f"Snapshot saved_at={to_iso(snapshot.saved_at)} app_version={snapshot.app_version}",
            f"agents={len(snapshot.agents)} tasks={len(snapshot.tasks)} "
            f"resume_contexts={len(snapshot.resume_contexts)} runs={len(run_ids)}",
        ]


def _render_run(run: OrchestrationState) -> list[str]:
    lines = [
        f"Run {run.id} {run.phase.value}: {run.completed_count}/{len(run.sub_tasks)} "
        f"sub-task(s) completed across {run.wave_count} wave(s)",
    ]
    for sub_task in run.sub_tasks:
        line = f"  [{sub_task.status.value}] {sub_task.index}: {sub_task.title}"
        if sub_task.status is SubTaskStatus.FAILED and sub_task.error is not None:
            line += f" ({sub_task.error.kind.value}: {sub_task.error.message})"
        lines.append(line)
    if run.error is not None:
        lines.append(f"Error: {run.error.kind.value}: {run.error.message}")
    if run.fallback_recommended:
        lines.append("Decomposition failed; re-issue the prompt to a single agent.")
    if run.synthesis_result:
        lines.extend(["", run.synthesis_result])
    return lines


@contextmanager
def _state_store(settings: Settings) -> Iterator[AgentStateStore]:
    store = SqliteKeyValueStore(
        settings.db_path,
        busy_timeout_ms=settings.persistence.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield AgentStateStore(store)
    finally:
        store.close()
