"""Process manager interface consumed by the orchestration engine."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agent_command.backend.stream_events import StreamEvent


@dataclass(slots=True)
class CliRunRequest:
    """Inputs required to run one CLI agent process.

    ``run_id`` keys the process; every attempt at a task gets a fresh one.
    """

    run_id: str
    task_id: str
    agent_id: str
    prompt: str
    model: str
    working_directory: Path
    resume_session_id: str | None = None
    hang_timeout_seconds: float = 300.0


EventCallback = Callable[[str, StreamEvent], None]
"""Receives ``(run_id, event)`` on the process's reader thread."""


class ProcessManager(Protocol):
    """Spawns, streams and terminates one OS process per running task."""

    def start(self, request: CliRunRequest, on_event: EventCallback) -> None:
        """Start a process; raises ``SubprocessFailure`` when it cannot be spawned."""

    def cancel(self, run_id: str) -> bool:
        """Request termination; ``False`` when no such process is running."""

    def cancel_all(self) -> int:
        """Terminate every running process; returns how many were signalled."""

    def is_running(self, run_id: str) -> bool:
        """True while the process for ``run_id`` has not been reaped."""
