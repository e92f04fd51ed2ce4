"""CLI agent process management and stream-json parsing."""

from agent_command.backend.base import CliRunRequest, EventCallback, ProcessManager
from agent_command.backend.cli_backend import CLIProcessManager

__all__ = [
    "CLIProcessManager",
    "CliRunRequest",
    "EventCallback",
    "ProcessManager",
]
