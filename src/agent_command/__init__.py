"""Agent lifecycle and task orchestration engine for CLI coding agents."""

__version__ = "0.1.0"
