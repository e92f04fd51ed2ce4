"""Structured error taxonomy shared by lifecycle, queue and orchestration code."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Top-level error classes surfaced to callers and persisted with sub-tasks."""

    DECOMPOSITION = "decomposition"
    DEPENDENCY_GRAPH = "dependency_graph"
    SUBPROCESS_FAILURE = "subprocess_failure"
    TIMEOUT = "timeout"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    TRANSITION_VIOLATION = "transition_violation"
    RESUME_INTEGRITY = "resume_integrity"
    CANCELLED = "cancelled"
    DEPENDENCY_FAILED = "dependency_failed"
    CONFIGURATION = "configuration"
    STORAGE = "storage"


class AgentCommandError(RuntimeError):
    """Base error with a kind, a message and the ids it concerns."""

    kind: ErrorKind = ErrorKind.SUBPROCESS_FAILURE

    def __init__(self, message: str, *, kind: ErrorKind | None = None, **context: Any) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message
        self.context = {key: value for key, value in context.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "context": dict(self.context)}


class DecompositionError(AgentCommandError):
    """Decomposition response was malformed or empty."""

    kind = ErrorKind.DECOMPOSITION


class DependencyGraphError(AgentCommandError):
    """Sub-task dependencies contain a cycle, a forward reference or an unknown index."""

    kind = ErrorKind.DEPENDENCY_GRAPH


class SubprocessFailure(AgentCommandError):
    """CLI subprocess failed; ``transient`` hints whether a retry can help."""

    def __init__(self, message: str, *, transient: bool, **context: Any) -> None:
        super().__init__(message, **context)
        self.transient = transient


class ResumeIntegrityError(AgentCommandError):
    """Resume context references work that no longer exists."""

    kind = ErrorKind.RESUME_INTEGRITY


class StorageError(AgentCommandError):
    """Persisted payload could not be decoded."""

    kind = ErrorKind.STORAGE


@dataclass(slots=True)
class SubTaskError:
    """Per sub-task failure record stored on the task and its queue item."""

    kind: ErrorKind
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def is_cancellation(self) -> bool:
        return self.kind == ErrorKind.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "context": dict(self.context)}

    @classmethod
    def from_dict(cls, raw: object) -> SubTaskError:
        if not isinstance(raw, dict):
            raise TypeError("sub-task error must be an object")
        kind = raw.get("kind")
        message = raw.get("message")
        context = raw.get("context", {})
        if not isinstance(message, str):
            raise TypeError("sub-task error message must be a string")
        if not isinstance(context, dict):
            raise TypeError("sub-task error context must be an object")
        return cls(kind=ErrorKind(kind), message=message, context=context)

    @classmethod
    def from_exception(cls, error: AgentCommandError) -> SubTaskError:
        return cls(kind=error.kind, message=error.message, context=dict(error.context))

    def __str__(self) -> str:
        return self.message
