"""Domain models for decomposition runs, the sub-task queue and suspension."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from agent_command.errors import ErrorKind, SubTaskError
from agent_command.models import Agent, AgentTask
from agent_command.persistence.common import from_iso, optional_from_iso, to_iso, utc_now


class OrchestrationPhase(str, Enum):
    DECOMPOSING = "decomposing"
    EXECUTING = "executing"
    SYNTHESIZING = "synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (OrchestrationPhase.COMPLETED, OrchestrationPhase.FAILED)


class SubTaskStatus(str, Enum):
    """In-memory execution status of one decomposed sub-task."""

    PENDING = "pending"
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SubTaskStatus.COMPLETED, SubTaskStatus.FAILED)


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def parse(cls, raw: object) -> Complexity:
        if isinstance(raw, str):
            try:
                return cls(raw.strip().lower())
            except ValueError:
                pass
        return cls.MEDIUM


@dataclass(slots=True)
class DecomposedSubTask:
    """One entry of a validated decomposition response."""

    title: str
    prompt: str
    dependencies: list[int] = field(default_factory=list)
    can_parallel: bool = True
    estimated_complexity: Complexity = Complexity.MEDIUM


@dataclass(slots=True)
class OrchestratedSubTask:
    """In-memory execution view of one sub-task."""

    index: int
    title: str
    prompt: str
    dependencies: list[int] = field(default_factory=list)
    can_parallel: bool = True
    estimated_complexity: Complexity = Complexity.MEDIUM
    wave: int = 0
    status: SubTaskStatus = SubTaskStatus.PENDING
    agent_id: str | None = None
    task_id: str | None = None
    result: str | None = None
    error: SubTaskError | None = None
    retry_count: int = 0
    retry_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class OrchestrationState:
    """One decomposition run; owned by the orchestration engine."""

    id: str
    commander_id: str
    original_prompt: str
    phase: OrchestrationPhase = OrchestrationPhase.DECOMPOSING
    sub_tasks: list[OrchestratedSubTask] = field(default_factory=list)
    current_wave: int = 0
    synthesis_result: str | None = None
    error: SubTaskError | None = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @classmethod
    def create(cls, *, commander_id: str, prompt: str) -> OrchestrationState:
        return cls(id=str(uuid4()), commander_id=commander_id, original_prompt=prompt)

    @property
    def completed_count(self) -> int:
        return sum(1 for task in self.sub_tasks if task.status is SubTaskStatus.COMPLETED)

    @property
    def failed_count(self) -> int:
        return sum(1 for task in self.sub_tasks if task.status is SubTaskStatus.FAILED)

    @property
    def progress(self) -> float:
        if not self.sub_tasks:
            return 0.0
        return self.completed_count / len(self.sub_tasks)

    @property
    def is_finished(self) -> bool:
        return self.phase.is_finished

    @property
    def wave_count(self) -> int:
        if not self.sub_tasks:
            return 0
        return max(task.wave for task in self.sub_tasks) + 1

    @property
    def fallback_recommended(self) -> bool:
        """Run failed before any sub-task executed; re-issue the prompt to a single agent."""

        return (
            self.phase is OrchestrationPhase.FAILED
            and self.error is not None
            and self.error.kind in (ErrorKind.DECOMPOSITION, ErrorKind.DEPENDENCY_GRAPH)
        )

    def sub_task(self, index: int) -> OrchestratedSubTask | None:
        for task in self.sub_tasks:
            if task.index == index:
                return task
        return None

    def header(self) -> dict[str, Any]:
        """Persisted run header; sub-task state lives in the queue."""

        return {
            "id": self.id,
            "commander_id": self.commander_id,
            "original_prompt": self.original_prompt,
            "phase": self.phase.value,
            "current_wave": self.current_wave,
            "synthesis_result": self.synthesis_result,
            "error": self.error.to_dict() if self.error is not None else None,
            "created_at": to_iso(self.created_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_header(cls, raw: object) -> OrchestrationState:
        if not isinstance(raw, dict):
            raise TypeError("orchestration header must be an object")
        run_id = raw.get("id")
        commander_id = raw.get("commander_id")
        prompt = raw.get("original_prompt")
        if not isinstance(run_id, str) or not isinstance(commander_id, str):
            raise ValueError("orchestration header requires id and commander_id strings")
        if not isinstance(prompt, str):
            raise TypeError("orchestration.original_prompt must be a string")
        error = raw.get("error")
        return cls(
            id=run_id,
            commander_id=commander_id,
            original_prompt=prompt,
            phase=OrchestrationPhase(raw.get("phase", OrchestrationPhase.EXECUTING.value)),
            current_wave=int(raw.get("current_wave", 0)),
            synthesis_result=raw.get("synthesis_result"),
            error=SubTaskError.from_dict(error) if error is not None else None,
            created_at=optional_from_iso(raw.get("created_at")) or utc_now(),
            completed_at=optional_from_iso(raw.get("completed_at")),
        )


class QueueItemStatus(str, Enum):
    """Durable queue item status."""

    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueItemStatus.COMPLETED, QueueItemStatus.FAILED)


@dataclass(slots=True)
class SubAgentTaskQueueItem:
    """Durable counterpart of ``OrchestratedSubTask``."""

    commander_id: str
    orchestration_id: str
    task_index: int
    title: str
    prompt: str
    dependencies: list[int] = field(default_factory=list)
    can_parallel: bool = True
    estimated_complexity: Complexity = Complexity.MEDIUM
    id: str = field(default_factory=lambda: str(uuid4()))
    agent_id: str | None = None
    session_id: str | None = None
    status: QueueItemStatus = QueueItemStatus.PENDING
    retry_count: int = 0
    result: str | None = None
    error: SubTaskError | None = None
    enqueued_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    suspended_at: datetime | None = None
    completed_at: datetime | None = None

    def can_retry(self, max_retries: int) -> bool:
        return self.status is QueueItemStatus.FAILED and self.retry_count < max_retries

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "commander_id": self.commander_id,
            "orchestration_id": self.orchestration_id,
            "task_index": self.task_index,
            "title": self.title,
            "prompt": self.prompt,
            "dependencies": list(self.dependencies),
            "can_parallel": self.can_parallel,
            "estimated_complexity": self.estimated_complexity.value,
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "result": self.result,
            "error": self.error.to_dict() if self.error is not None else None,
            "enqueued_at": to_iso(self.enqueued_at),
            "started_at": to_iso(self.started_at),
            "suspended_at": to_iso(self.suspended_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, raw: object) -> SubAgentTaskQueueItem:
        if not isinstance(raw, dict):
            raise TypeError("queue item must be an object")
        index = raw.get("task_index")
        if not isinstance(index, int) or index < 0:
            raise ValueError("queue_item.task_index must be a non-negative integer")
        dependencies = raw.get("dependencies", [])
        if not isinstance(dependencies, list) or not all(
            isinstance(value, int) for value in dependencies
        ):
            raise TypeError("queue_item.dependencies must be an array of integers")
        error = raw.get("error")
        return cls(
            id=str(raw.get("id") or uuid4()),
            commander_id=str(raw["commander_id"]),
            orchestration_id=str(raw["orchestration_id"]),
            task_index=index,
            title=str(raw.get("title", "")),
            prompt=str(raw.get("prompt", "")),
            dependencies=dependencies,
            can_parallel=bool(raw.get("can_parallel", True)),
            estimated_complexity=Complexity.parse(raw.get("estimated_complexity")),
            agent_id=raw.get("agent_id"),
            session_id=raw.get("session_id"),
            status=QueueItemStatus(raw.get("status", QueueItemStatus.PENDING.value)),
            retry_count=int(raw.get("retry_count", 0)),
            result=raw.get("result"),
            error=SubTaskError.from_dict(error) if error is not None else None,
            enqueued_at=optional_from_iso(raw.get("enqueued_at")) or utc_now(),
            started_at=optional_from_iso(raw.get("started_at")),
            suspended_at=optional_from_iso(raw.get("suspended_at")),
            completed_at=optional_from_iso(raw.get("completed_at")),
        )


class SuspensionReason(str, Enum):
    USER_QUESTION = "user_question"
    PLAN_REVIEW = "plan_review"
    PERMISSION_DENIED = "permission_denied"
    USER_PAUSED = "user_paused"
    APP_TERMINATED = "app_terminated"
    PROCESS_TIMEOUT = "process_timeout"


class InteractionType(str, Enum):
    QUESTION = "question"
    PLAN_REVIEW = "plan_review"
    PERMISSION_REQUEST = "permission_request"


@dataclass(slots=True)
class PendingInteraction:
    """What the user must answer before a suspended agent may continue."""

    type: InteractionType
    input_json: str
    session_id: str | None = None
    tool_use_id: str | None = None
    received_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "input_json": self.input_json,
            "session_id": self.session_id,
            "tool_use_id": self.tool_use_id,
            "received_at": to_iso(self.received_at),
        }

    @classmethod
    def from_dict(cls, raw: object) -> PendingInteraction:
        if not isinstance(raw, dict):
            raise TypeError("pending interaction must be an object")
        input_json = raw.get("input_json")
        if not isinstance(input_json, str):
            raise TypeError("pending_interaction.input_json must be a string")
        return cls(
            type=InteractionType(raw.get("type")),
            input_json=input_json,
            session_id=raw.get("session_id"),
            tool_use_id=raw.get("tool_use_id"),
            received_at=optional_from_iso(raw.get("received_at")) or utc_now(),
        )


@dataclass(slots=True)
class ResumeContext:
    """Self-sufficient snapshot for resuming one suspended agent after a restart."""

    agent: Agent
    task: AgentTask
    suspension_reason: SuspensionReason
    session_id: str | None = None
    working_directory: str = "."
    suspended_at: datetime = field(default_factory=utc_now)
    tool_call_count: int = 0
    progress_estimate: float = 0.0
    commander_id: str | None = None
    team_agent_ids: list[str] = field(default_factory=list)
    orchestration_id: str | None = None
    orchestration_task_index: int | None = None
    pending_interaction: PendingInteraction | None = None

    @property
    def agent_id(self) -> str:
        return self.agent.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent.to_dict(),
            "task": self.task.to_dict(),
            "suspension_reason": self.suspension_reason.value,
            "session_id": self.session_id,
            "working_directory": self.working_directory,
            "suspended_at": to_iso(self.suspended_at),
            "tool_call_count": self.tool_call_count,
            "progress_estimate": self.progress_estimate,
            "commander_id": self.commander_id,
            "team_agent_ids": list(self.team_agent_ids),
            "orchestration_id": self.orchestration_id,
            "orchestration_task_index": self.orchestration_task_index,
            "pending_interaction": (
                self.pending_interaction.to_dict()
                if self.pending_interaction is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, raw: object) -> ResumeContext:
        if not isinstance(raw, dict):
            raise TypeError("resume context must be an object")
        suspended_at = raw.get("suspended_at")
        if not isinstance(suspended_at, str):
            raise TypeError("resume_context.suspended_at must be an ISO string")
        interaction = raw.get("pending_interaction")
        task_index = raw.get("orchestration_task_index")
        if task_index is not None and not isinstance(task_index, int):
            raise TypeError("resume_context.orchestration_task_index must be an integer")
        return cls(
            agent=Agent.from_dict(raw.get("agent")),
            task=AgentTask.from_dict(raw.get("task")),
            suspension_reason=SuspensionReason(raw.get("suspension_reason")),
            session_id=raw.get("session_id"),
            working_directory=str(raw.get("working_directory", ".")),
            suspended_at=from_iso(suspended_at),
            tool_call_count=int(raw.get("tool_call_count", 0)),
            progress_estimate=float(raw.get("progress_estimate", 0.0)),
            commander_id=raw.get("commander_id"),
            team_agent_ids=list(raw.get("team_agent_ids", [])),
            orchestration_id=raw.get("orchestration_id"),
            orchestration_task_index=task_index,
            pending_interaction=(
                PendingInteraction.from_dict(interaction) if interaction is not None else None
            ),
        )


@dataclass(slots=True)
class AgentStateSnapshot:
    """Whole-engine snapshot written periodically and on termination."""

    app_version: str
    agents: list[Agent] = field(default_factory=list)
    tasks: list[AgentTask] = field(default_factory=list)
    resume_contexts: list[ResumeContext] = field(default_factory=list)
    saved_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "saved_at": to_iso(self.saved_at),
            "app_version": self.app_version,
            "agents": [agent.to_dict() for agent in self.agents],
            "tasks": [task.to_dict() for task in self.tasks],
            "resume_contexts": [context.to_dict() for context in self.resume_contexts],
        }

    @classmethod
    def from_dict(cls, raw: object) -> AgentStateSnapshot:
        if not isinstance(raw, dict):
            raise TypeError("snapshot must be an object")
        app_version = raw.get("app_version")
        if not isinstance(app_version, str):
            raise TypeError("snapshot.app_version must be a string")
        for key in ("agents", "tasks", "resume_contexts"):
            if not isinstance(raw.get(key, []), list):
                raise TypeError(f"snapshot.{key} must be an array")
        return cls(
            app_version=app_version,
            agents=[Agent.from_dict(item) for item in raw.get("agents", [])],
            tasks=[AgentTask.from_dict(item) for item in raw.get("tasks", [])],
            resume_contexts=[
                ResumeContext.from_dict(item) for item in raw.get("resume_contexts", [])
            ],
            saved_at=optional_from_iso(raw.get("saved_at")) or utc_now(),
        )
