"""Agent identity and task records shared across the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from agent_command.persistence.common import optional_from_iso, to_iso, utc_now


class AgentRole(str, Enum):
    COMMANDER = "commander"
    DEVELOPER = "developer"
    RESEARCHER = "researcher"
    REVIEWER = "reviewer"
    TESTER = "tester"
    DESIGNER = "designer"


class ClaudeModel(str, Enum):
    """Model tiers understood by the CLI ``--model`` flag."""

    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class Agent:
    """One agent instance. Lifecycle state lives in the lifecycle manager, not here."""

    id: str
    name: str
    role: AgentRole
    model: ClaudeModel = ClaudeModel.SONNET
    personality: str = "focused"
    appearance: dict[str, Any] = field(default_factory=dict)
    commander_id: str | None = None
    sub_agent_ids: list[str] = field(default_factory=list)
    assigned_task_id: str | None = None
    session_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        *,
        name: str,
        role: AgentRole,
        model: ClaudeModel = ClaudeModel.SONNET,
        commander_id: str | None = None,
    ) -> Agent:
        return cls(id=str(uuid4()), name=name, role=role, model=model, commander_id=commander_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role.value,
            "model": self.model.value,
            "personality": self.personality,
            "appearance": dict(self.appearance),
            "commander_id": self.commander_id,
            "sub_agent_ids": list(self.sub_agent_ids),
            "assigned_task_id": self.assigned_task_id,
            "session_id": self.session_id,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, raw: object) -> Agent:
        if not isinstance(raw, dict):
            raise TypeError("agent must be an object")
        agent_id = raw.get("id")
        name = raw.get("name")
        if not isinstance(agent_id, str) or not agent_id:
            raise ValueError("agent.id must be a non-empty string")
        if not isinstance(name, str):
            raise TypeError("agent.name must be a string")
        appearance = raw.get("appearance", {})
        if not isinstance(appearance, dict):
            raise TypeError("agent.appearance must be an object")
        return cls(
            id=agent_id,
            name=name,
            role=AgentRole(raw.get("role")),
            model=ClaudeModel(raw.get("model", ClaudeModel.SONNET.value)),
            personality=str(raw.get("personality", "focused")),
            appearance=appearance,
            commander_id=raw.get("commander_id"),
            sub_agent_ids=list(raw.get("sub_agent_ids", [])),
            assigned_task_id=raw.get("assigned_task_id"),
            session_id=raw.get("session_id"),
            created_at=optional_from_iso(raw.get("created_at")) or utc_now(),
        )


@dataclass(slots=True)
class AgentTask:
    """Unit of work handed to one agent's CLI process."""

    id: str
    title: str
    prompt: str
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent_id: str | None = None
    team_agent_ids: list[str] = field(default_factory=list)
    progress: float = 0.0
    result: str | None = None
    error: str | None = None
    session_id: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @classmethod
    def create(cls, *, title: str, prompt: str, assigned_agent_id: str | None = None) -> AgentTask:
        return cls(id=str(uuid4()), title=title, prompt=prompt, assigned_agent_id=assigned_agent_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "prompt": self.prompt,
            "status": self.status.value,
            "assigned_agent_id": self.assigned_agent_id,
            "team_agent_ids": list(self.team_agent_ids),
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "session_id": self.session_id,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "created_at": to_iso(self.created_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, raw: object) -> AgentTask:
        if not isinstance(raw, dict):
            raise TypeError("task must be an object")
        task_id = raw.get("id")
        title = raw.get("title")
        prompt = raw.get("prompt")
        if not isinstance(task_id, str) or not task_id:
            raise ValueError("task.id must be a non-empty string")
        if not isinstance(title, str) or not isinstance(prompt, str):
            raise TypeError("task.title and task.prompt must be strings")
        return cls(
            id=task_id,
            title=title,
            prompt=prompt,
            status=TaskStatus(raw.get("status", TaskStatus.PENDING.value)),
            assigned_agent_id=raw.get("assigned_agent_id"),
            team_agent_ids=list(raw.get("team_agent_ids", [])),
            progress=float(raw.get("progress", 0.0)),
            result=raw.get("result"),
            error=raw.get("error"),
            session_id=raw.get("session_id"),
            cost_usd=raw.get("cost_usd"),
            duration_ms=raw.get("duration_ms"),
            created_at=optional_from_iso(raw.get("created_at")) or utc_now(),
            completed_at=optional_from_iso(raw.get("completed_at")),
        )
