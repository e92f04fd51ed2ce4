"""Lifecycle states, events, effects and transition records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from agent_command.errors import AgentCommandError, ErrorKind
from agent_command.persistence.common import utc_now


class AgentLifecycleState(str, Enum):
    """Enumerated state of one agent instance."""

    INITIALIZING = "initializing"
    IDLE = "idle"
    WORKING = "working"
    THINKING = "thinking"
    REQUESTING_PERMISSION = "requesting_permission"
    WAITING_FOR_ANSWER = "waiting_for_answer"
    REVIEWING_PLAN = "reviewing_plan"
    SUSPENDED = "suspended"
    SUSPENDED_IDLE = "suspended_idle"
    COMPLETED = "completed"
    ERROR = "error"
    POOLED = "pooled"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"

    @property
    def is_terminal(self) -> bool:
        return self is AgentLifecycleState.DESTROYED

    @property
    def is_active(self) -> bool:
        """Mid-task; never reclaimed by pool or cleanup."""

        return self in _ACTIVE_STATES

    @property
    def is_available_for_task(self) -> bool:
        return self in _AVAILABLE_STATES

    @property
    def is_cleanup_candidate(self) -> bool:
        return self in _CLEANUP_CANDIDATE_STATES

    @property
    def is_suspended(self) -> bool:
        return self in (AgentLifecycleState.SUSPENDED, AgentLifecycleState.SUSPENDED_IDLE)

    @property
    def has_running_process(self) -> bool:
        return self in (AgentLifecycleState.WORKING, AgentLifecycleState.THINKING)


_ACTIVE_STATES = frozenset(
    {
        AgentLifecycleState.WORKING,
        AgentLifecycleState.THINKING,
        AgentLifecycleState.REQUESTING_PERMISSION,
        AgentLifecycleState.WAITING_FOR_ANSWER,
        AgentLifecycleState.REVIEWING_PLAN,
    },
)
_AVAILABLE_STATES = frozenset(
    {
        AgentLifecycleState.IDLE,
        AgentLifecycleState.POOLED,
        AgentLifecycleState.SUSPENDED_IDLE,
    },
)
_CLEANUP_CANDIDATE_STATES = frozenset(
    {
        AgentLifecycleState.COMPLETED,
        AgentLifecycleState.ERROR,
        AgentLifecycleState.SUSPENDED_IDLE,
        AgentLifecycleState.IDLE,
    },
)


class LifecycleEvent(str, Enum):
    CREATE = "create"
    RESOURCES_LOADED = "resources_loaded"
    ASSIGN_TASK = "assign_task"
    AI_REASONING = "ai_reasoning"
    TOOL_INVOKED = "tool_invoked"
    PERMISSION_NEEDED = "permission_needed"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_DENIED = "permission_denied"
    QUESTION_ASKED = "question_asked"
    ANSWER_RECEIVED = "answer_received"
    PLAN_READY = "plan_ready"
    PLAN_APPROVED = "plan_approved"
    PLAN_REJECTED = "plan_rejected"
    PROCESS_TERMINATED = "process_terminated"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    RESUME = "resume"
    CANCEL = "cancel"
    RETRY = "retry"
    TIMEOUT = "timeout"
    IDLE_TIMEOUT = "idle_timeout"
    POOL_RETURN = "pool_return"
    POOL_EVICTION = "pool_eviction"
    ASSIGN_NEW_TASK = "assign_new_task"
    RETURN_TO_POOL = "return_to_pool"
    DISBAND_SCHEDULED = "disband_scheduled"
    CLEANUP_TRIGGERED = "cleanup_triggered"
    ANIMATION_COMPLETE = "animation_complete"


class LifecycleEffect(str, Enum):
    """Side effects a transition asks its caller to perform."""

    SPAWN_PROCESS = "spawn_process"
    TERMINATE_PROCESS = "terminate_process"
    WRITE_RESUME_CONTEXT = "write_resume_context"
    DELETE_RESUME_CONTEXT = "delete_resume_context"
    RETURN_TO_POOL = "return_to_pool"
    SCHEDULE_DESTROY = "schedule_destroy"


class TransitionErrorKind(str, Enum):
    INVALID_TRANSITION = "invalid_transition"
    TERMINAL_STATE_VIOLATION = "terminal_state_violation"
    UNKNOWN_AGENT = "unknown_agent"


class TransitionError(AgentCommandError):
    """Event rejected by the current state."""

    kind = ErrorKind.TRANSITION_VIOLATION

    def __init__(
        self,
        message: str,
        *,
        error_kind: TransitionErrorKind,
        state: AgentLifecycleState | None = None,
        event: LifecycleEvent | None = None,
        agent_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            agent_id=agent_id,
            state=state.value if state is not None else None,
            event=event.value if event is not None else None,
        )
        self.error_kind = error_kind
        self.state = state
        self.event = event


@dataclass(slots=True)
class AgentLifecycleContext:
    """Facts guards look at; the current state is never part of it."""

    agent_id: str = ""
    session_id: str | None = None
    task_id: str | None = None
    pool_capacity: int = 12
    current_pool_size: int = 0
    idle_duration: float = 0.0


@dataclass(frozen=True, slots=True)
class Transition:
    """Successful transition: next state plus effects for the caller to execute."""

    agent_id: str
    from_state: AgentLifecycleState
    event: LifecycleEvent
    to_state: AgentLifecycleState
    effects: tuple[LifecycleEffect, ...] = ()

    def has_effect(self, effect: LifecycleEffect) -> bool:
        return effect in self.effects


@dataclass(slots=True)
class AgentLifecycleRecord:
    """Current state of one registered agent plus a bounded transition history."""

    agent_id: str
    state: AgentLifecycleState = AgentLifecycleState.INITIALIZING
    session_id: str | None = None
    task_id: str | None = None
    entered_at: datetime = field(default_factory=utc_now)
    history: list[Transition] = field(default_factory=list)
