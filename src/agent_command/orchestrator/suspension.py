"""Capture and restore everything a suspended agent needs to continue."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from agent_command.errors import ResumeIntegrityError
from agent_command.lifecycle.models import LifecycleEvent
from agent_command.models import Agent, AgentTask
from agent_command.orchestrator.models import PendingInteraction, ResumeContext, SuspensionReason
from agent_command.persistence.state_store import AgentStateStore

logger = logging.getLogger(__name__)

OrchestrationLookup = Callable[[str, int | None], bool]

_EVENTS_WHILE_AWAITING = frozenset({LifecycleEvent.CANCEL})


@dataclass(slots=True)
class ResumeOutcome:
    """Agent and task rebuilt from a resume context."""

    agent: Agent
    task: AgentTask
    pending_interaction: PendingInteraction | None
    context: ResumeContext
    orphaned: bool = False


class SuspensionManager:
    """Writes resume contexts and gates agents that still owe the user an answer."""

    def __init__(self, state_store: AgentStateStore, *, working_directory: str = ".") -> None:
        self.state_store = state_store
        self.working_directory = working_directory
        self._awaiting: dict[str, PendingInteraction] = {}
        self._lock = threading.Lock()

    def suspend(  # noqa: PLR0913
        self,
        agent: Agent,
        task: AgentTask,
        reason: SuspensionReason,
        pending_interaction: PendingInteraction | None = None,
        *,
        session_id: str | None = None,
        tool_call_count: int = 0,
        progress_estimate: float = 0.0,
        team_agent_ids: list[str] | None = None,
        orchestration_id: str | None = None,
        orchestration_task_index: int | None = None,
        working_directory: str | None = None,
    ) -> ResumeContext:
        """Persist a self-sufficient resume context keyed by agent id."""

        context = ResumeContext(
            agent=agent,
            task=task,
            suspension_reason=reason,
            session_id=session_id or agent.session_id or task.session_id,
            working_directory=working_directory or self.working_directory,
            tool_call_count=tool_call_count,
            progress_estimate=progress_estimate,
            commander_id=agent.commander_id,
            team_agent_ids=list(team_agent_ids or task.team_agent_ids),
            orchestration_id=orchestration_id,
            orchestration_task_index=orchestration_task_index,
            pending_interaction=pending_interaction,
        )
        self.state_store.save_resume_context(context)
        if pending_interaction is not None:
            with self._lock:
                self._awaiting[agent.id] = pending_interaction
        logger.info(
            "Suspended agent %s (%s) on task %s",
            agent.id,
            reason.value,
            task.id,
        )
        return context

    def resume(
        self,
        context: ResumeContext,
        *,
        orchestration_exists: OrchestrationLookup | None = None,
    ) -> ResumeOutcome:
        """Rebuild agent and task; the stored context stays until the agent runs again."""

        orphaned = False
        if context.orchestration_id is not None and orchestration_exists is not None:
            if not orchestration_exists(context.orchestration_id, context.orchestration_task_index):
                error = ResumeIntegrityError(
                    "Resume context references a run that no longer exists.",
                    agent_id=context.agent_id,
                    orchestration_id=context.orchestration_id,
                    index=context.orchestration_task_index,
                )
                logger.warning("Agent %s resumes orphaned: %s", context.agent_id, error)
                orphaned = True
                context.orchestration_id = None
                context.orchestration_task_index = None

        agent = context.agent
        task = context.task
        agent.session_id = context.session_id
        agent.assigned_task_id = task.id
        task.session_id = context.session_id
        task.progress = context.progress_estimate

        if context.pending_interaction is not None:
            with self._lock:
                self._awaiting[agent.id] = context.pending_interaction
        return ResumeOutcome(
            agent=agent,
            task=task,
            pending_interaction=context.pending_interaction,
            context=context,
            orphaned=orphaned,
        )

    def awaiting_interaction(self, agent_id: str) -> PendingInteraction | None:
        with self._lock:
            return self._awaiting.get(agent_id)

    def accepts(self, agent_id: str, event: LifecycleEvent) -> bool:
        """False while the agent has an unanswered interaction, except for cancellation."""

        with self._lock:
            if agent_id not in self._awaiting:
                return True
        return event in _EVENTS_WHILE_AWAITING

    def answer(self, agent_id: str) -> PendingInteraction | None:
        """Release the gate for an agent whose interaction is being answered."""

        with self._lock:
            return self._awaiting.pop(agent_id, None)

    def hold(self, agent_id: str, interaction: PendingInteraction) -> None:
        with self._lock:
            self._awaiting[agent_id] = interaction

    def complete_resume(self, agent_id: str) -> None:
        """Agent left the suspended state; its context is no longer needed."""

        with self._lock:
            self._awaiting.pop(agent_id, None)
        self.state_store.delete_resume_context(agent_id)
        logger.debug("Deleted resume context for agent %s", agent_id)

    def load(self, agent_id: str) -> ResumeContext | None:
        return self.state_store.load_resume_context(agent_id)

    def pending_resumes(self) -> list[ResumeContext]:
        return self.state_store.pending_resumes()
