"""Decomposes one prompt into sub-tasks and runs them through sub-agents in waves.

Process callbacks, retry timers and public calls all take the engine lock,
update in-memory state and collect follow-up actions: spawning and
terminating processes, writing resume contexts, persisting run headers and
notifying listeners. Queue changes are written out first. Actions run
only after the lock is released, so no process or storage I/O happens
while the lock is held.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from functools import partial
from uuid import uuid4

from agent_command.backend.base import CliRunRequest, ProcessManager
from agent_command.backend.danger import classify_tool_use
from agent_command.backend.failure_classifier import classify_failure
from agent_command.backend.stream_events import (
    AssistantText,
    ProcessExited,
    ResultEvent,
    SessionStarted,
    StreamEvent,
    ToolUse,
    progress_estimate,
)
from agent_command.config import Settings
from agent_command.errors import (
    DecompositionError,
    DependencyGraphError,
    ErrorKind,
    StorageError,
    SubprocessFailure,
    SubTaskError,
)
from agent_command.lifecycle import (
    AgentLifecycleManager,
    AgentLifecycleState,
    LifecycleEffect,
    LifecycleEvent,
    Transition,
    TransitionError,
)
from agent_command.models import Agent, AgentRole, AgentTask, ClaudeModel, TaskStatus
from agent_command.orchestrator.cleanup_policy import CleanupPolicy
from agent_command.orchestrator.decomposition import (
    compute_waves,
    parse_decomposition,
    validate_dependencies,
)
from agent_command.orchestrator.models import (
    AgentStateSnapshot,
    InteractionType,
    OrchestratedSubTask,
    OrchestrationPhase,
    OrchestrationState,
    PendingInteraction,
    QueueItemStatus,
    ResumeContext,
    SubAgentTaskQueueItem,
    SubTaskStatus,
    SuspensionReason,
)
from agent_command.orchestrator.pool import SubAgentPool
from agent_command.orchestrator.prompts import (
    build_aggregate_report,
    build_decomposition_prompt,
    build_sub_agent_prompt,
    build_synthesis_prompt,
)
from agent_command.orchestrator.resource_monitor import ResourceMonitor, process_memory_mb
from agent_command.orchestrator.retry_policy import RetryPolicy
from agent_command.orchestrator.suspension import SuspensionManager
from agent_command.orchestrator.task_queue import SubAgentTaskQueue
from agent_command.persistence.common import utc_now
from agent_command.persistence.state_store import AgentStateStore, SnapshotAutoSaver
from agent_command.persistence.store import InMemoryKeyValueStore

logger = logging.getLogger(__name__)

S = AgentLifecycleState
E = LifecycleEvent

SUB_AGENT_ROLES = (
    AgentRole.DEVELOPER,
    AgentRole.RESEARCHER,
    AgentRole.REVIEWER,
    AgentRole.TESTER,
    AgentRole.DESIGNER,
)
CONTINUE_PROMPT = "Continue the task where you left off."
PLAN_APPROVED_PROMPT = "The plan is approved. Proceed with the implementation."
PERMISSION_GRANTED_PROMPT = "Permission granted. Continue with the task."

_SIGNAL_EXIT_CODES = (-15, -9, 143, 137)
_INTERACTIVE_STATES = (S.REQUESTING_PERMISSION, S.WAITING_FOR_ANSWER, S.REVIEWING_PLAN)
_STATUS_FROM_QUEUE = {
    QueueItemStatus.PENDING: SubTaskStatus.PENDING,
    QueueItemStatus.READY: SubTaskStatus.PENDING,
    QueueItemStatus.IN_PROGRESS: SubTaskStatus.IN_PROGRESS,
    QueueItemStatus.SUSPENDED: SubTaskStatus.IN_PROGRESS,
    QueueItemStatus.COMPLETED: SubTaskStatus.COMPLETED,
    QueueItemStatus.FAILED: SubTaskStatus.FAILED,
}
_COMMANDER_ACTIVATION = {
    S.INITIALIZING: (E.RESOURCES_LOADED, E.ASSIGN_TASK),
    S.IDLE: (E.ASSIGN_TASK,),
    S.SUSPENDED_IDLE: (E.ASSIGN_TASK,),
    S.COMPLETED: (E.ASSIGN_NEW_TASK,),
    S.ERROR: (E.RETRY,),
}

Action = Callable[[], None]


class AssignmentKind(str, Enum):
    DECOMPOSITION = "decomposition"
    SUB_TASK = "sub_task"
    SYNTHESIS = "synthesis"
    STANDALONE = "standalone"


class NotificationKind(str, Enum):
    PHASE_CHANGED = "phase_changed"
    SUBTASK_UPDATED = "subtask_updated"
    INTERACTION_REQUIRED = "interaction_required"
    RUN_FINISHED = "run_finished"


@dataclass(frozen=True, slots=True)
class EngineNotification:
    kind: NotificationKind
    orchestration_id: str | None = None
    index: int | None = None
    agent_id: str | None = None
    interaction: PendingInteraction | None = None


Listener = Callable[[EngineNotification], None]


@dataclass(slots=True)
class _Assignment:
    """What an agent is working on; outlives individual processes."""

    kind: AssignmentKind
    task_id: str
    orchestration_id: str | None = None
    index: int | None = None
    tool_call_count: int = 0
    pending_interaction: PendingInteraction | None = None


@dataclass(slots=True)
class _ActiveRun:
    """One spawned process. ``finished`` runs ignore their remaining events."""

    run_id: str
    agent_id: str
    finished: bool = False
    deferred_result: ResultEvent | None = None


def _model(name: str) -> ClaudeModel:
    try:
        return ClaudeModel(name)
    except ValueError:
        return ClaudeModel.SONNET


def _in_flight(sub_task: OrchestratedSubTask) -> bool:
    if sub_task.status is SubTaskStatus.IN_PROGRESS:
        return True
    return sub_task.status is SubTaskStatus.WAITING and sub_task.retry_at is not None


def _dispatchable(sub_task: OrchestratedSubTask) -> bool:
    if sub_task.status is SubTaskStatus.PENDING:
        return True
    return sub_task.status is SubTaskStatus.WAITING and sub_task.retry_at is None


class OrchestrationEngine:
    """Owns orchestration runs, agent assignments and the processes behind them."""

    def __init__(  # noqa: PLR0913
        self,
        process_manager: ProcessManager,
        *,
        settings: Settings | None = None,
        state_store: AgentStateStore | None = None,
        retry_policy: RetryPolicy | None = None,
        cleanup_policy: CleanupPolicy | None = None,
        memory_probe: Callable[[], float] = process_memory_mb,
    ) -> None:
        self.settings = settings or Settings()
        self.process_manager = process_manager
        self.state_store = state_store or AgentStateStore(InMemoryKeyValueStore())
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings.retry)
        self.cleanup_policy = cleanup_policy or CleanupPolicy.from_settings(self.settings.cleanup)
        self.lifecycle = AgentLifecycleManager(pool_capacity=self.settings.pool.capacity)
        self.pool = SubAgentPool(
            self.lifecycle,
            capacity=self.settings.pool.capacity,
            max_per_role=self.settings.pool.max_per_role,
            ttl_seconds=self.settings.pool.ttl_seconds,
        )
        self.queue = SubAgentTaskQueue(
            self.state_store,
            max_retries=self.retry_policy.max_retries,
            write_through=False,
        )
        self.suspension = SuspensionManager(
            self.state_store,
            working_directory=str(self.settings.cli.working_directory),
        )
        self.lifecycle.set_gate(self.suspension.accepts)
        self.monitor = ResourceMonitor(
            self.lifecycle,
            self.cleanup_policy,
            pool=self.pool,
            effect_handler=self._on_cleanup_transition,
            process_count=self.running_process_count,
            memory_probe=memory_probe,
            interval_seconds=self.settings.persistence.monitor_interval_seconds,
        )
        self.autosaver = SnapshotAutoSaver(
            self.state_store,
            self.snapshot,
            interval_seconds=self.settings.persistence.auto_save_interval_seconds,
        )
        self._lock = threading.RLock()
        self._agents: dict[str, Agent] = {}
        self._tasks: dict[str, AgentTask] = {}
        self._orchestrations: dict[str, OrchestrationState] = {}
        self._finished: dict[str, threading.Event] = {}
        self._assignments: dict[str, _Assignment] = {}
        self._runs: dict[str, _ActiveRun] = {}
        self._agent_runs: dict[str, str] = {}
        self._timers: dict[tuple[str, int], threading.Timer] = {}
        self._listeners: list[Listener] = []
        self._shutting_down = False

    # -- public API -----------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def start_background(self) -> None:
        """Start the resource monitor and the snapshot auto-saver threads."""

        self.monitor.start()
        self.autosaver.start()

    def start(
        self,
        prompt: str,
        *,
        commander_id: str | None = None,
        project_context: str | None = None,
    ) -> OrchestrationState:
        """Begin a run: the commander decomposes ``prompt``; returns in ``decomposing``."""

        if not prompt.strip():
            raise ValueError("Prompt must not be empty.")
        actions: list[Action] = []
        with self._lock:
            if self._shutting_down:
                raise RuntimeError("Engine is shutting down.")
            commander = self._ensure_commander(commander_id)
            for existing in self._orchestrations.values():
                if existing.commander_id == commander.id and not existing.is_finished:
                    raise ValueError(
                        f"Commander {commander.id} already has an unfinished run {existing.id}.",
                    )
            self._activate_commander(commander, actions)
            run = OrchestrationState.create(commander_id=commander.id, prompt=prompt)
            self._orchestrations[run.id] = run
            self._finished[run.id] = threading.Event()
            decomposition_prompt = build_decomposition_prompt(
                prompt,
                max_subtasks=self.settings.orchestration.max_subtasks,
                project_context=project_context,
            )
            task = AgentTask.create(
                title="Decompose request",
                prompt=decomposition_prompt,
                assigned_agent_id=commander.id,
            )
            self._tasks[task.id] = task
            assignment = _Assignment(
                kind=AssignmentKind.DECOMPOSITION,
                task_id=task.id,
                orchestration_id=run.id,
            )
            actions.append(self._save_header_action(run))
            actions.append(self._notify_action(NotificationKind.PHASE_CHANGED, run.id))
            actions.extend(
                self._spawn(
                    commander,
                    task,
                    assignment,
                    decomposition_prompt,
                    model=self.settings.cli.decomposition_model,
                ),
            )
        logger.info("Started run %s for commander %s", run.id, commander.id)
        self._run_actions(actions)
        return run

    def wait(self, orchestration_id: str, timeout: float | None = None) -> OrchestrationState:
        """Block until the run finishes or ``timeout`` elapses; returns the live state."""

        with self._lock:
            done = self._finished[orchestration_id]
        done.wait(timeout)
        with self._lock:
            return self._orchestrations[orchestration_id]

    def orchestration(self, orchestration_id: str) -> OrchestrationState | None:
        with self._lock:
            return self._orchestrations.get(orchestration_id)

    def orchestrations(self) -> list[OrchestrationState]:
        with self._lock:
            return list(self._orchestrations.values())

    def agent(self, agent_id: str) -> Agent | None:
        with self._lock:
            return self._agents.get(agent_id)

    def task(self, task_id: str) -> AgentTask | None:
        with self._lock:
            return self._tasks.get(task_id)

    def agent_state(self, agent_id: str) -> AgentLifecycleState | None:
        return self.lifecycle.state(agent_id)

    def pending_interaction(self, agent_id: str) -> PendingInteraction | None:
        with self._lock:
            assignment = self._assignments.get(agent_id)
            if assignment is not None and assignment.pending_interaction is not None:
                return assignment.pending_interaction
        return self.suspension.awaiting_interaction(agent_id)

    def running_process_count(self) -> int:
        with self._lock:
            return len(self._runs)

    def pending_resumes(self) -> list[ResumeContext]:
        return self.suspension.pending_resumes()

    # -- user interaction -----------------------------------------------------

    def answer_question(self, agent_id: str, answer: str) -> None:
        """Deliver the user's answer and continue the agent's CLI session."""

        if not answer.strip():
            raise ValueError("Answer must not be empty.")
        actions: list[Action] = []
        with self._lock:
            agent, assignment = self._require_assignment(agent_id)
            state = self.lifecycle.state(agent_id)
            event = {
                S.WAITING_FOR_ANSWER: E.ANSWER_RECEIVED,
                S.SUSPENDED: E.RESUME,
                S.SUSPENDED_IDLE: E.ASSIGN_TASK,
            }.get(state)
            if event is None:
                raise ValueError(f"Agent {agent_id} is not waiting for an answer.")
            self._fire_releasing_gate(agent_id, event, actions)
            actions.extend(self._resume_spawn(agent, assignment, answer))
        self._run_actions(actions)

    def review_plan(self, agent_id: str, *, approved: bool, feedback: str | None = None) -> None:
        """Approve a plan (the agent proceeds) or reject it (the agent is suspended).

        A rejection with feedback resumes the session straight away with the
        feedback as the next prompt.
        """

        actions: list[Action] = []
        with self._lock:
            agent, assignment = self._require_assignment(agent_id)
            state = self.lifecycle.state(agent_id)
            if state is S.REVIEWING_PLAN:
                if approved:
                    self._fire(agent_id, E.PLAN_APPROVED, actions, strict=True)
                    actions.extend(
                        self._resume_spawn(agent, assignment, feedback or PLAN_APPROVED_PROMPT),
                    )
                else:
                    self._fire(
                        agent_id,
                        E.PLAN_REJECTED,
                        actions,
                        strict=True,
                        reason=SuspensionReason.USER_PAUSED,
                    )
                    assignment.pending_interaction = None
                    if feedback and self._fire(agent_id, E.RESUME, actions) is not None:
                        actions.extend(self._resume_spawn(agent, assignment, feedback))
            elif self._held_interaction(agent_id, state) is InteractionType.PLAN_REVIEW:
                if approved:
                    self._fire_releasing_gate(agent_id, self._resume_event(state), actions)
                    actions.extend(
                        self._resume_spawn(agent, assignment, feedback or PLAN_APPROVED_PROMPT),
                    )
                else:
                    self.suspension.answer(agent_id)
            else:
                raise ValueError(f"Agent {agent_id} has no plan awaiting review.")
        self._run_actions(actions)

    def resolve_permission(self, agent_id: str, *, granted: bool) -> None:
        actions: list[Action] = []
        with self._lock:
            agent, assignment = self._require_assignment(agent_id)
            state = self.lifecycle.state(agent_id)
            if state is S.REQUESTING_PERMISSION:
                if granted:
                    self._fire(agent_id, E.PERMISSION_GRANTED, actions, strict=True)
                    assignment.pending_interaction = None
                    run = self._runs.get(self._agent_runs.get(agent_id, ""))
                    if run is not None and not run.finished:
                        if run.deferred_result is not None:
                            deferred, run.deferred_result = run.deferred_result, None
                            actions.extend(self._apply_result(run, deferred))
                    else:
                        actions.extend(
                            self._resume_spawn(agent, assignment, PERMISSION_GRANTED_PROMPT),
                        )
                else:
                    self._fire(
                        agent_id,
                        E.PERMISSION_DENIED,
                        actions,
                        strict=True,
                        reason=SuspensionReason.PERMISSION_DENIED,
                    )
                    assignment.pending_interaction = None
            elif self._held_interaction(agent_id, state) is InteractionType.PERMISSION_REQUEST:
                if granted:
                    self._fire_releasing_gate(agent_id, self._resume_event(state), actions)
                    actions.extend(
                        self._resume_spawn(agent, assignment, PERMISSION_GRANTED_PROMPT),
                    )
                else:
                    self.suspension.answer(agent_id)
            else:
                raise ValueError(f"Agent {agent_id} is not requesting permission.")
            actions.extend(self._schedule_all())
        self._run_actions(actions)

    def resume_agent(self, agent_id: str, prompt: str | None = None) -> None:
        """Continue a suspended agent that owes the user nothing."""

        actions: list[Action] = []
        with self._lock:
            agent, assignment = self._require_assignment(agent_id)
            state = self.lifecycle.state(agent_id)
            if state is None or not state.is_suspended:
                raise ValueError(f"Agent {agent_id} is not suspended.")
            self._fire(agent_id, self._resume_event(state), actions, strict=True)
            actions.extend(self._resume_spawn(agent, assignment, prompt or CONTINUE_PROMPT))
        self._run_actions(actions)

    # -- cancellation ---------------------------------------------------------

    def cancel_agent(self, agent_id: str) -> bool:
        """Stop an agent's current work; the failure is final and never retried."""

        actions: list[Action] = []
        with self._lock:
            if self.lifecycle.state(agent_id) is None:
                raise KeyError(f"Unknown agent {agent_id}")
            if not self._cancel_agent(agent_id, actions):
                return False
            actions.extend(self._schedule_all())
        self._run_actions(actions)
        return True

    def cancel_subtask(self, orchestration_id: str, index: int) -> bool:
        actions: list[Action] = []
        with self._lock:
            run = self._orchestrations[orchestration_id]
            sub_task = run.sub_task(index)
            if sub_task is None:
                raise KeyError(f"No sub-task {index} in run {orchestration_id}")
            if run.is_finished or sub_task.status.is_terminal:
                return False
            if sub_task.status is SubTaskStatus.IN_PROGRESS and sub_task.agent_id is not None:
                if not self._cancel_agent(sub_task.agent_id, actions):
                    return False
            else:
                timer = self._timers.pop((orchestration_id, index), None)
                if timer is not None:
                    timer.cancel()
                error = SubTaskError(kind=ErrorKind.CANCELLED, message="Cancelled by user.")
                self._mark_failed(run, sub_task, error)
                actions.append(
                    self._notify_action(NotificationKind.SUBTASK_UPDATED, run.id, index=index),
                )
            actions.extend(self._schedule_all())
        self._run_actions(actions)
        return True

    def _cancel_agent(self, agent_id: str, actions: list[Action]) -> bool:
        state = self.lifecycle.state(agent_id)
        if state is None or not (state.is_active or state is S.SUSPENDED):
            return False
        if self._fire(agent_id, E.CANCEL, actions) is None:
            return False
        error = SubTaskError(
            kind=ErrorKind.CANCELLED,
            message="Cancelled by user.",
            context={"agent_id": agent_id},
        )
        actions.extend(self._on_assignment_failed(agent_id, error, retryable=False))
        logger.info("Cancelled agent %s", agent_id)
        return True

    def cancel(self, orchestration_id: str) -> OrchestrationState:
        """Fail the run: stop its agents and keep the results gathered so far."""

        actions: list[Action] = []
        with self._lock:
            run = self._orchestrations[orchestration_id]
            if run.is_finished:
                return run
            error = SubTaskError(
                kind=ErrorKind.CANCELLED,
                message="Orchestration cancelled by user.",
                context={"orchestration_id": orchestration_id},
            )
            for agent_id, assignment in list(self._assignments.items()):
                if assignment.orchestration_id != orchestration_id:
                    continue
                state = self.lifecycle.state(agent_id)
                if state is not None and (state.is_active or state is S.SUSPENDED):
                    self._fire(agent_id, E.CANCEL, actions)
                self._assignments.pop(agent_id, None)
            for sub_task in run.sub_tasks:
                if not sub_task.status.is_terminal:
                    self._mark_failed(run, sub_task, error)
            actions.extend(self._finish(run, OrchestrationPhase.FAILED, error=error))
        logger.info("Cancelled run %s", orchestration_id)
        self._run_actions(actions)
        return run

    # -- durability -----------------------------------------------------------

    def snapshot(self) -> AgentStateSnapshot:
        with self._lock:
            agents = [
                replace(agent)
                for agent_id, agent in self._agents.items()
                if agent.role is AgentRole.COMMANDER or self.lifecycle.is_registered(agent_id)
            ]
            tasks = [replace(task) for task in self._tasks.values()]
        return AgentStateSnapshot(
            app_version=self.settings.app_version,
            agents=agents,
            tasks=tasks,
            resume_contexts=self.suspension.pending_resumes(),
        )

    def shutdown(self) -> AgentStateSnapshot:
        """Suspend every active agent with a resume context, stop processes, save a snapshot."""

        self.monitor.stop()
        self.autosaver.stop(final_save=False)
        actions: list[Action] = []
        with self._lock:
            self._shutting_down = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            for agent_id in self.lifecycle.agents_in(
                S.WORKING,
                S.THINKING,
                *_INTERACTIVE_STATES,
            ):
                state = self.lifecycle.state(agent_id)
                assignment = self._assignments.get(agent_id)
                interaction = assignment.pending_interaction if assignment is not None else None
                if state is S.WAITING_FOR_ANSWER:
                    reason = SuspensionReason.USER_QUESTION
                elif state is S.REVIEWING_PLAN:
                    reason = SuspensionReason.PLAN_REVIEW
                else:
                    reason = SuspensionReason.APP_TERMINATED
                self._fire(
                    agent_id,
                    E.PROCESS_TERMINATED,
                    actions,
                    reason=reason,
                    interaction=interaction,
                )
                if assignment is not None and assignment.kind is AssignmentKind.SUB_TASK:
                    run = self._orchestrations.get(assignment.orchestration_id or "")
                    if run is not None and assignment.index is not None:
                        self.queue.mark_suspended(
                            run.commander_id,
                            assignment.index,
                            session_id=self._agents[agent_id].session_id,
                        )
            for run in self._orchestrations.values():
                actions.append(self._save_header_action(run))
        self._run_actions(actions)
        suspended = self.queue.suspend_all_queues()
        self.queue.flush_all()
        terminated = self.process_manager.cancel_all()
        snapshot = self.snapshot()
        self.state_store.save_snapshot(snapshot)
        logger.info(
            "Shutdown complete: %d resume context(s), %d queue item(s) suspended, "
            "%d process(es) terminated",
            len(snapshot.resume_contexts),
            suspended,
            terminated,
        )
        return snapshot

    def restore(self, *, auto_resume: bool = True) -> list[ResumeContext]:
        """Rebuild unfinished runs and suspended agents from the state store.

        Agents whose context carries no pending interaction are resumed
        straight away when ``auto_resume`` is set. In-progress sub-tasks
        without a resume context go back to the queue.
        """

        try:
            snapshot = self.state_store.load_snapshot()
        except StorageError as error:
            logger.warning("Ignoring unreadable snapshot: %s", error)
            snapshot = None
        contexts = self.suspension.pending_resumes()
        headers: list[OrchestrationState] = []
        for orchestration_id in self.state_store.orchestration_ids():
            try:
                header = self.state_store.load_orchestration(orchestration_id)
            except StorageError as error:
                logger.warning("Skipping unreadable run header: %s", error)
                continue
            if header is not None and not header.is_finished:
                headers.append(header)
        self.queue.load_persisted()
        stored_queues = {
            header.commander_id: self.state_store.load_queue(header.commander_id) or []
            for header in headers
            if not self.queue.items(header.commander_id)
        }

        actions: list[Action] = []
        with self._lock:
            if snapshot is not None:
                for agent in snapshot.agents:
                    if agent.role is AgentRole.COMMANDER:
                        self._agents.setdefault(agent.id, agent)
                for task in snapshot.tasks:
                    self._tasks.setdefault(task.id, task)
            runs = [
                run
                for header in headers
                if (run := self._rebuild_run(header, stored_queues, actions))
            ]

            restored: list[str] = []
            for context in contexts:
                agent_id = self._restore_agent(context)
                if agent_id is not None:
                    restored.append(agent_id)
            for run in runs:
                self._requeue_orphans(run, set(restored))
            if auto_resume:
                for agent_id in restored:
                    self._auto_resume(agent_id, actions)
            actions.extend(self._schedule_all())
        logger.info("Restored %d run(s) and %d suspended agent(s)", len(runs), len(restored))
        self._run_actions(actions)
        return contexts

    # -- process callbacks ----------------------------------------------------

    def _on_process_event(self, run_id: str, event: StreamEvent) -> None:
        with self._lock:
            actions = self._handle_event(run_id, event)
            actions.extend(self._schedule_all())
        self._run_actions(actions)

    def _handle_event(self, run_id: str, event: StreamEvent) -> list[Action]:
        run = self._runs.get(run_id)
        if run is None:
            logger.debug("Dropped %s for unknown run %s", type(event).__name__, run_id)
            return []
        current = self._agent_runs.get(run.agent_id) == run_id
        if isinstance(event, ProcessExited):
            del self._runs[run_id]
            if current:
                del self._agent_runs[run.agent_id]
            if run.finished or not current or self._shutting_down:
                return []
            return self._on_exit(run, event)
        if run.finished or not current or self._shutting_down:
            return []
        assignment = self._assignments.get(run.agent_id)
        if assignment is None:
            return []

        actions: list[Action] = []
        if isinstance(event, SessionStarted):
            self._record_session(run.agent_id, event.session_id)
        elif isinstance(event, AssistantText):
            if self._is_running(run.agent_id):
                self._fire(run.agent_id, E.AI_REASONING, actions)
        elif isinstance(event, ToolUse):
            actions.extend(self._on_tool_use(run, assignment, event))
        elif isinstance(event, ResultEvent):
            actions.extend(self._on_result(run, assignment, event))
        return actions

    def _on_tool_use(
        self,
        run: _ActiveRun,
        assignment: _Assignment,
        event: ToolUse,
    ) -> list[Action]:
        agent_id = run.agent_id
        if not self._is_running(agent_id):
            return []
        actions: list[Action] = []
        if event.is_question:
            kind, lifecycle_event = InteractionType.QUESTION, E.QUESTION_ASKED
        elif event.is_plan_ready:
            kind, lifecycle_event = InteractionType.PLAN_REVIEW, E.PLAN_READY
        elif (danger := classify_tool_use(event.tool_name, event.input_json)).dangerous:
            logger.warning("Agent %s requests a dangerous command: %s", agent_id, danger.reason)
            kind, lifecycle_event = InteractionType.PERMISSION_REQUEST, E.PERMISSION_NEEDED
        else:
            if self._fire(agent_id, E.TOOL_INVOKED, actions) is not None:
                assignment.tool_call_count += 1
                task = self._tasks.get(assignment.task_id)
                if task is not None:
                    task.progress = progress_estimate(assignment.tool_call_count)
            return actions

        interaction = PendingInteraction(
            type=kind,
            input_json=event.input_json,
            session_id=self._agents[agent_id].session_id,
            tool_use_id=event.tool_use_id,
        )
        if self._fire(agent_id, lifecycle_event, actions) is not None:
            assignment.pending_interaction = interaction
            logger.info("Agent %s is waiting for the user (%s)", agent_id, kind.value)
            actions.append(
                self._notify_action(
                    NotificationKind.INTERACTION_REQUIRED,
                    assignment.orchestration_id,
                    index=assignment.index,
                    agent_id=agent_id,
                    interaction=interaction,
                ),
            )
        return actions

    def _on_result(
        self,
        run: _ActiveRun,
        assignment: _Assignment,
        event: ResultEvent,
    ) -> list[Action]:
        if event.session_id:
            self._record_session(run.agent_id, event.session_id)
        task = self._tasks.get(assignment.task_id)
        if task is not None:
            task.cost_usd = event.cost_usd
            task.duration_ms = event.duration_ms
        state = self.lifecycle.state(run.agent_id)
        if state is S.REQUESTING_PERMISSION:
            run.deferred_result = event
            return []
        if state is None or not state.has_running_process:
            logger.debug("Ignoring result for agent %s while %s", run.agent_id, state)
            return []
        return self._apply_result(run, event)

    def _apply_result(self, run: _ActiveRun, event: ResultEvent) -> list[Action]:
        actions: list[Action] = []
        if not event.is_error:
            if self._fire(run.agent_id, E.TASK_COMPLETED, actions) is None:
                return actions
            run.finished = True
            actions.extend(self._on_assignment_completed(run.agent_id, event.result))
            return actions

        text = event.error or event.result or "Unknown error"
        classification = classify_failure(text)
        if self._fire(run.agent_id, E.TASK_FAILED, actions) is None:
            return actions
        run.finished = True
        error = classification.to_error(text, agent_id=run.agent_id)
        actions.extend(
            self._on_assignment_failed(run.agent_id, error, retryable=classification.retryable),
        )
        return actions

    def _on_exit(self, run: _ActiveRun, exited: ProcessExited) -> list[Action]:
        agent_id = run.agent_id
        assignment = self._assignments.get(agent_id)
        if assignment is None:
            return []
        state = self.lifecycle.state(agent_id)
        if assignment.pending_interaction is not None and state in _INTERACTIVE_STATES:
            logger.info("Agent %s paused until the user responds", agent_id)
            return []

        actions: list[Action] = []
        if exited.timed_out:
            event = E.TIMEOUT
            text = "CLI process made no progress before the hang timeout."
            classification = classify_failure(text, timed_out=True)
        elif exited.cancelled or exited.exit_code in _SIGNAL_EXIT_CODES:
            event = E.CANCEL
            text = "CLI process was terminated."
            classification = classify_failure(text, exit_code=exited.exit_code, cancelled=True)
        elif exited.exit_code == 0:
            if self._fire(agent_id, E.TASK_COMPLETED, actions) is None:
                return actions
            actions.extend(self._on_assignment_completed(agent_id, ""))
            return actions
        else:
            event = E.TASK_FAILED
            text = exited.stderr_tail or f"CLI exited with code {exited.exit_code}."
            classification = classify_failure(text, exit_code=exited.exit_code)

        if self._fire(agent_id, event, actions) is None:
            return actions
        error = classification.to_error(text, agent_id=agent_id, exit_code=exited.exit_code)
        actions.extend(
            self._on_assignment_failed(agent_id, error, retryable=classification.retryable),
        )
        return actions

    def _start_process(self, request: CliRunRequest) -> None:
        try:
            self.process_manager.start(request, self._on_process_event)
        except SubprocessFailure as failure:
            self._on_spawn_failure(request.run_id, failure)

    def _on_spawn_failure(self, run_id: str, failure: SubprocessFailure) -> None:
        actions: list[Action] = []
        with self._lock:
            run = self._runs.pop(run_id, None)
            if run is None or run.finished:
                return
            run.finished = True
            if self._agent_runs.get(run.agent_id) == run_id:
                del self._agent_runs[run.agent_id]
            logger.warning("Could not start CLI for agent %s: %s", run.agent_id, failure)
            if self._fire(run.agent_id, E.TASK_FAILED, actions) is not None:
                actions.extend(
                    self._on_assignment_failed(
                        run.agent_id,
                        SubTaskError.from_exception(failure),
                        retryable=failure.transient,
                    ),
                )
            actions.extend(self._schedule_all())
        self._run_actions(actions)

    def _on_cleanup_transition(self, result: Transition) -> None:
        actions: list[Action] = []
        with self._lock:
            self._collect_effects(result, actions)
            actions.extend(self._schedule_all())
        self._run_actions(actions)

    # -- assignment outcomes --------------------------------------------------

    def _on_assignment_completed(self, agent_id: str, text: str) -> list[Action]:
        assignment = self._assignments.pop(agent_id, None)
        if assignment is None:
            return []
        task = self._tasks.get(assignment.task_id)
        if task is not None:
            task.status = TaskStatus.COMPLETED
            task.result = text
            task.progress = 1.0
            task.completed_at = utc_now()
        run = self._orchestrations.get(assignment.orchestration_id or "")

        actions: list[Action] = []
        if assignment.kind is AssignmentKind.DECOMPOSITION:
            if run is not None:
                actions.extend(self._on_decomposed(run, text))
            return actions
        if assignment.kind is AssignmentKind.SYNTHESIS:
            if run is not None and not run.is_finished:
                run.synthesis_result = text.strip() or self._aggregate(run)
                actions.extend(self._finish(run, OrchestrationPhase.COMPLETED))
            return actions

        self._release(agent_id, actions)
        if run is None or assignment.index is None:
            return actions
        sub_task = run.sub_task(assignment.index)
        if sub_task is None or run.is_finished or sub_task.status is not SubTaskStatus.IN_PROGRESS:
            return actions
        self.queue.mark_completed(run.commander_id, sub_task.index, text)
        sub_task.status = SubTaskStatus.COMPLETED
        sub_task.result = text
        sub_task.error = None
        sub_task.completed_at = utc_now()
        logger.info("Sub-task %d of run %s completed", sub_task.index, run.id)
        actions.append(
            self._notify_action(NotificationKind.SUBTASK_UPDATED, run.id, index=sub_task.index),
        )
        return actions

    def _on_assignment_failed(
        self,
        agent_id: str,
        error: SubTaskError,
        *,
        retryable: bool,
    ) -> list[Action]:
        assignment = self._assignments.pop(agent_id, None)
        if assignment is None:
            return []
        task = self._tasks.get(assignment.task_id)
        if task is not None:
            task.status = TaskStatus.FAILED
            task.error = error.message
            task.completed_at = utc_now()
        run = self._orchestrations.get(assignment.orchestration_id or "")
        if run is None or run.is_finished:
            return []

        if assignment.kind is AssignmentKind.DECOMPOSITION:
            if not error.is_cancellation:
                error = SubTaskError(
                    kind=ErrorKind.DECOMPOSITION,
                    message=f"Decomposition run failed: {error.message}",
                    context=dict(error.context),
                )
            return self._finish(run, OrchestrationPhase.FAILED, error=error)
        if assignment.kind is AssignmentKind.SYNTHESIS:
            logger.warning(
                "Synthesis for run %s failed (%s); using the aggregate report",
                run.id,
                error.message,
            )
            run.synthesis_result = self._aggregate(run)
            return self._finish(run, OrchestrationPhase.COMPLETED)
        if assignment.index is None:
            return []
        sub_task = run.sub_task(assignment.index)
        if sub_task is None or sub_task.status.is_terminal:
            return []
        return self._fail_sub_task(run, sub_task, error, retryable=retryable)

    def _fail_sub_task(
        self,
        run: OrchestrationState,
        sub_task: OrchestratedSubTask,
        error: SubTaskError,
        *,
        retryable: bool,
    ) -> list[Action]:
        self.queue.mark_failed(run.commander_id, sub_task.index, error)
        sub_task.error = error
        item = self.queue.item(run.commander_id, sub_task.index)
        notify = self._notify_action(
            NotificationKind.SUBTASK_UPDATED,
            run.id,
            index=sub_task.index,
        )
        if (
            retryable
            and not error.is_cancellation
            and item is not None
            and self.queue.can_retry(item)
            and self.retry_policy.should_retry(sub_task.retry_count, error.message)
        ):
            delay = self.retry_policy.delay(sub_task.retry_count)
            sub_task.status = SubTaskStatus.WAITING
            sub_task.retry_at = utc_now() + timedelta(seconds=delay)
            logger.warning(
                "Sub-task %d of run %s failed (%s); retry %d/%d in %.1fs",
                sub_task.index,
                run.id,
                error.message,
                sub_task.retry_count + 1,
                self.retry_policy.max_retries,
                delay,
            )
            return [partial(self._start_retry_timer, run.id, sub_task.index, delay), notify]

        sub_task.status = SubTaskStatus.FAILED
        sub_task.completed_at = utc_now()
        logger.warning(
            "Sub-task %d of run %s failed permanently: %s",
            sub_task.index,
            run.id,
            error.message,
        )
        return [notify]

    def _start_retry_timer(self, orchestration_id: str, index: int, delay: float) -> None:
        timer = threading.Timer(delay, self._retry_sub_task, args=(orchestration_id, index))
        timer.daemon = True
        with self._lock:
            if self._shutting_down:
                return
            self._timers[(orchestration_id, index)] = timer
        timer.start()

    def _retry_sub_task(self, orchestration_id: str, index: int) -> None:
        actions: list[Action] = []
        with self._lock:
            self._timers.pop((orchestration_id, index), None)
            run = self._orchestrations.get(orchestration_id)
            if run is None or run.is_finished or self._shutting_down:
                return
            sub_task = run.sub_task(index)
            if sub_task is None or sub_task.status is not SubTaskStatus.WAITING:
                return
            retried = self.queue.retry(run.commander_id, index)
            if retried is None:
                sub_task.status = SubTaskStatus.FAILED
                sub_task.completed_at = utc_now()
            else:
                sub_task.retry_count = retried.retry_count
                sub_task.retry_at = None
                sub_task.status = SubTaskStatus.PENDING
                logger.info("Retrying sub-task %d of run %s", index, orchestration_id)
            actions.extend(self._schedule_all())
        self._run_actions(actions)

    def _on_decomposed(self, run: OrchestrationState, text: str) -> list[Action]:
        if run.is_finished:
            return []
        max_subtasks = self.settings.orchestration.max_subtasks
        try:
            subtasks = parse_decomposition(text, max_subtasks=max_subtasks)
            validate_dependencies(subtasks)
            waves = compute_waves([subtask.dependencies for subtask in subtasks])
        except (DecompositionError, DependencyGraphError) as error:
            logger.warning("Decomposition of run %s rejected: %s", run.id, error)
            return self._finish(
                run,
                OrchestrationPhase.FAILED,
                error=SubTaskError.from_exception(error),
            )
        try:
            self.queue.enqueue(run.commander_id, run.id, subtasks)
        except ValueError as error:
            return self._finish(
                run,
                OrchestrationPhase.FAILED,
                error=SubTaskError(kind=ErrorKind.CONFIGURATION, message=str(error)),
            )
        run.sub_tasks = [
            OrchestratedSubTask(
                index=index,
                title=subtask.title,
                prompt=subtask.prompt,
                dependencies=list(subtask.dependencies),
                can_parallel=subtask.can_parallel,
                estimated_complexity=subtask.estimated_complexity,
                wave=waves[index],
            )
            for index, subtask in enumerate(subtasks)
        ]
        run.phase = OrchestrationPhase.EXECUTING
        logger.info(
            "Run %s decomposed into %d sub-task(s) across %d wave(s)",
            run.id,
            len(run.sub_tasks),
            run.wave_count,
        )
        return [
            self._save_header_action(run),
            self._notify_action(NotificationKind.PHASE_CHANGED, run.id),
        ]

    # -- scheduling -----------------------------------------------------------

    def _schedule_all(self) -> list[Action]:
        if self._shutting_down:
            return []
        actions: list[Action] = []
        for run in list(self._orchestrations.values()):
            if run.phase is OrchestrationPhase.EXECUTING:
                actions.extend(self._schedule(run))
        return actions

    def _schedule(self, run: OrchestrationState) -> list[Action]:
        """Dispatch what the current wave allows; start synthesis once nothing is left."""

        actions: list[Action] = []
        self._cascade(run, actions)
        open_tasks = [sub_task for sub_task in run.sub_tasks if not sub_task.status.is_terminal]
        if not open_tasks:
            actions.extend(self._begin_synthesis(run))
            return actions

        wave = min(sub_task.wave for sub_task in open_tasks)
        if wave != run.current_wave:
            run.current_wave = wave
            actions.append(self._save_header_action(run))
        self.queue.ready_items(run.commander_id)
        wave_tasks = sorted(
            (sub_task for sub_task in run.sub_tasks if sub_task.wave == wave),
            key=lambda sub_task: sub_task.index,
        )
        busy = any(_in_flight(sub_task) for sub_task in wave_tasks)
        dispatched = False
        for sub_task in wave_tasks:
            if sub_task.status.is_terminal:
                continue
            if not sub_task.can_parallel:
                # runs alone within its wave and holds back everything after it
                if _dispatchable(sub_task) and not busy and not dispatched:
                    if self._free_process_slots() > 0:
                        actions.extend(self._dispatch(run, sub_task) or [])
                break
            if not _dispatchable(sub_task):
                continue
            if self._free_process_slots() <= 0:
                break
            dispatch_actions = self._dispatch(run, sub_task)
            if dispatch_actions is None:
                break
            actions.extend(dispatch_actions)
            dispatched = True
        return actions

    def _cascade(self, run: OrchestrationState, actions: list[Action]) -> None:
        """Fail every not-yet-started sub-task whose dependency failed for good."""

        changed = True
        while changed:
            changed = False
            for sub_task in run.sub_tasks:
                if not _dispatchable(sub_task):
                    continue
                failed = [
                    dependency
                    for dependency in sub_task.dependencies
                    if (source := run.sub_task(dependency)) is not None
                    and source.status is SubTaskStatus.FAILED
                ]
                if not failed:
                    continue
                error = SubTaskError(
                    kind=ErrorKind.DEPENDENCY_FAILED,
                    message=f"Dependency {failed[0]} failed.",
                    context={"dependency": failed[0]},
                )
                self._mark_failed(run, sub_task, error)
                actions.append(
                    self._notify_action(
                        NotificationKind.SUBTASK_UPDATED,
                        run.id,
                        index=sub_task.index,
                    ),
                )
                changed = True

    def _dispatch(
        self,
        run: OrchestrationState,
        sub_task: OrchestratedSubTask,
    ) -> list[Action] | None:
        actions: list[Action] = []
        agent = self._acquire_agent(run, sub_task, actions)
        if agent is None:
            sub_task.status = SubTaskStatus.WAITING
            return None
        start_event = E.RETRY if self.lifecycle.state(agent.id) is S.ERROR else E.ASSIGN_TASK
        if not self.queue.mark_in_progress(run.commander_id, sub_task.index, agent_id=agent.id):
            logger.warning("Sub-task %d of run %s could not be claimed", sub_task.index, run.id)
            return None

        if self._fire(agent.id, start_event, actions) is None:
            # reclaimed by cleanup between acquisition and start
            self.queue.requeue(run.commander_id, sub_task.index)
            return None
        task = self._tasks.get(sub_task.task_id or "")
        if task is None:
            task = AgentTask.create(
                title=sub_task.title,
                prompt=sub_task.prompt,
                assigned_agent_id=agent.id,
            )
            self._tasks[task.id] = task
        task.error = None
        sub_task.status = SubTaskStatus.IN_PROGRESS
        sub_task.agent_id = agent.id
        sub_task.task_id = task.id
        sub_task.retry_at = None
        sub_task.started_at = sub_task.started_at or utc_now()
        commander = self._agents.get(run.commander_id)
        if commander is not None and agent.id not in commander.sub_agent_ids:
            commander.sub_agent_ids.append(agent.id)
            task.team_agent_ids = list(commander.sub_agent_ids)

        assignment = _Assignment(
            kind=AssignmentKind.SUB_TASK,
            task_id=task.id,
            orchestration_id=run.id,
            index=sub_task.index,
        )
        prompt = build_sub_agent_prompt(
            run,
            sub_task,
            context_chars=self.settings.orchestration.dependency_context_chars,
        )
        actions.extend(self._spawn(agent, task, assignment, prompt))
        actions.append(
            self._notify_action(NotificationKind.SUBTASK_UPDATED, run.id, index=sub_task.index),
        )
        logger.info(
            "Dispatched sub-task %d of run %s to %s (wave %d)",
            sub_task.index,
            run.id,
            agent.id,
            sub_task.wave,
        )
        return actions

    def _acquire_agent(
        self,
        run: OrchestrationState,
        sub_task: OrchestratedSubTask,
        actions: list[Action],
    ) -> Agent | None:
        """Reuse the failed agent on retry, else a pooled one, else a new one if room remains.

        At the agent limit a pooled agent of another role gives up its slot.
        """

        if (
            sub_task.agent_id is not None
            and sub_task.agent_id not in self._assignments
            and self.lifecycle.state(sub_task.agent_id) is S.ERROR
        ):
            previous = self._agents.get(sub_task.agent_id)
            if previous is not None:
                return previous

        role = SUB_AGENT_ROLES[sub_task.index % len(SUB_AGENT_ROLES)]
        model = _model(self.settings.cli.default_model)
        pooled = self.pool.acquire(role, commander_id=run.commander_id, model=model)
        if pooled is not None:
            self._agents[pooled.id] = pooled
            return pooled
        limit = self.cleanup_policy.max_concurrent_agents
        if self.lifecycle.managed_agent_count >= limit and self.pool.size > 0:
            for result in self.pool.shrink_to(self.pool.size - 1):
                self._collect_effects(result, actions)
        if self.lifecycle.managed_agent_count >= limit:
            logger.debug("Agent limit reached; sub-task %d waits", sub_task.index)
            return None
        agent = Agent.create(
            name=f"{role.value.title()} {sub_task.index + 1}",
            role=role,
            model=model,
            commander_id=run.commander_id,
        )
        self._agents[agent.id] = agent
        self.lifecycle.register(agent.id)
        self._fire(agent.id, E.RESOURCES_LOADED, [], strict=True)
        return agent

    def _free_process_slots(self) -> int:
        return self.cleanup_policy.max_concurrent_processes - len(self._runs)

    def _begin_synthesis(self, run: OrchestrationState) -> list[Action]:
        if run.sub_tasks and run.failed_count == len(run.sub_tasks):
            return self._finish(
                run,
                OrchestrationPhase.FAILED,
                error=SubTaskError(
                    kind=ErrorKind.SUBPROCESS_FAILURE,
                    message="All sub-tasks failed.",
                ),
            )
        run.phase = OrchestrationPhase.SYNTHESIZING
        actions: list[Action] = [
            self._save_header_action(run),
            self._notify_action(NotificationKind.PHASE_CHANGED, run.id),
        ]
        if not self.settings.orchestration.synthesize_with_cli:
            run.synthesis_result = self._aggregate(run)
            actions.extend(self._finish(run, OrchestrationPhase.COMPLETED))
            return actions

        commander = self._ensure_commander(run.commander_id)
        try:
            self._activate_commander(commander, actions)
        except (TransitionError, ValueError) as error:
            logger.warning(
                "Commander %s cannot synthesize run %s (%s); using the aggregate report",
                commander.id,
                run.id,
                error,
            )
            run.synthesis_result = self._aggregate(run)
            actions.extend(self._finish(run, OrchestrationPhase.COMPLETED))
            return actions
        prompt = build_synthesis_prompt(
            run,
            result_chars=self.settings.orchestration.synthesis_result_chars,
        )
        task = AgentTask.create(
            title="Synthesize results",
            prompt=prompt,
            assigned_agent_id=commander.id,
        )
        self._tasks[task.id] = task
        assignment = _Assignment(
            kind=AssignmentKind.SYNTHESIS,
            task_id=task.id,
            orchestration_id=run.id,
        )
        actions.extend(self._spawn(commander, task, assignment, prompt))
        return actions

    def _finish(
        self,
        run: OrchestrationState,
        phase: OrchestrationPhase,
        *,
        error: SubTaskError | None = None,
    ) -> list[Action]:
        for key in [key for key in self._timers if key[0] == run.id]:
            self._timers.pop(key).cancel()
        run.phase = phase
        if error is not None:
            run.error = error
        run.completed_at = utc_now()
        if run.synthesis_result is None and run.sub_tasks:
            run.synthesis_result = self._aggregate(run)
        logger.info(
            "Run %s %s: %d of %d sub-task(s) completed",
            run.id,
            phase.value,
            run.completed_count,
            len(run.sub_tasks),
        )
        actions: list[Action] = [
            self._save_header_action(run),
            self._notify_action(NotificationKind.RUN_FINISHED, run.id),
        ]
        done = self._finished.get(run.id)
        if done is not None:
            actions.append(done.set)
        return actions

    def _aggregate(self, run: OrchestrationState) -> str:
        return build_aggregate_report(
            run,
            result_chars=self.settings.orchestration.synthesis_result_chars,
        )

    def _mark_failed(
        self,
        run: OrchestrationState,
        sub_task: OrchestratedSubTask,
        error: SubTaskError,
    ) -> None:
        self.queue.mark_failed(run.commander_id, sub_task.index, error)
        sub_task.status = SubTaskStatus.FAILED
        sub_task.error = error
        sub_task.retry_at = None
        sub_task.completed_at = utc_now()

    # -- agents ---------------------------------------------------------------

    def _ensure_commander(self, commander_id: str | None) -> Agent:
        if commander_id is not None and commander_id in self._agents:
            return self._agents[commander_id]
        commander = Agent(
            id=commander_id or str(uuid4()),
            name="Commander",
            role=AgentRole.COMMANDER,
            model=_model(self.settings.cli.default_model),
        )
        self._agents[commander.id] = commander
        return commander

    def _activate_commander(self, commander: Agent, actions: list[Action]) -> None:
        """Bring the commander to ``working`` from wherever it rests between tasks."""

        state = self.lifecycle.state(commander.id)
        if state is None or state.is_terminal:
            self.lifecycle.register(commander.id)
            state = S.INITIALIZING
        steps = _COMMANDER_ACTIVATION.get(state)
        if steps is None:
            raise ValueError(f"Commander {commander.id} is busy ({state.value}).")
        for event in steps:
            self._fire(commander.id, event, actions, strict=True)

    def _release(self, agent_id: str, actions: list[Action]) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return
        agent.assigned_task_id = None
        if agent.role is AgentRole.COMMANDER:
            return
        if self.cleanup_policy.enable_auto_pool_return and self.pool.release(agent):
            logger.debug("Agent %s returned to the pool", agent_id)
            return
        self._fire(agent_id, E.DISBAND_SCHEDULED, actions)

    def _destroy(self, agent_id: str, actions: list[Action]) -> None:
        if agent_id in self._assignments:
            reclaimed = SubTaskError(
                kind=ErrorKind.RESOURCE_EXHAUSTION,
                message="Agent was reclaimed while its task was suspended.",
                context={"agent_id": agent_id},
            )
            actions.extend(self._on_assignment_failed(agent_id, reclaimed, retryable=True))
        self._fire(agent_id, E.ANIMATION_COMPLETE, actions)
        self.lifecycle.forget(agent_id)
        self._assignments.pop(agent_id, None)
        self._agent_runs.pop(agent_id, None)
        agent = self._agents.get(agent_id)
        if agent is None or agent.role is AgentRole.COMMANDER:
            return
        del self._agents[agent_id]
        commander = self._agents.get(agent.commander_id or "")
        if commander is not None and agent_id in commander.sub_agent_ids:
            commander.sub_agent_ids.remove(agent_id)
        logger.debug("Agent %s destroyed", agent_id)

    def _record_session(self, agent_id: str, session_id: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is not None:
            agent.session_id = session_id
        assignment = self._assignments.get(agent_id)
        if assignment is not None and (task := self._tasks.get(assignment.task_id)) is not None:
            task.session_id = session_id
        self.lifecycle.bind(agent_id, session_id=session_id)

    def _is_running(self, agent_id: str) -> bool:
        state = self.lifecycle.state(agent_id)
        return state is not None and state.has_running_process

    def _require_assignment(self, agent_id: str) -> tuple[Agent, _Assignment]:
        agent = self._agents.get(agent_id)
        assignment = self._assignments.get(agent_id)
        if agent is None or assignment is None:
            raise ValueError(f"Agent {agent_id} has no task to continue.")
        return agent, assignment

    def _held_interaction(
        self,
        agent_id: str,
        state: AgentLifecycleState | None,
    ) -> InteractionType | None:
        if state is None or not state.is_suspended:
            return None
        held = self.suspension.awaiting_interaction(agent_id)
        return held.type if held is not None else None

    @staticmethod
    def _resume_event(state: AgentLifecycleState | None) -> LifecycleEvent:
        return E.RESUME if state is S.SUSPENDED else E.ASSIGN_TASK

    # -- lifecycle plumbing ---------------------------------------------------

    def _fire(
        self,
        agent_id: str,
        event: LifecycleEvent,
        actions: list[Action],
        *,
        strict: bool = False,
        reason: SuspensionReason | None = None,
        interaction: PendingInteraction | None = None,
    ) -> Transition | None:
        try:
            result = self.lifecycle.apply(agent_id, event)
        except TransitionError as error:
            if strict:
                raise
            logger.warning("Dropped lifecycle event for %s: %s", agent_id, error)
            return None
        self._collect_effects(result, actions, reason=reason, interaction=interaction)
        return result

    def _fire_releasing_gate(
        self,
        agent_id: str,
        event: LifecycleEvent,
        actions: list[Action],
    ) -> None:
        """Fire the event that answers a held interaction; the hold returns on failure."""

        held = self.suspension.answer(agent_id)
        try:
            self._fire(agent_id, event, actions, strict=True)
        except TransitionError:
            if held is not None:
                self.suspension.hold(agent_id, held)
            raise

    def _collect_effects(
        self,
        result: Transition,
        actions: list[Action],
        *,
        reason: SuspensionReason | None = None,
        interaction: PendingInteraction | None = None,
    ) -> None:
        # spawning and pool bookkeeping belong to whoever fired the event
        agent_id = result.agent_id
        for effect in result.effects:
            if effect is LifecycleEffect.TERMINATE_PROCESS:
                run_id = self._agent_runs.get(agent_id)
                run = self._runs.get(run_id) if run_id is not None else None
                if run is not None:
                    run.finished = True
                    actions.append(partial(self.process_manager.cancel, run.run_id))
            elif effect is LifecycleEffect.WRITE_RESUME_CONTEXT:
                write = self._suspend_action(agent_id, reason, interaction)
                if write is not None:
                    actions.append(write)
            elif effect is LifecycleEffect.DELETE_RESUME_CONTEXT:
                actions.append(partial(self.suspension.complete_resume, agent_id))
            elif effect is LifecycleEffect.SCHEDULE_DESTROY:
                self._destroy(agent_id, actions)

    def _suspend_action(
        self,
        agent_id: str,
        reason: SuspensionReason | None,
        interaction: PendingInteraction | None,
    ) -> Action | None:
        agent = self._agents.get(agent_id)
        assignment = self._assignments.get(agent_id)
        if agent is None or assignment is None:
            return None
        task = self._tasks.get(assignment.task_id)
        if task is None:
            return None
        linked = assignment.kind is AssignmentKind.SUB_TASK
        commander = self._agents.get(agent.commander_id or "")
        agent_copy = replace(agent, sub_agent_ids=list(agent.sub_agent_ids))
        task_copy = replace(task, team_agent_ids=list(task.team_agent_ids))
        suspend = partial(
            self.suspension.suspend,
            agent_copy,
            task_copy,
            reason or SuspensionReason.USER_PAUSED,
            interaction,
            session_id=agent.session_id,
            tool_call_count=assignment.tool_call_count,
            progress_estimate=task.progress,
            team_agent_ids=list(commander.sub_agent_ids) if commander is not None else [],
            orchestration_id=assignment.orchestration_id if linked else None,
            orchestration_task_index=assignment.index if linked else None,
            working_directory=str(self.settings.cli.working_directory),
        )
        if reason is not None:
            return suspend

        def write_unless_present() -> None:
            # timeouts of already suspended agents keep the original context
            if self.suspension.load(agent_id) is None:
                suspend()

        return write_unless_present

    def _spawn(
        self,
        agent: Agent,
        task: AgentTask,
        assignment: _Assignment,
        prompt: str,
        *,
        model: str | None = None,
        resume: bool = False,
    ) -> list[Action]:
        actions: list[Action] = []
        previous = self._runs.get(self._agent_runs.get(agent.id, ""))
        if previous is not None and not previous.finished:
            previous.finished = True
            actions.append(partial(self.process_manager.cancel, previous.run_id))
        run_id = str(uuid4())
        self._runs[run_id] = _ActiveRun(run_id=run_id, agent_id=agent.id)
        self._agent_runs[agent.id] = run_id
        assignment.pending_interaction = None
        self._assignments[agent.id] = assignment
        agent.assigned_task_id = task.id
        task.assigned_agent_id = agent.id
        task.status = TaskStatus.IN_PROGRESS
        self.lifecycle.bind(agent.id, task_id=task.id)
        request = CliRunRequest(
            run_id=run_id,
            task_id=task.id,
            agent_id=agent.id,
            prompt=prompt,
            model=model or agent.model.value,
            working_directory=self.settings.cli.working_directory,
            resume_session_id=agent.session_id if resume else None,
            hang_timeout_seconds=self.cleanup_policy.process_hang_timeout_seconds,
        )
        actions.append(partial(self._start_process, request))
        return actions

    def _resume_spawn(self, agent: Agent, assignment: _Assignment, prompt: str) -> list[Action]:
        task = self._tasks[assignment.task_id]
        if assignment.kind is AssignmentKind.SUB_TASK and assignment.index is not None:
            run = self._orchestrations.get(assignment.orchestration_id or "")
            if run is not None:
                self.queue.mark_in_progress(
                    run.commander_id,
                    assignment.index,
                    agent_id=agent.id,
                    session_id=agent.session_id,
                )
        return self._spawn(agent, task, assignment, prompt, resume=True)

    # -- restore --------------------------------------------------------------

    def _rebuild_run(
        self,
        header: OrchestrationState,
        stored_queues: dict[str, list[SubAgentTaskQueueItem]],
        actions: list[Action],
    ) -> OrchestrationState | None:
        self._ensure_commander(header.commander_id)
        items: list[SubAgentTaskQueueItem] = self.queue.items(header.commander_id)
        if not items:
            items = stored_queues.get(header.commander_id, [])
            if items:
                self.queue.adopt(header.commander_id, items)
        items = [item for item in items if item.orchestration_id == header.id]
        waves: list[int] = []
        if items:
            try:
                waves = compute_waves([item.dependencies for item in items])
            except DependencyGraphError as error:
                logger.warning("Persisted queue of run %s is inconsistent: %s", header.id, error)
                items = []

        self._orchestrations[header.id] = header
        self._finished[header.id] = threading.Event()
        if not items:
            if header.phase is OrchestrationPhase.DECOMPOSING:
                error = SubTaskError(
                    kind=ErrorKind.DECOMPOSITION,
                    message="Decomposition was interrupted by a restart.",
                )
            else:
                error = SubTaskError(
                    kind=ErrorKind.RESUME_INTEGRITY,
                    message="Persisted queue for the run is missing.",
                )
            actions.extend(self._finish(header, OrchestrationPhase.FAILED, error=error))
            return None

        header.sub_tasks = []
        for position, item in enumerate(items):
            sub_task = OrchestratedSubTask(
                index=item.task_index,
                title=item.title,
                prompt=item.prompt,
                dependencies=list(item.dependencies),
                can_parallel=item.can_parallel,
                estimated_complexity=item.estimated_complexity,
                wave=waves[position],
                status=_STATUS_FROM_QUEUE[item.status],
                agent_id=item.agent_id,
                result=item.result,
                error=item.error,
                retry_count=item.retry_count,
                started_at=item.started_at,
                completed_at=item.completed_at,
            )
            if (
                item.status is QueueItemStatus.FAILED
                and item.error is not None
                and item.error.context.get("retryable") is True
                and self.queue.can_retry(item)
            ):
                delay = self.retry_policy.delay(item.retry_count)
                sub_task.status = SubTaskStatus.WAITING
                sub_task.retry_at = utc_now() + timedelta(seconds=delay)
                sub_task.completed_at = None
                actions.append(partial(self._start_retry_timer, header.id, item.task_index, delay))
            header.sub_tasks.append(sub_task)
        header.phase = OrchestrationPhase.EXECUTING
        return header

    def _has_open_sub_task(self, agent_id: str, orchestration_id: str, index: int | None) -> bool:
        run = self._orchestrations.get(orchestration_id)
        if run is None or run.is_finished or index is None:
            return False
        sub_task = run.sub_task(index)
        if sub_task is None or sub_task.status.is_terminal:
            return False
        return sub_task.agent_id in (None, agent_id)

    def _restore_agent(self, context: ResumeContext) -> str | None:
        agent_id = context.agent_id
        state = self.lifecycle.state(agent_id)
        if state is not None and not state.is_terminal:
            logger.warning("Agent %s is already live; skipping its resume context", agent_id)
            return None
        outcome = self.suspension.resume(
            context,
            orchestration_exists=partial(self._has_open_sub_task, agent_id),
        )
        agent, task = outcome.agent, outcome.task
        self.lifecycle.register(
            agent.id,
            state=S.SUSPENDED,
            session_id=outcome.context.session_id,
            task_id=task.id,
        )
        self._agents[agent.id] = agent
        self._tasks[task.id] = task

        orchestration_id = outcome.context.orchestration_id
        index = outcome.context.orchestration_task_index
        if orchestration_id is not None and index is not None:
            assignment = _Assignment(
                kind=AssignmentKind.SUB_TASK,
                task_id=task.id,
                orchestration_id=orchestration_id,
                index=index,
            )
            run = self._orchestrations[orchestration_id]
            sub_task = run.sub_task(index)
            if sub_task is not None:
                sub_task.status = SubTaskStatus.IN_PROGRESS
                sub_task.agent_id = agent.id
                sub_task.task_id = task.id
            commander = self._agents.get(run.commander_id)
            if commander is not None and agent.id not in commander.sub_agent_ids:
                commander.sub_agent_ids.append(agent.id)
        else:
            assignment = _Assignment(kind=AssignmentKind.STANDALONE, task_id=task.id)
        assignment.tool_call_count = outcome.context.tool_call_count
        assignment.pending_interaction = outcome.pending_interaction
        self._assignments[agent.id] = assignment
        return agent.id

    def _requeue_orphans(self, run: OrchestrationState, restored: set[str]) -> None:
        for sub_task in run.sub_tasks:
            if sub_task.status is SubTaskStatus.IN_PROGRESS and sub_task.agent_id not in restored:
                self._requeue(run, sub_task)

    def _requeue(self, run: OrchestrationState, sub_task: OrchestratedSubTask) -> None:
        self.queue.requeue(run.commander_id, sub_task.index)
        sub_task.status = SubTaskStatus.PENDING
        sub_task.agent_id = None
        logger.info("Re-queued sub-task %d of run %s", sub_task.index, run.id)

    def _auto_resume(self, agent_id: str, actions: list[Action]) -> None:
        assignment = self._assignments.get(agent_id)
        if (
            assignment is None
            or assignment.kind is not AssignmentKind.SUB_TASK
            or assignment.pending_interaction is not None
        ):
            return
        agent = self._agents[agent_id]
        if agent.session_id is None:
            # nothing to resume; run the sub-task again from scratch
            self._fire(agent_id, E.CANCEL, actions)
            self._assignments.pop(agent_id, None)
            run = self._orchestrations.get(assignment.orchestration_id or "")
            sub_task = run.sub_task(assignment.index) if run is not None else None
            if run is not None and sub_task is not None:
                self._requeue(run, sub_task)
            return
        if self._fire(agent_id, E.RESUME, actions) is not None:
            actions.extend(self._resume_spawn(agent, assignment, CONTINUE_PROMPT))

    # -- actions --------------------------------------------------------------

    def _save_header_action(self, run: OrchestrationState) -> Action:
        header = OrchestrationState.from_header(run.header())
        return partial(self.state_store.save_orchestration, header)

    def _notify_action(
        self,
        kind: NotificationKind,
        orchestration_id: str | None,
        *,
        index: int | None = None,
        agent_id: str | None = None,
        interaction: PendingInteraction | None = None,
    ) -> Action:
        notification = EngineNotification(
            kind=kind,
            orchestration_id=orchestration_id,
            index=index,
            agent_id=agent_id,
            interaction=interaction,
        )
        return partial(self._notify, notification)

    def _notify(self, notification: EngineNotification) -> None:
        for listener in list(self._listeners):
            listener(notification)

    def _run_actions(self, actions: list[Action]) -> None:
        # queue changes made under the lock are written ahead of any spawn
        for action in [self.queue.flush_all, *actions]:
            try:
                action()
            except Exception:
                logger.exception("Engine action failed")
