"""Registry of agent lifecycle states; the only place states change."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from agent_command.lifecycle.models import (
    AgentLifecycleContext,
    AgentLifecycleRecord,
    AgentLifecycleState,
    LifecycleEvent,
    Transition,
    TransitionError,
    TransitionErrorKind,
)
from agent_command.lifecycle.state_machine import transition
from agent_command.persistence.common import utc_now

logger = logging.getLogger(__name__)

_HISTORY_LIMIT = 50
_REGISTRABLE_STATES = frozenset(
    {
        AgentLifecycleState.INITIALIZING,
        AgentLifecycleState.SUSPENDED,
        AgentLifecycleState.SUSPENDED_IDLE,
    },
)

TransitionListener = Callable[[Transition], None]
EventGate = Callable[[str, LifecycleEvent], bool]


class AgentLifecycleManager:
    """Thread-safe per-agent state registry driven by the transition table."""

    def __init__(self, *, pool_capacity: int = 12) -> None:
        self.pool_capacity = pool_capacity
        self._records: dict[str, AgentLifecycleRecord] = {}
        self._lock = threading.RLock()
        self._listeners: list[TransitionListener] = []
        self._gate: EventGate | None = None

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def set_gate(self, gate: EventGate | None) -> None:
        """Install a predicate that can veto events for individual agents."""

        self._gate = gate

    def accepts(self, agent_id: str, event: LifecycleEvent) -> bool:
        """False when the installed gate would veto ``event`` for this agent."""

        return self._gate is None or self._gate(agent_id, event)

    def register(
        self,
        agent_id: str,
        *,
        state: AgentLifecycleState = AgentLifecycleState.INITIALIZING,
        session_id: str | None = None,
        task_id: str | None = None,
    ) -> AgentLifecycleRecord:
        """Start tracking an agent (``create``), or re-attach a restored suspended one."""

        if state not in _REGISTRABLE_STATES:
            raise ValueError(f"Agents cannot be registered directly in state {state.value}.")
        with self._lock:
            existing = self._records.get(agent_id)
            if existing is not None and not existing.state.is_terminal:
                raise ValueError(f"Agent {agent_id} is already registered.")
            record = AgentLifecycleRecord(
                agent_id=agent_id,
                state=state,
                session_id=session_id,
                task_id=task_id,
            )
            self._records[agent_id] = record
        logger.debug("Registered agent %s in %s", agent_id, state.value)
        return record

    def forget(self, agent_id: str) -> None:
        with self._lock:
            self._records.pop(agent_id, None)

    def state(self, agent_id: str) -> AgentLifecycleState | None:
        with self._lock:
            record = self._records.get(agent_id)
            return record.state if record is not None else None

    def record(self, agent_id: str) -> AgentLifecycleRecord | None:
        with self._lock:
            return self._records.get(agent_id)

    def is_registered(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._records

    def bind(
        self,
        agent_id: str,
        *,
        session_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        with self._lock:
            record = self._records.get(agent_id)
            if record is None:
                return
            if session_id is not None:
                record.session_id = session_id
            if task_id is not None:
                record.task_id = task_id

    def apply(
        self,
        agent_id: str,
        event: LifecycleEvent,
        *,
        session_id: str | None = None,
        task_id: str | None = None,
        idle_duration: float | None = None,
    ) -> Transition:
        """Apply ``event`` to the agent's current state or raise ``TransitionError``."""

        with self._lock:
            record = self._records.get(agent_id)
            if record is None:
                raise TransitionError(
                    f"Unknown agent {agent_id}.",
                    error_kind=TransitionErrorKind.UNKNOWN_AGENT,
                    event=event,
                    agent_id=agent_id,
                )
            if self._gate is not None and not self._gate(agent_id, event):
                raise TransitionError(
                    f"Agent {agent_id} is waiting for a user response; {event.value} rejected.",
                    error_kind=TransitionErrorKind.INVALID_TRANSITION,
                    state=record.state,
                    event=event,
                    agent_id=agent_id,
                )
            if session_id is not None:
                record.session_id = session_id
            if task_id is not None:
                record.task_id = task_id
            now = utc_now()
            context = AgentLifecycleContext(
                agent_id=agent_id,
                session_id=record.session_id,
                task_id=record.task_id,
                pool_capacity=self.pool_capacity,
                current_pool_size=self._count(AgentLifecycleState.POOLED),
                idle_duration=(
                    idle_duration
                    if idle_duration is not None
                    else (now - record.entered_at).total_seconds()
                ),
            )
            result = transition(record.state, event, context)
            if result.to_state is not record.state:
                record.entered_at = now
            record.state = result.to_state
            record.history.append(result)
            del record.history[:-_HISTORY_LIMIT]
        logger.debug(
            "Agent %s: %s --%s--> %s",
            agent_id,
            result.from_state.value,
            event.value,
            result.to_state.value,
        )
        for listener in self._listeners:
            listener(result)
        return result

    def fire_event(self, agent_id: str, event: LifecycleEvent, **kwargs) -> Transition | None:
        """Like ``apply`` but logs and drops transition violations."""

        try:
            return self.apply(agent_id, event, **kwargs)
        except TransitionError as error:
            logger.warning("Dropped lifecycle event for %s: %s", agent_id, error)
            return None

    def _count(self, state: AgentLifecycleState) -> int:
        return sum(1 for record in self._records.values() if record.state is state)

    def agents_in(self, *states: AgentLifecycleState) -> list[str]:
        with self._lock:
            return [
                agent_id for agent_id, record in self._records.items() if record.state in states
            ]

    @property
    def pool_size(self) -> int:
        with self._lock:
            return self._count(AgentLifecycleState.POOLED)

    @property
    def managed_agent_count(self) -> int:
        """Agents holding a slot: anything not yet destroyed."""

        with self._lock:
            return sum(1 for record in self._records.values() if not record.state.is_terminal)

    @property
    def active_agent_count(self) -> int:
        with self._lock:
            return sum(1 for record in self._records.values() if record.state.is_active)

    @property
    def running_process_count(self) -> int:
        with self._lock:
            return sum(
                1 for record in self._records.values() if record.state.has_running_process
            )

    def available_agents(self) -> list[str]:
        with self._lock:
            return [
                agent_id
                for agent_id, record in self._records.items()
                if record.state.is_available_for_task
            ]

    def cleanup_candidates(self) -> list[str]:
        with self._lock:
            return [
                agent_id
                for agent_id, record in self._records.items()
                if record.state.is_cleanup_candidate
            ]

    def pooled_oldest_first(self) -> list[str]:
        with self._lock:
            pooled = [
                record
                for record in self._records.values()
                if record.state is AgentLifecycleState.POOLED
            ]
        pooled.sort(key=lambda record: record.entered_at)
        return [record.agent_id for record in pooled]

    def evict_oldest_pooled(self, count: int) -> list[Transition]:
        """Evict up to ``count`` pooled agents, least recently pooled first."""

        evicted: list[Transition] = []
        for agent_id in self.pooled_oldest_first()[: max(0, count)]:
            result = self.fire_event(agent_id, LifecycleEvent.POOL_EVICTION)
            if result is not None:
                evicted.append(result)
        if evicted:
            logger.info("Evicted %d pooled agent(s)", len(evicted))
        return evicted

    def emergency_cleanup(self) -> list[Transition]:
        """Schedule destruction of every cleanup candidate and pooled agent; never active ones."""

        results: list[Transition] = []
        for agent_id in self.cleanup_candidates():
            state = self.state(agent_id)
            event = (
                LifecycleEvent.CLEANUP_TRIGGERED
                if state is AgentLifecycleState.SUSPENDED_IDLE
                else LifecycleEvent.DISBAND_SCHEDULED
            )
            result = self.fire_event(agent_id, event)
            if result is not None:
                results.append(result)
        results.extend(self.evict_oldest_pooled(len(self.pooled_oldest_first())))
        logger.warning("Emergency cleanup scheduled %d agent(s) for destruction", len(results))
        return results

    def records(self) -> list[AgentLifecycleRecord]:
        with self._lock:
            return list(self._records.values())
