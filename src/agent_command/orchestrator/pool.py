"""Reusable sub-agent pool with per-role caps and TTL eviction."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from agent_command.lifecycle.manager import AgentLifecycleManager
from agent_command.lifecycle.models import (
    AgentLifecycleState,
    LifecycleEvent,
    Transition,
    TransitionError,
)
from agent_command.models import Agent, AgentRole, ClaudeModel

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PoolEntry:
    agent: Agent
    pooled_at: float
    last_used_at: float
    use_count: int = 1


@dataclass(slots=True)
class PoolStats:
    hit_count: int = 0
    miss_count: int = 0
    eviction_count: int = 0
    total_acquired: int = 0
    total_released: int = 0
    peak_size: int = 0
    per_role_counts: dict[str, int] = field(default_factory=dict)

    @property
    def hit_rate(self) -> float:
        total = self.hit_count + self.miss_count
        if total == 0:
            return 0.0
        return self.hit_count / total


class SubAgentPool:
    """Completed sub-agents park here in ``pooled`` and are reused for new tasks."""

    def __init__(
        self,
        lifecycle: AgentLifecycleManager,
        *,
        capacity: int = 12,
        max_per_role: int = 3,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.lifecycle = lifecycle
        self.capacity = capacity
        self.max_per_role = max_per_role
        self.ttl_seconds = ttl_seconds
        self.stats = PoolStats()
        self._clock = clock
        self._entries: dict[str, PoolEntry] = {}
        self._lock = threading.RLock()
        lifecycle.add_listener(self._on_transition)

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def pooled_agent_ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def acquire(
        self,
        role: AgentRole,
        *,
        commander_id: str | None = None,
        model: ClaudeModel | None = None,
    ) -> Agent | None:
        """Take the most recently used pooled agent of ``role`` and bring it to ``idle``."""

        with self._lock:
            self.stats.total_acquired += 1
            candidates = sorted(
                (entry for entry in self._entries.values() if entry.agent.role is role),
                key=lambda entry: entry.last_used_at,
                reverse=True,
            )
            for entry in candidates:
                agent = entry.agent
                self._entries.pop(agent.id, None)
                try:
                    self.lifecycle.apply(agent.id, LifecycleEvent.ASSIGN_TASK)
                    self.lifecycle.apply(agent.id, LifecycleEvent.RESOURCES_LOADED)
                except TransitionError as error:
                    logger.warning("Pooled agent %s unusable: %s", agent.id, error)
                    continue
                agent.commander_id = commander_id
                if model is not None:
                    agent.model = model
                agent.assigned_task_id = None
                agent.session_id = None
                self.stats.hit_count += 1
                self._refresh_stats()
                logger.debug("Pool hit for role %s: agent %s", role.value, agent.id)
                return agent
            self.stats.miss_count += 1
            return None

    def release(self, agent: Agent) -> bool:
        """Park a completed agent; ``False`` when the pool or the role is full."""

        with self._lock:
            role_count = sum(
                1 for entry in self._entries.values() if entry.agent.role is agent.role
            )
            if len(self._entries) >= self.capacity or role_count >= self.max_per_role:
                self.stats.eviction_count += 1
                return False
            try:
                self.lifecycle.apply(agent.id, LifecycleEvent.RETURN_TO_POOL)
            except TransitionError as error:
                logger.debug("Agent %s not returned to pool: %s", agent.id, error)
                return False
            now = self._clock()
            self._entries[agent.id] = PoolEntry(agent=agent, pooled_at=now, last_used_at=now)
            self.stats.total_released += 1
            self._refresh_stats()
            return True

    def evict_expired(self) -> list[Transition]:
        now = self._clock()
        with self._lock:
            expired = [
                agent_id
                for agent_id, entry in self._entries.items()
                if now - entry.pooled_at >= self.ttl_seconds
            ]
        return self._evict(expired)

    def shrink_to(self, target: int) -> list[Transition]:
        """Evict the oldest pooled agents until at most ``target`` remain."""

        with self._lock:
            ordered = sorted(self._entries.values(), key=lambda entry: entry.pooled_at)
            excess = max(0, len(ordered) - max(0, target))
            victims = [entry.agent.id for entry in ordered[:excess]]
        return self._evict(victims)

    def _evict(self, agent_ids: list[str]) -> list[Transition]:
        evicted: list[Transition] = []
        for agent_id in agent_ids:
            result = self.lifecycle.fire_event(agent_id, LifecycleEvent.POOL_EVICTION)
            with self._lock:
                self._entries.pop(agent_id, None)
                if result is not None:
                    self.stats.eviction_count += 1
            if result is not None:
                evicted.append(result)
        if evicted:
            with self._lock:
                self._refresh_stats()
            logger.info("Evicted %d pooled agent(s)", len(evicted))
        return evicted

    def _on_transition(self, result: Transition) -> None:
        if result.from_state is AgentLifecycleState.POOLED:
            with self._lock:
                self._entries.pop(result.agent_id, None)

    def _refresh_stats(self) -> None:
        counts: dict[str, int] = {}
        for entry in self._entries.values():
            counts[entry.agent.role.value] = counts.get(entry.agent.role.value, 0) + 1
        self.stats.per_role_counts = counts
        self.stats.peak_size = max(self.stats.peak_size, len(self._entries))
