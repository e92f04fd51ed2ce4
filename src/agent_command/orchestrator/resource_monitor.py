"""Periodic pressure classification and cleanup of idle and finished agents."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import psutil

from agent_command.lifecycle.manager import AgentLifecycleManager
from agent_command.lifecycle.models import (
    AgentLifecycleState,
    LifecycleEffect,
    LifecycleEvent,
    Transition,
)
from agent_command.orchestrator.cleanup_policy import CleanupPolicy, ResourcePressure, classify
from agent_command.orchestrator.pool import SubAgentPool
from agent_command.persistence.common import utc_now

logger = logging.getLogger(__name__)

HIGH_PRESSURE_EVICTIONS = 4

EffectHandler = Callable[[Transition], None]


def process_memory_mb() -> float:
    """Resident memory of this process and all of its children, in MiB."""

    parent = psutil.Process(os.getpid())
    total = parent.memory_info().rss
    for child in parent.children(recursive=True):
        try:
            total += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return total / (1024 * 1024)


@dataclass(slots=True)
class MonitorReport:
    pressure: ResourcePressure
    memory_mb: float
    active_agents: int
    active_processes: int
    transitions: list[Transition] = field(default_factory=list)


class ResourceMonitor:
    """Applies the cleanup policy once per tick.

    Only cleanup-candidate states are ever reclaimed; active agents are left
    alone no matter how high the pressure gets.
    """

    def __init__(  # noqa: PLR0913
        self,
        lifecycle: AgentLifecycleManager,
        policy: CleanupPolicy,
        *,
        pool: SubAgentPool | None = None,
        effect_handler: EffectHandler | None = None,
        process_count: Callable[[], int] | None = None,
        memory_probe: Callable[[], float] = process_memory_mb,
        interval_seconds: float = 5.0,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.lifecycle = lifecycle
        self.policy = policy
        self.pool = pool
        self.interval_seconds = interval_seconds
        self.last_pressure = ResourcePressure.NORMAL
        self._effect_handler = effect_handler or self._finish_destroy
        self._process_count = process_count
        self._memory_probe = memory_probe
        self._now = now
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="resource-monitor")
        self._thread.start()
        logger.info("Resource monitor started (every %.1fs)", self.interval_seconds)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=10)
        self._thread = None
        logger.info("Resource monitor stopped")

    def tick(self) -> MonitorReport:
        """Classify pressure, then run the time, pool and pressure tiers."""

        active_agents = self.lifecycle.active_agent_count
        active_processes = (
            self._process_count()
            if self._process_count is not None
            else self.lifecycle.running_process_count
        )
        memory_mb = self._memory_probe() if self.policy.enable_resource_monitoring else 0.0
        pressure = classify(active_agents, active_processes, memory_mb, self.policy)
        if pressure is not self.last_pressure:
            logger.info(
                "Resource pressure %s -> %s (agents=%d processes=%d memory=%.0fMB)",
                self.last_pressure.value,
                pressure.value,
                active_agents,
                active_processes,
                memory_mb,
            )
        self.last_pressure = pressure

        transitions = self._expire_by_time(pressure)
        if self.pool is not None:
            transitions.extend(self.pool.evict_expired())
        if self.policy.enable_resource_monitoring:
            transitions.extend(self._relieve(pressure))

        for result in transitions:
            try:
                self._effect_handler(result)
            except Exception:
                logger.exception("Cleanup effect failed for agent %s", result.agent_id)
        return MonitorReport(
            pressure=pressure,
            memory_mb=memory_mb,
            active_agents=active_agents,
            active_processes=active_processes,
            transitions=transitions,
        )

    def _expire_by_time(self, pressure: ResourcePressure) -> list[Transition]:
        now = self._now()
        idle_limit = self.policy.adjusted_timeout(self.policy.idle_agent_timeout, pressure)
        suspended_limit = self.policy.adjusted_timeout(
            self.policy.suspended_idle_timeout,
            pressure,
        )
        completed_limit = self.policy.adjusted_timeout(self.policy.completed_team_delay, pressure)
        failed_limit = self.policy.adjusted_timeout(self.policy.failed_team_delay, pressure)

        results: list[Transition] = []
        for record in self.lifecycle.records():
            elapsed = (now - record.entered_at).total_seconds()
            event: LifecycleEvent | None = None
            if record.state is AgentLifecycleState.IDLE and elapsed >= idle_limit:
                event = LifecycleEvent.IDLE_TIMEOUT
            elif record.state is AgentLifecycleState.SUSPENDED and elapsed >= suspended_limit:
                event = LifecycleEvent.TIMEOUT
            elif record.state is AgentLifecycleState.COMPLETED and elapsed >= completed_limit:
                event = LifecycleEvent.DISBAND_SCHEDULED
            elif record.state is AgentLifecycleState.ERROR and elapsed >= failed_limit:
                event = LifecycleEvent.DISBAND_SCHEDULED
            if event is None or not self.lifecycle.accepts(record.agent_id, event):
                continue
            result = self.lifecycle.fire_event(record.agent_id, event, idle_duration=elapsed)
            if result is not None:
                results.append(result)
        return results

    def _relieve(self, pressure: ResourcePressure) -> list[Transition]:
        if pressure is ResourcePressure.CRITICAL:
            logger.warning("Critical resource pressure; running emergency cleanup")
            return self.lifecycle.emergency_cleanup()
        if pressure is ResourcePressure.HIGH:
            if self.pool is not None:
                target = max(0, self.pool.size - HIGH_PRESSURE_EVICTIONS)
                return self.pool.shrink_to(target)
            return self.lifecycle.evict_oldest_pooled(HIGH_PRESSURE_EVICTIONS)
        return []

    def _finish_destroy(self, result: Transition) -> None:
        if result.has_effect(LifecycleEffect.SCHEDULE_DESTROY):
            self.lifecycle.fire_event(result.agent_id, LifecycleEvent.ANIMATION_COMPLETE)

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("Resource monitor tick failed")
