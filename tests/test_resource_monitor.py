from __future__ import annotations

from datetime import timedelta

import allure

from agent_command.lifecycle import AgentLifecycleManager, AgentLifecycleState, LifecycleEvent
from agent_command.models import Agent, AgentRole
from agent_command.orchestrator.cleanup_policy import CleanupPolicy, ResourcePressure
from agent_command.orchestrator.models import InteractionType, PendingInteraction
from agent_command.orchestrator.pool import SubAgentPool
from agent_command.orchestrator.resource_monitor import ResourceMonitor
from agent_command.orchestrator.suspension import SuspensionManager
from agent_command.persistence.common import utc_now

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Resource Monitor"),
]

S = AgentLifecycleState
E = LifecycleEvent


def _later(seconds: float):
    return lambda: utc_now() + timedelta(seconds=seconds)


def _idle(lifecycle: AgentLifecycleManager, agent_id: str) -> None:
    lifecycle.register(agent_id)
    lifecycle.apply(agent_id, E.RESOURCES_LOADED)


def _working(lifecycle: AgentLifecycleManager, agent_id: str) -> None:
    _idle(lifecycle, agent_id)
    lifecycle.apply(agent_id, E.ASSIGN_TASK, task_id=f"task-{agent_id}")


def test_time_tier_expires_idle_completed_and_failed_agents() -> None:
    lifecycle = AgentLifecycleManager()
    _idle(lifecycle, "idle")
    _working(lifecycle, "done")
    lifecycle.apply("done", E.TASK_COMPLETED)
    _working(lifecycle, "failed")
    lifecycle.apply("failed", E.TASK_FAILED)
    _working(lifecycle, "busy")
    monitor = ResourceMonitor(
        lifecycle,
        CleanupPolicy(),
        memory_probe=lambda: 0.0,
        now=_later(121),
    )

    report = monitor.tick()

    assert report.pressure is ResourcePressure.NORMAL
    assert lifecycle.state("idle") is S.SUSPENDED_IDLE
    assert lifecycle.state("done") is S.DESTROYED
    assert lifecycle.state("failed") is S.DESTROYED
    assert lifecycle.state("busy") is S.WORKING


def test_nothing_expires_before_its_timer() -> None:
    lifecycle = AgentLifecycleManager()
    _idle(lifecycle, "idle")
    monitor = ResourceMonitor(lifecycle, CleanupPolicy(), memory_probe=lambda: 0.0, now=_later(5))

    assert monitor.tick().transitions == []
    assert lifecycle.state("idle") is S.IDLE


def test_suspended_agent_goes_idle_after_timeout() -> None:
    lifecycle = AgentLifecycleManager()
    lifecycle.register("parked", state=S.SUSPENDED, session_id="s", task_id="t")
    monitor = ResourceMonitor(
        lifecycle,
        CleanupPolicy(suspended_idle_timeout=300),
        memory_probe=lambda: 0.0,
        now=_later(301),
    )

    monitor.tick()

    assert lifecycle.state("parked") is S.SUSPENDED_IDLE


def test_agent_awaiting_answer_is_never_timed_out(state_store) -> None:
    lifecycle = AgentLifecycleManager()
    suspension = SuspensionManager(state_store)
    lifecycle.set_gate(suspension.accepts)
    lifecycle.register("asking", state=S.SUSPENDED, session_id="s", task_id="t")
    suspension.hold(
        "asking",
        PendingInteraction(type=InteractionType.QUESTION, input_json="{}"),
    )
    monitor = ResourceMonitor(lifecycle, CleanupPolicy(), memory_probe=lambda: 0.0, now=_later(1e6))

    monitor.tick()

    assert lifecycle.state("asking") is S.SUSPENDED


def test_memory_pressure_triggers_emergency_cleanup() -> None:
    lifecycle = AgentLifecycleManager()
    _working(lifecycle, "busy")
    _working(lifecycle, "done")
    lifecycle.apply("done", E.TASK_COMPLETED)
    handled = []
    monitor = ResourceMonitor(
        lifecycle,
        CleanupPolicy(),
        effect_handler=handled.append,
        memory_probe=lambda: 4096.0,
    )

    report = monitor.tick()

    assert report.pressure is ResourcePressure.CRITICAL
    assert [result.agent_id for result in handled] == ["done"]
    assert lifecycle.state("done") is S.DESTROYING
    assert lifecycle.state("busy") is S.WORKING


def test_high_pressure_shrinks_pool() -> None:
    lifecycle = AgentLifecycleManager()
    pool = SubAgentPool(lifecycle, max_per_role=10)
    for index in range(6):
        agent_id = f"dev-{index}"
        _working(lifecycle, agent_id)
        lifecycle.apply(agent_id, E.TASK_COMPLETED)
        pool.release(Agent(id=agent_id, name=agent_id, role=AgentRole.DEVELOPER))
    monitor = ResourceMonitor(
        lifecycle,
        CleanupPolicy(),
        pool=pool,
        process_count=lambda: 6,
        memory_probe=lambda: 0.0,
    )

    report = monitor.tick()

    assert report.pressure is ResourcePressure.HIGH
    assert report.active_processes == 6
    assert pool.size == 2


def test_memory_probe_skipped_when_monitoring_disabled() -> None:
    def probe() -> float:
        raise AssertionError("memory probe should not run")

    monitor = ResourceMonitor(
        AgentLifecycleManager(),
        CleanupPolicy(enable_resource_monitoring=False),
        memory_probe=probe,
    )

    assert monitor.tick().memory_mb == 0.0
