from __future__ import annotations

import allure
import pytest

from agent_command.lifecycle import (
    AgentLifecycleManager,
    AgentLifecycleState,
    LifecycleEvent,
    TransitionError,
    TransitionErrorKind,
)

pytestmark = [
    allure.epic("Agent Lifecycle"),
    allure.feature("Lifecycle Manager"),
]

S = AgentLifecycleState
E = LifecycleEvent


def _working(manager: AgentLifecycleManager, agent_id: str, task_id: str = "task-1") -> None:
    manager.register(agent_id)
    manager.apply(agent_id, E.RESOURCES_LOADED)
    manager.apply(agent_id, E.ASSIGN_TASK, task_id=task_id)


def test_register_then_walk_to_completion_notifies_listeners() -> None:
    manager = AgentLifecycleManager()
    seen = []
    manager.add_listener(seen.append)

    _working(manager, "agent-1")
    manager.apply("agent-1", E.AI_REASONING)
    manager.apply("agent-1", E.TASK_COMPLETED)

    assert manager.state("agent-1") is S.COMPLETED
    assert [result.event for result in seen] == [
        E.RESOURCES_LOADED,
        E.ASSIGN_TASK,
        E.AI_REASONING,
        E.TASK_COMPLETED,
    ]
    assert manager.record("agent-1").task_id == "task-1"
    assert len(manager.record("agent-1").history) == 4


def test_register_rejects_duplicates_and_mid_task_states() -> None:
    manager = AgentLifecycleManager()
    manager.register("agent-1")

    with pytest.raises(ValueError, match="already registered"):
        manager.register("agent-1")
    with pytest.raises(ValueError, match="working"):
        manager.register("agent-2", state=S.WORKING)


def test_restored_suspended_agent_keeps_its_session() -> None:
    manager = AgentLifecycleManager()
    manager.register("agent-1", state=S.SUSPENDED, session_id="sess-9", task_id="task-3")

    result = manager.apply("agent-1", E.RESUME)

    assert result.to_state is S.WORKING
    assert manager.record("agent-1").session_id == "sess-9"


def test_apply_unknown_agent_raises() -> None:
    manager = AgentLifecycleManager()

    with pytest.raises(TransitionError) as caught:
        manager.apply("ghost", E.CANCEL)

    assert caught.value.error_kind is TransitionErrorKind.UNKNOWN_AGENT


def test_rejected_event_leaves_state_untouched() -> None:
    manager = AgentLifecycleManager()
    manager.register("agent-1")

    with pytest.raises(TransitionError):
        manager.apply("agent-1", E.TASK_COMPLETED)

    assert manager.state("agent-1") is S.INITIALIZING
    assert manager.record("agent-1").history == []


def test_fire_event_drops_violations() -> None:
    manager = AgentLifecycleManager()
    manager.register("agent-1")

    assert manager.fire_event("agent-1", E.TASK_COMPLETED) is None
    assert manager.fire_event("agent-1", E.RESOURCES_LOADED).to_state is S.IDLE


def test_gate_vetoes_events_for_one_agent() -> None:
    manager = AgentLifecycleManager()
    _working(manager, "agent-1")
    _working(manager, "agent-2", task_id="task-2")
    manager.set_gate(lambda agent_id, event: agent_id != "agent-1" or event is E.CANCEL)

    with pytest.raises(TransitionError, match="waiting for a user response"):
        manager.apply("agent-1", E.TASK_COMPLETED)
    assert manager.accepts("agent-1", E.CANCEL)
    assert manager.apply("agent-1", E.CANCEL).to_state is S.ERROR
    assert manager.apply("agent-2", E.TASK_COMPLETED).to_state is S.COMPLETED


def test_pool_return_respects_capacity() -> None:
    manager = AgentLifecycleManager(pool_capacity=1)
    for agent_id in ("agent-1", "agent-2"):
        _working(manager, agent_id, task_id=agent_id)
        manager.apply(agent_id, E.TASK_COMPLETED)

    manager.apply("agent-1", E.RETURN_TO_POOL)

    assert manager.pool_size == 1
    assert manager.fire_event("agent-2", E.RETURN_TO_POOL) is None
    assert manager.state("agent-2") is S.COMPLETED


def test_counts_follow_states() -> None:
    manager = AgentLifecycleManager()
    _working(manager, "agent-1")
    _working(manager, "agent-2", task_id="task-2")
    manager.apply("agent-2", E.QUESTION_ASKED)
    manager.register("agent-3")

    assert manager.managed_agent_count == 3
    assert manager.active_agent_count == 2
    assert manager.running_process_count == 1
    assert manager.agents_in(S.WAITING_FOR_ANSWER) == ["agent-2"]
    assert manager.available_agents() == []

    manager.apply("agent-3", E.RESOURCES_LOADED)

    assert manager.available_agents() == ["agent-3"]


def test_emergency_cleanup_spares_active_agents() -> None:
    manager = AgentLifecycleManager()
    _working(manager, "busy")
    _working(manager, "done", task_id="task-2")
    manager.apply("done", E.TASK_COMPLETED)
    _working(manager, "pooled", task_id="task-3")
    manager.apply("pooled", E.TASK_COMPLETED)
    manager.apply("pooled", E.RETURN_TO_POOL)
    manager.register("idle")
    manager.apply("idle", E.RESOURCES_LOADED)
    manager.register("parked", state=S.SUSPENDED_IDLE, task_id="task-4")

    results = manager.emergency_cleanup()

    assert {result.agent_id for result in results} == {"done", "pooled", "idle", "parked"}
    assert manager.state("busy") is S.WORKING
    assert manager.agents_in(S.DESTROYING) != []
    assert manager.state("parked") is S.DESTROYING


def test_evict_oldest_pooled_goes_in_pool_order() -> None:
    manager = AgentLifecycleManager()
    for agent_id in ("first", "second", "third"):
        _working(manager, agent_id, task_id=agent_id)
        manager.apply(agent_id, E.TASK_COMPLETED)
        manager.apply(agent_id, E.RETURN_TO_POOL)

    evicted = manager.evict_oldest_pooled(2)

    assert [result.agent_id for result in evicted] == ["first", "second"]
    assert manager.pooled_oldest_first() == ["third"]


def test_reregister_after_destroy() -> None:
    manager = AgentLifecycleManager()
    manager.register("agent-1")
    manager.apply("agent-1", E.RESOURCES_LOADED)
    manager.apply("agent-1", E.DISBAND_SCHEDULED)
    manager.apply("agent-1", E.ANIMATION_COMPLETE)

    with pytest.raises(TransitionError) as caught:
        manager.apply("agent-1", E.RESOURCES_LOADED)
    assert caught.value.error_kind is TransitionErrorKind.TERMINAL_STATE_VIOLATION

    manager.register("agent-1")
    assert manager.state("agent-1") is S.INITIALIZING
