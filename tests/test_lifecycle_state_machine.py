from __future__ import annotations

import allure
import pytest

from agent_command.lifecycle import (
    AgentLifecycleContext,
    AgentLifecycleState,
    LifecycleEffect,
    LifecycleEvent,
    TransitionError,
    TransitionErrorKind,
    transition,
)
from agent_command.lifecycle.state_machine import accepted_events

pytestmark = [
    allure.epic("Agent Lifecycle"),
    allure.feature("Transition Table"),
]

S = AgentLifecycleState
E = LifecycleEvent
FX = LifecycleEffect


def _context(**overrides) -> AgentLifecycleContext:
    values = {"agent_id": "agent-1", "task_id": "task-1", "session_id": "session-1"}
    values.update(overrides)
    return AgentLifecycleContext(**values)


@pytest.mark.parametrize(
    ("state", "event", "target", "effects"),
    [
        (S.INITIALIZING, E.RESOURCES_LOADED, S.IDLE, ()),
        (S.IDLE, E.ASSIGN_TASK, S.WORKING, (FX.SPAWN_PROCESS,)),
        (S.WORKING, E.AI_REASONING, S.THINKING, ()),
        (S.THINKING, E.TOOL_INVOKED, S.WORKING, ()),
        (S.WORKING, E.QUESTION_ASKED, S.WAITING_FOR_ANSWER, ()),
        (S.WAITING_FOR_ANSWER, E.ANSWER_RECEIVED, S.WORKING, (FX.SPAWN_PROCESS,)),
        (S.THINKING, E.PLAN_READY, S.REVIEWING_PLAN, ()),
        (
            S.REVIEWING_PLAN,
            E.PLAN_REJECTED,
            S.SUSPENDED,
            (FX.TERMINATE_PROCESS, FX.WRITE_RESUME_CONTEXT),
        ),
        (S.WORKING, E.TIMEOUT, S.ERROR, (FX.TERMINATE_PROCESS,)),
        (
            S.SUSPENDED,
            E.RESUME,
            S.WORKING,
            (FX.SPAWN_PROCESS, FX.DELETE_RESUME_CONTEXT),
        ),
        (S.SUSPENDED, E.TIMEOUT, S.SUSPENDED_IDLE, (FX.WRITE_RESUME_CONTEXT,)),
        (
            S.SUSPENDED_IDLE,
            E.CLEANUP_TRIGGERED,
            S.DESTROYING,
            (FX.DELETE_RESUME_CONTEXT, FX.SCHEDULE_DESTROY),
        ),
        (S.COMPLETED, E.RETURN_TO_POOL, S.POOLED, (FX.RETURN_TO_POOL,)),
        (S.POOLED, E.ASSIGN_TASK, S.INITIALIZING, ()),
        (S.ERROR, E.RETRY, S.WORKING, (FX.SPAWN_PROCESS,)),
        (S.DESTROYING, E.ANIMATION_COMPLETE, S.DESTROYED, ()),
    ],
)
def test_table_resolves_next_state_and_effects(state, event, target, effects) -> None:
    result = transition(state, event, _context())

    assert result.from_state is state
    assert result.to_state is target
    assert result.effects == effects


def test_same_input_always_yields_same_result() -> None:
    first = transition(S.WORKING, E.PROCESS_TERMINATED, _context())
    second = transition(S.WORKING, E.PROCESS_TERMINATED, _context())

    assert first == second
    assert first.to_state is S.SUSPENDED


def test_destroyed_rejects_every_event_as_terminal_violation() -> None:
    with pytest.raises(TransitionError) as caught:
        transition(S.DESTROYED, E.RESOURCES_LOADED, _context())

    assert caught.value.error_kind is TransitionErrorKind.TERMINAL_STATE_VIOLATION


def test_unknown_pair_is_an_invalid_transition() -> None:
    with pytest.raises(TransitionError) as caught:
        transition(S.IDLE, E.TASK_COMPLETED, _context())

    assert caught.value.error_kind is TransitionErrorKind.INVALID_TRANSITION
    assert caught.value.state is S.IDLE
    assert caught.value.event is E.TASK_COMPLETED


def test_resume_requires_a_cli_session() -> None:
    with pytest.raises(TransitionError, match="no CLI session"):
        transition(S.SUSPENDED, E.RESUME, _context(session_id=None))


def test_pool_return_is_guarded_by_capacity() -> None:
    full = _context(pool_capacity=2, current_pool_size=2)
    roomy = _context(pool_capacity=2, current_pool_size=1)

    with pytest.raises(TransitionError, match="pool is at capacity"):
        transition(S.COMPLETED, E.RETURN_TO_POOL, full)
    assert transition(S.COMPLETED, E.RETURN_TO_POOL, roomy).to_state is S.POOLED


def test_resume_context_write_dropped_without_task() -> None:
    result = transition(S.IDLE, E.IDLE_TIMEOUT, _context(task_id=None))

    assert result.to_state is S.SUSPENDED_IDLE
    assert FX.WRITE_RESUME_CONTEXT not in result.effects


def test_cancel_terminates_from_every_active_state() -> None:
    for state in (
        S.WORKING,
        S.THINKING,
        S.REQUESTING_PERMISSION,
        S.WAITING_FOR_ANSWER,
        S.REVIEWING_PLAN,
    ):
        result = transition(state, E.CANCEL, _context())
        assert result.to_state is S.ERROR
        assert result.has_effect(FX.TERMINATE_PROCESS)


def test_suspended_cancel_deletes_context_instead_of_terminating() -> None:
    result = transition(S.SUSPENDED, E.CANCEL, _context())

    assert result.to_state is S.ERROR
    assert result.effects == (FX.DELETE_RESUME_CONTEXT,)


def test_state_classification_sets() -> None:
    assert S.REVIEWING_PLAN.is_active
    assert not S.SUSPENDED.is_active
    assert S.SUSPENDED_IDLE.is_available_for_task
    assert S.ERROR.is_cleanup_candidate
    assert not S.WORKING.is_cleanup_candidate
    assert S.THINKING.has_running_process
    assert not S.WAITING_FOR_ANSWER.has_running_process


def test_accepted_events_lists_table_rows() -> None:
    events = accepted_events(S.COMPLETED)

    assert set(events) == {E.RETURN_TO_POOL, E.DISBAND_SCHEDULED, E.ASSIGN_NEW_TASK}
