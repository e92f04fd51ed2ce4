"""Data-driven agent lifecycle transition table.

The table maps ``(state, event)`` to a rule holding the next state, the
effects the caller must execute and an optional guard. Any pair missing from
the table is rejected, which makes the machine total: every pair yields
either one next state or a ``TransitionError``. Nothing here performs I/O.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from agent_command.lifecycle.models import (
    AgentLifecycleContext,
    AgentLifecycleState,
    LifecycleEffect,
    LifecycleEvent,
    Transition,
    TransitionError,
    TransitionErrorKind,
)

S = AgentLifecycleState
E = LifecycleEvent
FX = LifecycleEffect

Guard = Callable[[AgentLifecycleContext], bool]


@dataclass(frozen=True, slots=True)
class _Rule:
    target: AgentLifecycleState
    effects: tuple[LifecycleEffect, ...] = ()
    guard: Guard | None = None
    guard_reason: str = ""


def _pool_has_room(context: AgentLifecycleContext) -> bool:
    return context.current_pool_size < context.pool_capacity


def _has_session(context: AgentLifecycleContext) -> bool:
    return context.session_id is not None


_POOL_GUARD = {"guard": _pool_has_room, "guard_reason": "pool is at capacity"}
_SUSPEND = (FX.WRITE_RESUME_CONTEXT,)
_TERMINATE_AND_SUSPEND = (FX.TERMINATE_PROCESS, FX.WRITE_RESUME_CONTEXT)
_INTERACTIVE_STATES = (S.REQUESTING_PERMISSION, S.WAITING_FOR_ANSWER, S.REVIEWING_PLAN)
_RUNNING_STATES = (S.WORKING, S.THINKING)

TRANSITIONS: dict[tuple[AgentLifecycleState, LifecycleEvent], _Rule] = {
    (S.INITIALIZING, E.RESOURCES_LOADED): _Rule(S.IDLE),
    (S.IDLE, E.ASSIGN_TASK): _Rule(S.WORKING, (FX.SPAWN_PROCESS,)),
    (S.IDLE, E.POOL_RETURN): _Rule(S.POOLED, (FX.RETURN_TO_POOL,), **_POOL_GUARD),
    (S.IDLE, E.IDLE_TIMEOUT): _Rule(S.SUSPENDED_IDLE, _SUSPEND),
    (S.IDLE, E.DISBAND_SCHEDULED): _Rule(S.DESTROYING, (FX.SCHEDULE_DESTROY,)),
    (S.WORKING, E.AI_REASONING): _Rule(S.THINKING),
    (S.WORKING, E.TOOL_INVOKED): _Rule(S.WORKING),
    (S.THINKING, E.AI_REASONING): _Rule(S.THINKING),
    (S.THINKING, E.TOOL_INVOKED): _Rule(S.WORKING),
    (S.SUSPENDED, E.RESUME): _Rule(
        S.WORKING,
        (FX.SPAWN_PROCESS, FX.DELETE_RESUME_CONTEXT),
        guard=_has_session,
        guard_reason="no CLI session to resume",
    ),
    (S.SUSPENDED, E.CANCEL): _Rule(S.ERROR, (FX.DELETE_RESUME_CONTEXT,)),
    (S.SUSPENDED, E.TIMEOUT): _Rule(S.SUSPENDED_IDLE, _SUSPEND),
    (S.SUSPENDED_IDLE, E.ASSIGN_TASK): _Rule(
        S.WORKING,
        (FX.SPAWN_PROCESS, FX.DELETE_RESUME_CONTEXT),
    ),
    (S.SUSPENDED_IDLE, E.CLEANUP_TRIGGERED): _Rule(
        S.DESTROYING,
        (FX.DELETE_RESUME_CONTEXT, FX.SCHEDULE_DESTROY),
    ),
    (S.POOLED, E.ASSIGN_TASK): _Rule(S.INITIALIZING),
    (S.POOLED, E.POOL_EVICTION): _Rule(S.DESTROYING, (FX.SCHEDULE_DESTROY,)),
    (S.COMPLETED, E.RETURN_TO_POOL): _Rule(S.POOLED, (FX.RETURN_TO_POOL,), **_POOL_GUARD),
    (S.COMPLETED, E.DISBAND_SCHEDULED): _Rule(S.DESTROYING, (FX.SCHEDULE_DESTROY,)),
    (S.COMPLETED, E.ASSIGN_NEW_TASK): _Rule(S.WORKING, (FX.SPAWN_PROCESS,)),
    (S.ERROR, E.RETRY): _Rule(S.WORKING, (FX.SPAWN_PROCESS,)),
    (S.ERROR, E.DISBAND_SCHEDULED): _Rule(S.DESTROYING, (FX.SCHEDULE_DESTROY,)),
    (S.DESTROYING, E.ANIMATION_COMPLETE): _Rule(S.DESTROYED),
    (S.REQUESTING_PERMISSION, E.PERMISSION_GRANTED): _Rule(S.WORKING),
    (S.REQUESTING_PERMISSION, E.PERMISSION_DENIED): _Rule(S.SUSPENDED, _TERMINATE_AND_SUSPEND),
    (S.WAITING_FOR_ANSWER, E.ANSWER_RECEIVED): _Rule(S.WORKING, (FX.SPAWN_PROCESS,)),
    (S.REVIEWING_PLAN, E.PLAN_APPROVED): _Rule(S.WORKING, (FX.SPAWN_PROCESS,)),
    (S.REVIEWING_PLAN, E.PLAN_REJECTED): _Rule(S.SUSPENDED, _TERMINATE_AND_SUSPEND),
}

for _state in _RUNNING_STATES:
    TRANSITIONS[(_state, E.PERMISSION_NEEDED)] = _Rule(S.REQUESTING_PERMISSION)
    TRANSITIONS[(_state, E.QUESTION_ASKED)] = _Rule(S.WAITING_FOR_ANSWER)
    TRANSITIONS[(_state, E.PLAN_READY)] = _Rule(S.REVIEWING_PLAN)
    TRANSITIONS[(_state, E.TASK_COMPLETED)] = _Rule(S.COMPLETED)
    TRANSITIONS[(_state, E.TASK_FAILED)] = _Rule(S.ERROR)
    TRANSITIONS[(_state, E.TIMEOUT)] = _Rule(S.ERROR, (FX.TERMINATE_PROCESS,))
    TRANSITIONS[(_state, E.PROCESS_TERMINATED)] = _Rule(S.SUSPENDED, _TERMINATE_AND_SUSPEND)

for _state in _INTERACTIVE_STATES:
    TRANSITIONS[(_state, E.PROCESS_TERMINATED)] = _Rule(S.SUSPENDED, _TERMINATE_AND_SUSPEND)

for _state in (*_RUNNING_STATES, *_INTERACTIVE_STATES):
    TRANSITIONS[(_state, E.CANCEL)] = _Rule(S.ERROR, (FX.TERMINATE_PROCESS,))


def transition(
    state: AgentLifecycleState,
    event: LifecycleEvent,
    context: AgentLifecycleContext,
) -> Transition:
    """Resolve one event against the table or raise ``TransitionError``."""

    if state.is_terminal:
        raise TransitionError(
            f"Agent is {state.value}; {event.value} is not accepted.",
            error_kind=TransitionErrorKind.TERMINAL_STATE_VIOLATION,
            state=state,
            event=event,
            agent_id=context.agent_id or None,
        )

    rule = TRANSITIONS.get((state, event))
    if rule is None:
        raise TransitionError(
            f"Invalid transition: {event.value} while {state.value}.",
            error_kind=TransitionErrorKind.INVALID_TRANSITION,
            state=state,
            event=event,
            agent_id=context.agent_id or None,
        )
    if rule.guard is not None and not rule.guard(context):
        raise TransitionError(
            f"Invalid transition: {event.value} while {state.value} ({rule.guard_reason}).",
            error_kind=TransitionErrorKind.INVALID_TRANSITION,
            state=state,
            event=event,
            agent_id=context.agent_id or None,
        )

    effects = rule.effects
    if FX.WRITE_RESUME_CONTEXT in effects and context.task_id is None:
        # nothing to resume without a task
        effects = tuple(effect for effect in effects if effect is not FX.WRITE_RESUME_CONTEXT)
    return Transition(
        agent_id=context.agent_id,
        from_state=state,
        event=event,
        to_state=rule.target,
        effects=effects,
    )


def accepted_events(state: AgentLifecycleState) -> list[LifecycleEvent]:
    """Events the table knows for ``state`` (guards not evaluated)."""

    return [event for (from_state, event) in TRANSITIONS if from_state is state]
