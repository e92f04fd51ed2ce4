"""Agent lifecycle state machine and registry."""

from agent_command.lifecycle.manager import AgentLifecycleManager
from agent_command.lifecycle.models import (
    AgentLifecycleContext,
    AgentLifecycleState,
    LifecycleEffect,
    LifecycleEvent,
    Transition,
    TransitionError,
    TransitionErrorKind,
)
from agent_command.lifecycle.state_machine import transition

__all__ = [
    "AgentLifecycleContext",
    "AgentLifecycleManager",
    "AgentLifecycleState",
    "LifecycleEffect",
    "LifecycleEvent",
    "Transition",
    "TransitionError",
    "TransitionErrorKind",
    "transition",
]
