from __future__ import annotations

import allure
import pytest

from agent_command.lifecycle import LifecycleEvent
from agent_command.models import Agent, AgentRole, AgentTask
from agent_command.orchestrator.models import (
    InteractionType,
    PendingInteraction,
    SuspensionReason,
)
from agent_command.orchestrator.suspension import SuspensionManager

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Suspension"),
]


@pytest.fixture()
def suspension(state_store) -> SuspensionManager:
    return SuspensionManager(state_store, working_directory="/work")


def _agent_and_task() -> tuple[Agent, AgentTask]:
    agent = Agent(id="dev-1", name="Dev", role=AgentRole.DEVELOPER, commander_id="cmd-1")
    agent.session_id = "sess-1"
    task = AgentTask.create(title="Add index", prompt="Add a DB index", assigned_agent_id="dev-1")
    task.team_agent_ids = ["dev-1", "dev-2"]
    return agent, task


def _question() -> PendingInteraction:
    return PendingInteraction(
        type=InteractionType.QUESTION,
        input_json='{"question": "Which table?"}',
        session_id="sess-1",
        tool_use_id="toolu_9",
    )


def test_suspend_writes_self_sufficient_context(suspension, state_store) -> None:
    agent, task = _agent_and_task()

    suspension.suspend(
        agent,
        task,
        SuspensionReason.USER_QUESTION,
        _question(),
        tool_call_count=4,
        progress_estimate=0.2,
        orchestration_id="run-1",
        orchestration_task_index=1,
    )

    stored = state_store.load_resume_context("dev-1")
    assert stored.session_id == "sess-1"
    assert stored.working_directory == "/work"
    assert stored.commander_id == "cmd-1"
    assert stored.team_agent_ids == ["dev-1", "dev-2"]
    assert stored.tool_call_count == 4
    assert stored.orchestration_task_index == 1
    assert stored.pending_interaction.tool_use_id == "toolu_9"


def test_pending_interaction_gates_everything_but_cancel(suspension) -> None:
    agent, task = _agent_and_task()
    suspension.suspend(agent, task, SuspensionReason.USER_QUESTION, _question())

    assert suspension.awaiting_interaction("dev-1") is not None
    assert not suspension.accepts("dev-1", LifecycleEvent.RESUME)
    assert not suspension.accepts("dev-1", LifecycleEvent.TIMEOUT)
    assert suspension.accepts("dev-1", LifecycleEvent.CANCEL)
    assert suspension.accepts("dev-2", LifecycleEvent.RESUME)


def test_answer_releases_and_hold_restores_gate(suspension) -> None:
    agent, task = _agent_and_task()
    suspension.suspend(agent, task, SuspensionReason.USER_QUESTION, _question())

    interaction = suspension.answer("dev-1")

    assert interaction.type is InteractionType.QUESTION
    assert suspension.accepts("dev-1", LifecycleEvent.RESUME)

    suspension.hold("dev-1", interaction)
    assert not suspension.accepts("dev-1", LifecycleEvent.RESUME)


def test_complete_resume_deletes_context(suspension, state_store) -> None:
    agent, task = _agent_and_task()
    suspension.suspend(agent, task, SuspensionReason.APP_TERMINATED)

    suspension.complete_resume("dev-1")

    assert state_store.load_resume_context("dev-1") is None
    assert suspension.pending_resumes() == []


def test_resume_rebuilds_agent_and_task(suspension) -> None:
    agent, task = _agent_and_task()
    suspension.suspend(
        agent,
        task,
        SuspensionReason.PLAN_REVIEW,
        progress_estimate=0.45,
        orchestration_id="run-1",
        orchestration_task_index=0,
    )
    context = suspension.load("dev-1")

    outcome = suspension.resume(context, orchestration_exists=lambda run_id, index: True)

    assert not outcome.orphaned
    assert outcome.agent.session_id == "sess-1"
    assert outcome.agent.assigned_task_id == outcome.task.id
    assert outcome.task.progress == 0.45
    assert outcome.context.orchestration_id == "run-1"


def test_resume_of_vanished_run_is_orphaned(suspension) -> None:
    agent, task = _agent_and_task()
    suspension.suspend(
        agent,
        task,
        SuspensionReason.USER_QUESTION,
        _question(),
        orchestration_id="run-gone",
        orchestration_task_index=3,
    )
    fresh = SuspensionManager(suspension.state_store)

    outcome = fresh.resume(
        fresh.load("dev-1"),
        orchestration_exists=lambda run_id, index: False,
    )

    assert outcome.orphaned
    assert outcome.context.orchestration_id is None
    assert outcome.context.orchestration_task_index is None
    assert outcome.pending_interaction is not None
    assert not fresh.accepts("dev-1", LifecycleEvent.RESUME)
