from __future__ import annotations

import threading

import allure
import pytest

from agent_command.errors import ErrorKind, SubTaskError
from agent_command.orchestrator.models import DecomposedSubTask, QueueItemStatus
from agent_command.orchestrator.task_queue import SubAgentTaskQueue
from agent_command.persistence.state_store import AgentStateStore

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Sub-task Queue"),
]

Q = QueueItemStatus


def _subtasks(*dependencies: list[int]) -> list[DecomposedSubTask]:
    return [
        DecomposedSubTask(title=f"t{index}", prompt=f"prompt {index}", dependencies=deps)
        for index, deps in enumerate(dependencies)
    ]


def _error(message: str = "boom") -> SubTaskError:
    return SubTaskError(kind=ErrorKind.SUBPROCESS_FAILURE, message=message)


@pytest.fixture()
def queue(state_store: AgentStateStore) -> SubAgentTaskQueue:
    queue = SubAgentTaskQueue(state_store, max_retries=2)
    queue.enqueue("cmd-1", "run-1", _subtasks([], [], [0, 1]))
    return queue


def test_enqueue_persists_pending_items(queue: SubAgentTaskQueue, state_store) -> None:
    stored = state_store.load_queue("cmd-1")

    assert [item.status for item in stored] == [Q.PENDING, Q.PENDING, Q.PENDING]
    assert [item.task_index for item in stored] == [0, 1, 2]
    assert stored[2].dependencies == [0, 1]
    assert stored[0].orchestration_id == "run-1"


def test_enqueue_refuses_to_replace_unfinished_queue(queue: SubAgentTaskQueue) -> None:
    with pytest.raises(ValueError, match="unfinished queue"):
        queue.enqueue("cmd-1", "run-2", _subtasks([]))


def test_ready_items_promotes_only_satisfied_items(queue: SubAgentTaskQueue) -> None:
    ready = queue.ready_items("cmd-1")

    assert [item.task_index for item in ready] == [0, 1]
    assert queue.ready_items("cmd-1") == []
    assert queue.mark_ready("cmd-1", 2) is False

    for index in (0, 1):
        assert queue.mark_in_progress("cmd-1", index, agent_id=f"agent-{index}")
        assert queue.mark_completed("cmd-1", index, f"result {index}")

    assert [item.task_index for item in queue.ready_items("cmd-1")] == [2]


def test_only_one_concurrent_claim_wins(queue: SubAgentTaskQueue) -> None:
    queue.ready_items("cmd-1")
    barrier = threading.Barrier(8)
    wins: list[str] = []
    wins_lock = threading.Lock()

    def claim(agent_id: str) -> None:
        barrier.wait()
        if queue.mark_in_progress("cmd-1", 0, agent_id=agent_id):
            with wins_lock:
                wins.append(agent_id)

    threads = [threading.Thread(target=claim, args=(f"agent-{n}",)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(wins) == 1
    assert queue.item("cmd-1", 0).agent_id == wins[0]


def test_status_changes_are_compare_and_set(queue: SubAgentTaskQueue) -> None:
    assert queue.mark_in_progress("cmd-1", 0, agent_id="a") is False
    assert queue.mark_completed("cmd-1", 0, "early") is False
    assert queue.mark_suspended("cmd-1", 0) is False

    queue.ready_items("cmd-1")
    queue.mark_in_progress("cmd-1", 0, agent_id="a")
    assert queue.mark_suspended("cmd-1", 0, session_id="sess-1")
    assert queue.item("cmd-1", 0).session_id == "sess-1"
    assert queue.mark_in_progress("cmd-1", 0, agent_id="a")
    assert queue.mark_completed("cmd-1", 0, "done")
    assert queue.mark_failed("cmd-1", 0, _error()) is False
    assert queue.item("cmd-1", 0).status is Q.COMPLETED


def test_unknown_commander_or_index_raises(queue: SubAgentTaskQueue) -> None:
    with pytest.raises(KeyError):
        queue.mark_ready("cmd-missing", 0)
    with pytest.raises(KeyError):
        queue.mark_ready("cmd-1", 9)


def test_retry_spends_allowance_then_stops(queue: SubAgentTaskQueue) -> None:
    queue.ready_items("cmd-1")
    for attempt in range(2):
        queue.mark_in_progress("cmd-1", 0, agent_id="a")
        queue.mark_failed("cmd-1", 0, _error())
        retried = queue.retry("cmd-1", 0)
        assert retried is not None
        assert retried.retry_count == attempt + 1
        assert retried.status is Q.READY
        assert retried.error is None

    queue.mark_in_progress("cmd-1", 0, agent_id="a")
    queue.mark_failed("cmd-1", 0, _error("final"))

    assert queue.retry("cmd-1", 0) is None
    assert queue.item("cmd-1", 0).error.message == "final"


def test_requeue_keeps_retry_count(queue: SubAgentTaskQueue) -> None:
    queue.ready_items("cmd-1")
    queue.mark_in_progress("cmd-1", 1, agent_id="gone")

    assert queue.requeue("cmd-1", 1)

    item = queue.item("cmd-1", 1)
    assert item.status is Q.READY
    assert item.agent_id is None
    assert item.retry_count == 0
    assert queue.requeue("cmd-1", 1) is False


def test_suspend_all_and_counts(queue: SubAgentTaskQueue) -> None:
    queue.ready_items("cmd-1")
    queue.mark_in_progress("cmd-1", 0, agent_id="a")
    queue.mark_in_progress("cmd-1", 1, agent_id="b")

    assert queue.suspend_all_queues() == 2

    counts = queue.counts("cmd-1")
    assert counts[Q.SUSPENDED] == 2
    assert counts[Q.PENDING] == 1
    assert queue.has_suspended("cmd-1")
    assert not queue.has_in_progress("cmd-1")


def test_load_persisted_restores_only_unfinished(state_store: AgentStateStore) -> None:
    first = SubAgentTaskQueue(state_store)
    first.enqueue("open", "run-open", _subtasks([], [0]))
    first.ready_items("open")
    first.mark_in_progress("open", 0, agent_id="a")
    first.enqueue("done", "run-done", _subtasks([]))
    first.ready_items("done")
    first.mark_in_progress("done", 0, agent_id="b")
    first.mark_completed("done", 0, "ok")

    second = SubAgentTaskQueue(state_store)

    assert second.load_persisted() == ["open"]
    assert second.item("open", 0).status is Q.IN_PROGRESS
    assert second.requeue("open", 0)
    assert state_store.load_queue("open")[0].status is Q.READY


def test_adopt_installs_finished_items(state_store: AgentStateStore) -> None:
    first = SubAgentTaskQueue(state_store)
    first.enqueue("cmd-1", "run-1", _subtasks([]))
    first.ready_items("cmd-1")
    first.mark_in_progress("cmd-1", 0, agent_id="a")
    first.mark_completed("cmd-1", 0, "ok")

    second = SubAgentTaskQueue(state_store)
    second.adopt("cmd-1", state_store.load_queue("cmd-1"))

    assert second.is_finished("cmd-1")
    assert second.item("cmd-1", 0).result == "ok"


def test_deferred_writes_wait_for_flush(state_store: AgentStateStore) -> None:
    queue = SubAgentTaskQueue(state_store, write_through=False)
    queue.enqueue("cmd-1", "run-1", _subtasks([], [0]))

    assert state_store.load_queue("cmd-1") is None

    queue.ready_items("cmd-1")
    queue.flush_all()
    assert [item.status for item in state_store.load_queue("cmd-1")] == [Q.READY, Q.PENDING]

    queue.mark_in_progress("cmd-1", 0, agent_id="a")
    assert state_store.load_queue("cmd-1")[0].status is Q.READY

    queue.flush("cmd-1")
    assert state_store.load_queue("cmd-1")[0].status is Q.IN_PROGRESS


def test_remove_queue_deletes_stored_copy(queue: SubAgentTaskQueue, state_store) -> None:
    queue.remove_queue("cmd-1")

    assert queue.commander_ids() == []
    assert state_store.load_queue("cmd-1") is None


def test_returned_items_are_copies(queue: SubAgentTaskQueue) -> None:
    snapshot = queue.items("cmd-1")
    snapshot[0].status = Q.COMPLETED
    snapshot[2].dependencies.append(7)

    assert queue.item("cmd-1", 0).status is Q.PENDING
    assert queue.item("cmd-1", 2).dependencies == [0, 1]
