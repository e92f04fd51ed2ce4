"""Durable per-commander queue of decomposed sub-tasks.

All state changes happen under one lock and are compare-and-set on the
item's current status, so two concurrent claims of the same item cannot
both succeed. Every mutation bumps a per-queue version; the serialized
queue is written after the lock is released and stale versions are never
written over newer ones. With ``write_through`` off, writes happen only on
``flush``, so a caller holding its own lock can defer the I/O.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import replace

from agent_command.errors import SubTaskError
from agent_command.orchestrator.models import (
    DecomposedSubTask,
    QueueItemStatus,
    SubAgentTaskQueueItem,
)
from agent_command.persistence.common import utc_now
from agent_command.persistence.state_store import AgentStateStore

logger = logging.getLogger(__name__)

_CLAIMABLE = (QueueItemStatus.READY, QueueItemStatus.SUSPENDED)
_FAILABLE = (
    QueueItemStatus.PENDING,
    QueueItemStatus.READY,
    QueueItemStatus.IN_PROGRESS,
    QueueItemStatus.SUSPENDED,
)


class SubAgentTaskQueue:
    """Restart-safe queue manager keyed by commander id."""

    def __init__(
        self,
        state_store: AgentStateStore | None = None,
        *,
        max_retries: int = 2,
        write_through: bool = True,
    ) -> None:
        self.state_store = state_store
        self.max_retries = max_retries
        self.write_through = write_through
        self._queues: dict[str, list[SubAgentTaskQueueItem]] = {}
        self._versions: dict[str, int] = {}
        self._written: dict[str, int] = {}
        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()

    # -- mutations ------------------------------------------------------------

    def enqueue(
        self,
        commander_id: str,
        orchestration_id: str,
        subtasks: list[DecomposedSubTask],
    ) -> list[SubAgentTaskQueueItem]:
        """Create the commander's queue; an unfinished queue is never replaced."""

        items = [
            SubAgentTaskQueueItem(
                commander_id=commander_id,
                orchestration_id=orchestration_id,
                task_index=index,
                title=subtask.title,
                prompt=subtask.prompt,
                dependencies=list(subtask.dependencies),
                can_parallel=subtask.can_parallel,
                estimated_complexity=subtask.estimated_complexity,
            )
            for index, subtask in enumerate(subtasks)
        ]
        with self._lock:
            existing = self._queues.get(commander_id)
            if existing is not None and not _all_terminal(existing):
                raise ValueError(f"Commander {commander_id} already has an unfinished queue.")
            self._queues[commander_id] = items
            self._bump(commander_id)
            snapshot = self._copies(commander_id)
        self._changed(commander_id)
        logger.info("Enqueued %d sub-task(s) for commander %s", len(items), commander_id)
        return snapshot

    def mark_ready(self, commander_id: str, index: int) -> bool:
        """Move a pending item to ready once every dependency is completed."""

        with self._lock:
            queue = self._queue(commander_id)
            item = _find(queue, commander_id, index)
            if item.status is not QueueItemStatus.PENDING or not _dependencies_met(queue, item):
                return False
            item.status = QueueItemStatus.READY
            self._bump(commander_id)
        self._changed(commander_id)
        return True

    def ready_items(self, commander_id: str) -> list[SubAgentTaskQueueItem]:
        """Atomically move every pending item with completed dependencies to ready."""

        with self._lock:
            queue = self._queue(commander_id)
            promoted = [
                item
                for item in queue
                if item.status is QueueItemStatus.PENDING and _dependencies_met(queue, item)
            ]
            for item in promoted:
                item.status = QueueItemStatus.READY
            if promoted:
                self._bump(commander_id)
            result = [_copy(item) for item in promoted]
        if result:
            self._changed(commander_id)
        return result

    def mark_in_progress(
        self,
        commander_id: str,
        index: int,
        *,
        agent_id: str,
        session_id: str | None = None,
    ) -> bool:
        """Claim a ready (or resumed suspended) item; at most one claim succeeds."""

        with self._lock:
            item = _find(self._queue(commander_id), commander_id, index)
            if item.status not in _CLAIMABLE:
                return False
            item.status = QueueItemStatus.IN_PROGRESS
            item.agent_id = agent_id
            if session_id is not None:
                item.session_id = session_id
            item.started_at = item.started_at or utc_now()
            item.suspended_at = None
            self._bump(commander_id)
        self._changed(commander_id)
        return True

    def mark_suspended(
        self,
        commander_id: str,
        index: int,
        *,
        session_id: str | None = None,
    ) -> bool:
        with self._lock:
            item = _find(self._queue(commander_id), commander_id, index)
            if item.status is not QueueItemStatus.IN_PROGRESS:
                return False
            item.status = QueueItemStatus.SUSPENDED
            item.suspended_at = utc_now()
            if session_id is not None:
                item.session_id = session_id
            self._bump(commander_id)
        self._changed(commander_id)
        return True

    def mark_completed(self, commander_id: str, index: int, result: str) -> bool:
        with self._lock:
            item = _find(self._queue(commander_id), commander_id, index)
            if item.status is not QueueItemStatus.IN_PROGRESS:
                return False
            item.status = QueueItemStatus.COMPLETED
            item.result = result
            item.error = None
            item.completed_at = utc_now()
            self._bump(commander_id)
        self._changed(commander_id)
        return True

    def mark_failed(self, commander_id: str, index: int, error: SubTaskError) -> bool:
        with self._lock:
            item = _find(self._queue(commander_id), commander_id, index)
            if item.status not in _FAILABLE:
                return False
            item.status = QueueItemStatus.FAILED
            item.error = error
            item.completed_at = utc_now()
            self._bump(commander_id)
        self._changed(commander_id)
        return True

    def can_retry(self, item: SubAgentTaskQueueItem) -> bool:
        return item.can_retry(self.max_retries)

    def retry(self, commander_id: str, index: int) -> SubAgentTaskQueueItem | None:
        """Failed → ready with ``retry_count + 1``; ``None`` when retries are exhausted."""

        with self._lock:
            item = _find(self._queue(commander_id), commander_id, index)
            if not self.can_retry(item):
                return None
            item.retry_count += 1
            item.status = QueueItemStatus.READY
            item.error = None
            item.agent_id = None
            item.completed_at = None
            self._bump(commander_id)
            retried = _copy(item)
        self._changed(commander_id)
        return retried

    def requeue(self, commander_id: str, index: int) -> bool:
        """Return an orphaned in-progress/suspended item to ready without spending a retry."""

        with self._lock:
            item = _find(self._queue(commander_id), commander_id, index)
            if item.status not in (QueueItemStatus.IN_PROGRESS, QueueItemStatus.SUSPENDED):
                return False
            item.status = QueueItemStatus.READY
            item.agent_id = None
            item.suspended_at = None
            self._bump(commander_id)
        self._changed(commander_id)
        return True

    def suspend_all(self, commander_id: str) -> int:
        with self._lock:
            queue = self._queues.get(commander_id, [])
            now = utc_now()
            count = 0
            for item in queue:
                if item.status is QueueItemStatus.IN_PROGRESS:
                    item.status = QueueItemStatus.SUSPENDED
                    item.suspended_at = now
                    count += 1
            if count:
                self._bump(commander_id)
        if count:
            self._changed(commander_id)
        return count

    def suspend_all_queues(self) -> int:
        return sum(self.suspend_all(commander_id) for commander_id in self.commander_ids())

    def flush_all(self) -> None:
        for commander_id in self.commander_ids():
            self.flush(commander_id)

    def remove_queue(self, commander_id: str) -> None:
        with self._lock:
            self._queues.pop(commander_id, None)
            self._versions.pop(commander_id, None)
        with self._persist_lock:
            self._written.pop(commander_id, None)
            if self.state_store is not None:
                self.state_store.delete_queue(commander_id)

    # -- reads ----------------------------------------------------------------

    def commander_ids(self) -> list[str]:
        with self._lock:
            return list(self._queues)

    def items(self, commander_id: str) -> list[SubAgentTaskQueueItem]:
        with self._lock:
            return self._copies(commander_id)

    def item(self, commander_id: str, index: int) -> SubAgentTaskQueueItem | None:
        with self._lock:
            for item in self._queues.get(commander_id, []):
                if item.task_index == index:
                    return _copy(item)
        return None

    def counts(self, commander_id: str) -> dict[QueueItemStatus, int]:
        with self._lock:
            counter = Counter(item.status for item in self._queues.get(commander_id, []))
        return {status: counter.get(status, 0) for status in QueueItemStatus}

    def is_finished(self, commander_id: str) -> bool:
        with self._lock:
            return _all_terminal(self._queues.get(commander_id, []))

    def has_in_progress(self, commander_id: str) -> bool:
        return self.counts(commander_id)[QueueItemStatus.IN_PROGRESS] > 0

    def has_suspended(self, commander_id: str) -> bool:
        return self.counts(commander_id)[QueueItemStatus.SUSPENDED] > 0

    # -- persistence ----------------------------------------------------------

    def load_persisted(self) -> list[str]:
        """Restore stored queues that still have unfinished work; returns their commander ids."""

        if self.state_store is None:
            return []
        restored: list[str] = []
        for commander_id in self.state_store.queue_commander_ids():
            items = self.state_store.load_queue(commander_id)
            if not items or _all_terminal(items):
                continue
            with self._lock:
                self._queues[commander_id] = items
                self._versions[commander_id] = 0
            with self._persist_lock:
                self._written[commander_id] = 0
            restored.append(commander_id)
        if restored:
            logger.info("Restored %d unfinished queue(s)", len(restored))
        return restored

    def adopt(self, commander_id: str, items: list[SubAgentTaskQueueItem]) -> None:
        """Install stored items as the commander's queue even when all of them are finished."""

        with self._lock:
            self._queues[commander_id] = [_copy(item) for item in items]
            self._versions[commander_id] = 0
        with self._persist_lock:
            self._written[commander_id] = 0

    def _queue(self, commander_id: str) -> list[SubAgentTaskQueueItem]:
        queue = self._queues.get(commander_id)
        if queue is None:
            raise KeyError(f"No queue for commander {commander_id}")
        return queue

    def _copies(self, commander_id: str) -> list[SubAgentTaskQueueItem]:
        return [_copy(item) for item in self._queues.get(commander_id, [])]

    def _bump(self, commander_id: str) -> None:
        self._versions[commander_id] = self._versions.get(commander_id, 0) + 1

    def _changed(self, commander_id: str) -> None:
        if self.write_through:
            self.flush(commander_id)

    def flush(self, commander_id: str) -> None:
        """Write the commander's queue if it changed since the last write."""

        if self.state_store is None:
            return
        with self._lock:
            version = self._versions.get(commander_id)
            items = self._copies(commander_id)
        if version is None:
            return
        with self._persist_lock:
            if version <= self._written.get(commander_id, -1):
                return
            self.state_store.save_queue(commander_id, items)
            self._written[commander_id] = version


def _copy(item: SubAgentTaskQueueItem) -> SubAgentTaskQueueItem:
    return replace(item, dependencies=list(item.dependencies))


def _find(
    queue: list[SubAgentTaskQueueItem],
    commander_id: str,
    index: int,
) -> SubAgentTaskQueueItem:
    for item in queue:
        if item.task_index == index:
            return item
    raise KeyError(f"No sub-task {index} in queue for commander {commander_id}")


def _dependencies_met(queue: list[SubAgentTaskQueueItem], item: SubAgentTaskQueueItem) -> bool:
    by_index = {candidate.task_index: candidate for candidate in queue}
    return all(
        dependency in by_index and by_index[dependency].status is QueueItemStatus.COMPLETED
        for dependency in item.dependencies
    )


def _all_terminal(items: list[SubAgentTaskQueueItem]) -> bool:
    return all(item.status.is_terminal for item in items)
