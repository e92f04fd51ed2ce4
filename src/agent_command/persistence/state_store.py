"""JSON persistence of resume contexts, task queues, run headers and snapshots."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from typing import Any

from agent_command.errors import StorageError
from agent_command.orchestrator.models import (
    AgentStateSnapshot,
    OrchestrationState,
    ResumeContext,
    SubAgentTaskQueueItem,
)
from agent_command.persistence.store import KeyValueStore

logger = logging.getLogger(__name__)

RESUME_PREFIX = "resume/"
QUEUE_PREFIX = "queue/"
ORCHESTRATION_PREFIX = "orchestration/"
SNAPSHOT_KEY = "snapshot"


def encode(payload: dict[str, Any] | list[Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True).encode("utf-8")


def decode(key: str, raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise StorageError(
            f"Stored value under {key} is not valid JSON: {error}",
            key=key,
        ) from error


class AgentStateStore:
    """Typed facade over an injected ``KeyValueStore``."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    # -- resume contexts ------------------------------------------------------

    def save_resume_context(self, context: ResumeContext) -> None:
        self.store.put(f"{RESUME_PREFIX}{context.agent_id}", encode(context.to_dict()))
        logger.debug("Saved resume context for agent %s", context.agent_id)

    def load_resume_context(self, agent_id: str) -> ResumeContext | None:
        key = f"{RESUME_PREFIX}{agent_id}"
        raw = self.store.get(key)
        if raw is None:
            return None
        return _parse(key, raw, ResumeContext.from_dict)

    def delete_resume_context(self, agent_id: str) -> None:
        self.store.delete(f"{RESUME_PREFIX}{agent_id}")

    def has_resume_context(self, agent_id: str) -> bool:
        return self.store.get(f"{RESUME_PREFIX}{agent_id}") is not None

    def pending_resumes(self) -> list[ResumeContext]:
        """All readable resume contexts, most recently suspended first."""

        contexts: list[ResumeContext] = []
        for key in self.store.keys(RESUME_PREFIX):
            raw = self.store.get(key)
            if raw is None:
                continue
            try:
                contexts.append(_parse(key, raw, ResumeContext.from_dict))
            except StorageError as error:
                logger.warning("Skipping unreadable resume context: %s", error)
        contexts.sort(key=lambda context: context.suspended_at, reverse=True)
        return contexts

    # -- task queues ----------------------------------------------------------

    def save_queue(self, commander_id: str, items: list[SubAgentTaskQueueItem]) -> None:
        self.store.put(
            f"{QUEUE_PREFIX}{commander_id}",
            encode([item.to_dict() for item in items]),
        )

    def load_queue(self, commander_id: str) -> list[SubAgentTaskQueueItem] | None:
        key = f"{QUEUE_PREFIX}{commander_id}"
        raw = self.store.get(key)
        if raw is None:
            return None
        return _parse(key, raw, _queue_from_raw)

    def delete_queue(self, commander_id: str) -> None:
        self.store.delete(f"{QUEUE_PREFIX}{commander_id}")

    def queue_commander_ids(self) -> list[str]:
        return [key.removeprefix(QUEUE_PREFIX) for key in self.store.keys(QUEUE_PREFIX)]

    # -- orchestration headers ------------------------------------------------

    def save_orchestration(self, state: OrchestrationState) -> None:
        self.store.put(f"{ORCHESTRATION_PREFIX}{state.id}", encode(state.header()))

    def load_orchestration(self, orchestration_id: str) -> OrchestrationState | None:
        key = f"{ORCHESTRATION_PREFIX}{orchestration_id}"
        raw = self.store.get(key)
        if raw is None:
            return None
        return _parse(key, raw, OrchestrationState.from_header)

    def orchestration_ids(self) -> list[str]:
        return [
            key.removeprefix(ORCHESTRATION_PREFIX) for key in self.store.keys(ORCHESTRATION_PREFIX)
        ]

    # -- snapshot -------------------------------------------------------------

    def save_snapshot(self, snapshot: AgentStateSnapshot) -> None:
        self.store.put(SNAPSHOT_KEY, encode(snapshot.to_dict()))
        logger.debug(
            "Saved snapshot: %d agent(s), %d task(s), %d resume context(s)",
            len(snapshot.agents),
            len(snapshot.tasks),
            len(snapshot.resume_contexts),
        )

    def load_snapshot(self) -> AgentStateSnapshot | None:
        raw = self.store.get(SNAPSHOT_KEY)
        if raw is None:
            return None
        return _parse(SNAPSHOT_KEY, raw, AgentStateSnapshot.from_dict)


def _queue_from_raw(raw: object) -> list[SubAgentTaskQueueItem]:
    if not isinstance(raw, list):
        raise TypeError("queue must be an array")
    return [SubAgentTaskQueueItem.from_dict(item) for item in raw]


def _parse(key: str, raw: bytes, reader: Callable[[object], Any]) -> Any:
    payload = decode(key, raw)
    try:
        return reader(payload)
    except (TypeError, ValueError, KeyError) as error:
        raise StorageError(f"Stored value under {key} is malformed: {error}", key=key) from error


class SnapshotAutoSaver:
    """Background thread that writes a fresh snapshot every ``interval_seconds``."""

    def __init__(
        self,
        state_store: AgentStateStore,
        snapshot_provider: Callable[[], AgentStateSnapshot],
        *,
        interval_seconds: float = 30.0,
    ) -> None:
        self._state_store = state_store
        self._snapshot_provider = snapshot_provider
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="snapshot-autosave",
        )
        self._thread.start()
        logger.info("Snapshot auto-save started (every %.1fs)", self._interval)

    def stop(self, *, final_save: bool = True) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=15)
        self._thread = None
        if final_save:
            self.save_now()
        logger.info("Snapshot auto-save stopped")

    def save_now(self) -> None:
        self._state_store.save_snapshot(self._snapshot_provider())

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self._interval):
            try:
                self.save_now()
            except Exception:
                logger.exception("Snapshot auto-save failed")
