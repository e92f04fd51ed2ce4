"""Decomposition heuristics, response parsing and wave computation."""

from __future__ import annotations

import json
import re
from typing import Any

from agent_command.errors import DecompositionError, DependencyGraphError
from agent_command.orchestrator.models import Complexity, DecomposedSubTask

_TASK_INDICATORS: tuple[str, ...] = (
    "and then",
    "after that",
    "also",
    "additionally",
    "next",
    "first",
    "second",
    "third",
    "finally",
    "step",
    "refactor",
    "update",
    "add tests",
    "write tests",
    "fix",
    "implement",
    "create",
    "migrate",
    "然後",
    "接著",
    "同時",
    "另外",
    "最後",
    "第一",
    "第二",
    "第三",
    "首先",
    "重構",
    "更新",
    "測試",
    "修復",
    "實作",
    "建立",
)
_SEPARATORS = frozenset({",", ";", "、"})
_NUMBERED_LIST = re.compile(r"\d+[.)]\s")
_EMBEDDED_OBJECT = re.compile(r"\{[\s\S]*\"subtasks\"[\s\S]*\}")


def should_decompose(prompt: str) -> bool:
    """Cheap heuristic: does the prompt read like several steps?"""

    trimmed = prompt.strip()
    word_count = len(trimmed.split())
    if word_count <= 8:
        return False

    lowered = trimmed.lower()
    if sum(1 for indicator in _TASK_INDICATORS if indicator in lowered) >= 2:
        return True

    separators = sum(1 for char in trimmed if char in _SEPARATORS)
    if separators >= 2 and word_count > 12:
        return True

    return _NUMBERED_LIST.search(trimmed) is not None


def parse_decomposition(raw: str, *, max_subtasks: int = 6) -> list[DecomposedSubTask]:
    """Parse the decomposition response; any shape problem is a ``DecompositionError``."""

    payload = _load_payload(raw)
    subtasks = payload.get("subtasks")
    if not isinstance(subtasks, list):
        raise DecompositionError("Decomposition response has no 'subtasks' array.")
    if not subtasks:
        raise DecompositionError("Decomposition produced no sub-tasks.")

    parsed: list[DecomposedSubTask] = []
    for position, entry in enumerate(subtasks[:max_subtasks]):
        parsed.append(_parse_subtask(position, entry))
    return parsed


def _load_payload(raw: str) -> dict[str, Any]:
    text = raw.strip()
    candidates = [text]
    match = _EMBEDDED_OBJECT.search(text)
    if match is not None and match.group(0) != text:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    raise DecompositionError(
        "Decomposition response is not a JSON object.",
        excerpt=text[:200],
    )


def _parse_subtask(position: int, entry: object) -> DecomposedSubTask:
    if not isinstance(entry, dict):
        raise DecompositionError(f"Sub-task {position} must be an object.", index=position)
    title = entry.get("title")
    prompt = entry.get("prompt")
    dependencies = entry.get("dependencies", [])
    can_parallel = entry.get("can_parallel", True)
    if not isinstance(title, str) or not title.strip():
        raise DecompositionError(f"Sub-task {position} needs a non-empty title.", index=position)
    if not isinstance(prompt, str) or not prompt.strip():
        raise DecompositionError(f"Sub-task {position} needs a non-empty prompt.", index=position)
    if not isinstance(dependencies, list) or not all(
        isinstance(value, int) and not isinstance(value, bool) for value in dependencies
    ):
        raise DecompositionError(
            f"Sub-task {position} dependencies must be an array of integers.",
            index=position,
        )
    if not isinstance(can_parallel, bool):
        raise DecompositionError(
            f"Sub-task {position} can_parallel must be a boolean.",
            index=position,
        )
    return DecomposedSubTask(
        title=title.strip(),
        prompt=prompt.strip(),
        dependencies=sorted(set(dependencies)),
        can_parallel=can_parallel,
        estimated_complexity=Complexity.parse(entry.get("estimated_complexity")),
    )


def validate_dependencies(subtasks: list[DecomposedSubTask]) -> None:
    """Reject self, forward and out-of-range references before anything runs.

    Dependencies may only point at strictly earlier indices, which also rules
    out cycles.
    """

    for index, subtask in enumerate(subtasks):
        for dependency in subtask.dependencies:
            if dependency < 0 or dependency >= len(subtasks):
                raise DependencyGraphError(
                    f"Sub-task {index} depends on unknown sub-task {dependency}.",
                    index=index,
                    dependency=dependency,
                )
            if dependency == index:
                raise DependencyGraphError(
                    f"Sub-task {index} depends on itself.",
                    index=index,
                    dependency=dependency,
                )
            if dependency > index:
                raise DependencyGraphError(
                    f"Sub-task {index} has a forward reference to sub-task {dependency}.",
                    index=index,
                    dependency=dependency,
                )


def compute_waves(dependencies: list[list[int]]) -> list[int]:
    """``wave(t) = 0`` without dependencies, else ``1 + max(wave(d))``.

    Raises ``DependencyGraphError`` on unknown indices or cycles, so it is
    safe to call on graphs that did not pass ``validate_dependencies``.
    """

    count = len(dependencies)
    waves: list[int | None] = [None] * count
    visiting: set[int] = set()

    def resolve(index: int) -> int:
        known = waves[index]
        if known is not None:
            return known
        if index in visiting:
            raise DependencyGraphError(f"Dependency cycle through sub-task {index}.", index=index)
        visiting.add(index)
        wave = 0
        for dependency in dependencies[index]:
            if dependency < 0 or dependency >= count:
                raise DependencyGraphError(
                    f"Sub-task {index} depends on unknown sub-task {dependency}.",
                    index=index,
                    dependency=dependency,
                )
            wave = max(wave, resolve(dependency) + 1)
        visiting.discard(index)
        waves[index] = wave
        return wave

    return [resolve(index) for index in range(count)]
