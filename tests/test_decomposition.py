from __future__ import annotations

import json

import allure
import pytest

from agent_command.errors import DecompositionError, DependencyGraphError, ErrorKind
from agent_command.orchestrator.decomposition import (
    compute_waves,
    parse_decomposition,
    should_decompose,
    validate_dependencies,
)
from agent_command.orchestrator.models import Complexity, DecomposedSubTask

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Decomposition"),
]


def _response(*subtasks: dict) -> str:
    return json.dumps({"subtasks": list(subtasks)})


def _subtask(title: str, dependencies: list[int] | None = None, **extra) -> dict:
    return {
        "title": title,
        "prompt": f"Do {title}",
        "dependencies": dependencies or [],
        **extra,
    }


@pytest.mark.parametrize(
    ("prompt", "expected"),
    [
        ("fix typo", False),
        ("Refactor the auth module and then add tests for the new login flow", True),
        ("Please look at the parser module in the repository and tell me what it does", False),
        (
            "Rename the variables in utils, sort the imports in main, clean the docstrings in cli",
            True,
        ),
        ("Please do the following for me today: 1. tidy readme 2) bump version", True),
        ("首先 重構 登入 模組 然後 更新 文件 以及 相關 說明", True),
    ],
)
def test_should_decompose_heuristic(prompt: str, expected: bool) -> None:
    assert should_decompose(prompt) is expected


def test_parse_reads_fields_and_normalizes_dependencies() -> None:
    raw = _response(
        _subtask("schema", estimated_complexity="HIGH"),
        _subtask("api", [0, 0], can_parallel=False, estimated_complexity="enormous"),
    )

    parsed = parse_decomposition(raw)

    assert [subtask.title for subtask in parsed] == ["schema", "api"]
    assert parsed[0].estimated_complexity is Complexity.HIGH
    assert parsed[1].estimated_complexity is Complexity.MEDIUM
    assert parsed[1].dependencies == [0]
    assert parsed[1].can_parallel is False
    assert parsed[0].prompt == "Do schema"


def test_parse_extracts_object_embedded_in_prose() -> None:
    raw = "Here is the plan:\n" + _response(_subtask("only")) + "\nLet me know."

    parsed = parse_decomposition(raw)

    assert len(parsed) == 1


def test_parse_truncates_to_max_subtasks() -> None:
    raw = _response(*(_subtask(f"step-{index}") for index in range(8)))

    assert len(parse_decomposition(raw, max_subtasks=6)) == 6


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("I could not split this request.", "not a JSON object"),
        (json.dumps({"tasks": []}), "no 'subtasks' array"),
        (_response(), "no sub-tasks"),
        (_response({"title": "", "prompt": "x"}), "non-empty title"),
        (_response({"title": "x"}), "non-empty prompt"),
        (_response(_subtask("x", [True])), "array of integers"),
        (_response(_subtask("x", can_parallel="yes")), "can_parallel"),
        (json.dumps({"subtasks": ["plain string"]}), "must be an object"),
    ],
)
def test_parse_rejects_malformed_responses(raw: str, message: str) -> None:
    with pytest.raises(DecompositionError, match=message) as caught:
        parse_decomposition(raw)

    assert caught.value.kind is ErrorKind.DECOMPOSITION


def _decomposed(*dependencies: list[int]) -> list[DecomposedSubTask]:
    return [
        DecomposedSubTask(title=f"t{index}", prompt="p", dependencies=deps)
        for index, deps in enumerate(dependencies)
    ]


def test_validate_accepts_backward_references() -> None:
    validate_dependencies(_decomposed([], [0], [0, 1]))


@pytest.mark.parametrize(
    ("graph", "message"),
    [
        (([], [5]), "unknown sub-task 5"),
        (([], [1]), "depends on itself"),
        (([1], []), "forward reference"),
        (([], [-1]), "unknown sub-task -1"),
    ],
)
def test_validate_rejects_bad_references(graph, message: str) -> None:
    with pytest.raises(DependencyGraphError, match=message):
        validate_dependencies(_decomposed(*graph))


def test_compute_waves_is_longest_dependency_chain() -> None:
    assert compute_waves([[], [0], [0], [1, 2], []]) == [0, 1, 1, 2, 0]


def test_compute_waves_detects_cycles_and_unknown_indices() -> None:
    with pytest.raises(DependencyGraphError, match="cycle"):
        compute_waves([[1], [0]])
    with pytest.raises(DependencyGraphError, match="unknown"):
        compute_waves([[], [3]])
