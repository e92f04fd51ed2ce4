from __future__ import annotations

import allure
import pytest

from agent_command.backend.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_failure,
)
from agent_command.errors import ErrorKind

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_billing_over_transient_exit_code() -> None:
    classified = classify_failure("Quota exceeded for this project (429)", exit_code=137)

    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"
    assert classified.retryable is False


def test_cancellation_wins_over_everything() -> None:
    classified = classify_failure("rate limit", cancelled=True, timed_out=True)

    assert classified.kind is ErrorKind.CANCELLED
    assert classified.retryable is False


def test_cancellation_detected_from_text() -> None:
    assert classify_failure("Task was canceled by the user").kind is ErrorKind.CANCELLED


def test_timeout_is_retryable() -> None:
    classified = classify_failure("", timed_out=True)

    assert classified.kind is ErrorKind.TIMEOUT
    assert classified.retryable is True


@pytest.mark.parametrize(
    ("text", "exit_code", "rule", "retryable"),
    [
        ("401 Unauthorized: invalid api key", 1, "access_or_auth", False),
        ("Error: model not found: opus-x", 1, "model_not_available", False),
        ("API overloaded, try again later", 1, "rate_limit_transient", True),
        ("read ECONNRESET", 1, "generic_transient", True),
        ("", 143, "signal_exit_code", True),
        ("Simulated failure", 1, "fallback", True),
    ],
)
def test_classifier_rules(text: str, exit_code: int, rule: str, retryable: bool) -> None:
    classified = classify_failure(text, exit_code=exit_code)

    assert classified.matched_rule == rule
    assert classified.retryable is retryable
    assert classified.kind is ErrorKind.SUBPROCESS_FAILURE


def test_to_error_carries_classification_context() -> None:
    error = classify_failure("too many requests").to_error(
        "Sub-task failed",
        exit_code=1,
        stderr_tail=None,
    )

    assert error.kind is ErrorKind.SUBPROCESS_FAILURE
    assert error.message == "Sub-task failed"
    assert error.context == {
        "classifier_version": 1,
        "reason_code": "rate_limit_transient",
        "matched_rule": "rate_limit_transient",
        "retryable": True,
        "matched_pattern": "too many requests",
        "exit_code": 1,
    }
