"""Deterministic classification of CLI sub-task failures for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from agent_command.errors import ErrorKind, SubTaskError
from agent_command.orchestrator.retry_policy import is_user_cancellation

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "billing",
    "payment",
    "credit balance",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
    "not logged in",
    "please run /login",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "connection reset",
    "network error",
    "econnreset",
    "socket hang up",
)
_SIGNAL_EXIT_CODES: tuple[int, ...] = (-15, -9, 143, 137)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_error(self, message: str, **context: object) -> SubTaskError:
        details: dict[str, object] = {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "retryable": self.retryable,
        }
        if self.matched_pattern is not None:
            details["matched_pattern"] = self.matched_pattern
        details.update({key: value for key, value in context.items() if value is not None})
        return SubTaskError(kind=self.kind, message=message, context=details)


def classify_failure(
    error_text: str,
    *,
    exit_code: int | None = None,
    timed_out: bool = False,
    cancelled: bool = False,
) -> FailureClassification:
    """Classify one failed CLI run into a retry decision."""

    haystack = error_text.lower()

    if cancelled or is_user_cancellation(error_text):
        return FailureClassification(
            kind=ErrorKind.CANCELLED,
            retryable=False,
            reason_code="user_cancelled",
            matched_rule="cancellation",
        )
    if timed_out:
        return FailureClassification(
            kind=ErrorKind.TIMEOUT,
            retryable=True,
            reason_code="process_hang_timeout",
            matched_rule="timeout",
        )

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.SUBPROCESS_FAILURE,
            retryable=False,
            reason_code="billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.SUBPROCESS_FAILURE,
            retryable=False,
            reason_code="access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.SUBPROCESS_FAILURE,
            retryable=False,
            reason_code="model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.SUBPROCESS_FAILURE,
            retryable=True,
            reason_code="rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in _SIGNAL_EXIT_CODES:
        return FailureClassification(
            kind=ErrorKind.SUBPROCESS_FAILURE,
            retryable=True,
            reason_code="backend_transient",
            matched_rule="generic_transient" if pattern is not None else "signal_exit_code",
            matched_pattern=pattern,
        )

    return FailureClassification(
        kind=ErrorKind.SUBPROCESS_FAILURE,
        retryable=True,
        reason_code="subprocess_failure",
        matched_rule="fallback",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
