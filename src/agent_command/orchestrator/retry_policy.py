"""Sub-task retry policy: exponential backoff and cancellation detection."""

from __future__ import annotations

from dataclasses import dataclass

from agent_command.config import RetrySettings

_USER_CANCELLATION_PATTERNS: tuple[str, ...] = (
    "cancelled",
    "canceled",
    "user cancel",
    "terminated by user",
)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Immutable retry configuration shared by value across a run."""

    max_retries: int = 2
    retry_delay: float = 3.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay_seconds,
            backoff_multiplier=settings.backoff_multiplier,
        )

    @classmethod
    def aggressive(cls) -> RetryPolicy:
        return cls(max_retries=3, retry_delay=1.0)

    @classmethod
    def none(cls) -> RetryPolicy:
        return cls(max_retries=0)

    @property
    def enabled(self) -> bool:
        return self.max_retries > 0

    def delay(self, attempt: int) -> float:
        """Backoff in seconds before retry ``attempt`` (0-based)."""

        return max(0.0, self.retry_delay * self.backoff_multiplier ** max(0, attempt))

    def should_retry(self, retry_count: int, error_text: str | None) -> bool:
        if retry_count >= self.max_retries:
            return False
        return not is_user_cancellation(error_text)


def is_user_cancellation(error_text: str | None) -> bool:
    """True when the error text says the user stopped the work deliberately."""

    if not error_text:
        return False
    lowered = error_text.lower()
    return any(pattern in lowered for pattern in _USER_CANCELLATION_PATTERNS)
