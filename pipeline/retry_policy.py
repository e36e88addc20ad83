"""Retry/backoff policy for queued jobs."""

from dataclasses import dataclass
from typing import Optional

from pipeline.enums import BackoffType


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often a job is delivered and how long to wait between deliveries.

    ``attempts`` counts every delivery including the first, so attempts=3 means
    one delivery plus at most two redeliveries.
    """

    attempts: int = 3
    backoff_type: BackoffType = BackoffType.EXPONENTIAL
    base_delay_ms: int = 2000
    max_delay_ms: Optional[int] = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"attempts must be at least 1, got {self.attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be non-negative, got {self.base_delay_ms}")
        # Accept plain strings from configuration
        object.__setattr__(self, "backoff_type", BackoffType(self.backoff_type))

    def delay_for(self, attempt: int) -> int:
        """
        Delay in milliseconds before redelivering after failed attempt ``attempt`` (1-based).

        Exponential backoff doubles the base delay per attempt: 2000, 4000, 8000, ...
        """
        if attempt < 1:
            raise ValueError(f"attempt must be at least 1, got {attempt}")
        if self.backoff_type == BackoffType.EXPONENTIAL:
            delay = self.base_delay_ms * (2 ** (attempt - 1))
        else:
            delay = self.base_delay_ms
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return delay

    def is_exhausted(self, attempt: int) -> bool:
        """True when ``attempt`` (1-based) was the last delivery allowed."""
        return attempt >= self.attempts
