"""
Retry and failure policy.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from delayed_jobs.config.settings import Settings


@dataclass(frozen=True)
class RetryDecision:
    give_up: bool
    run_at: datetime | None = None


class RetryPolicy:
    """Exponential backoff with jitter and a bounded attempt budget."""

    def __init__(
        self,
        max_attempts: int,
        backoff_base_s: float,
        max_backoff_s: float,
        jitter: float = 0.25,
        rng: random.Random | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.max_backoff_s = max_backoff_s
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.job_max_attempts,
            backoff_base_s=settings.job_backoff_base_ms / 1000,
            max_backoff_s=settings.job_max_backoff_s,
            jitter=settings.job_backoff_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before the retry that follows the given attempt."""
        # Exponential backoff: base * 2^(attempt-1)
        delay = min(self.max_backoff_s, self.backoff_base_s * (2 ** (attempt - 1)))

        if self.jitter:
            delay += delay * self.jitter * (2 * self._rng.random() - 1)

        return max(0.0, delay)

    def decide(
        self,
        attempt: int,
        now: datetime,
        retryable: bool = True,
        max_attempts: int | None = None,
    ) -> RetryDecision:
        """
        Decide what happens after a failed attempt.

        Args:
            attempt: Attempt number that just failed (1-based, already counted)
            now: Current time
            retryable: False when the failure can never succeed on retry
            max_attempts: Per-job override of the budget

        Returns:
            RetryDecision with give_up set, or the next run_at
        """
        budget = max_attempts or self.max_attempts
        if not retryable or attempt >= budget:
            return RetryDecision(give_up=True)

        return RetryDecision(
            give_up=False, run_at=now + timedelta(seconds=self.delay_for(attempt))
        )
