from typing import Any


class DelayedJobsError(Exception):
    """Base exception for the delayed job engine."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DelayedJobsError):
    """Raised when enqueue or mutation input is rejected."""


class NotFoundError(DelayedJobsError):
    """Raised when an update target no longer exists (completed or deleted)."""


class ClaimConflict(DelayedJobsError):
    """Raised when a row was claimed by another worker between lookup and write."""


class StoreUnavailable(DelayedJobsError):
    """Raised when the job store cannot be reached or fails with an I/O error."""


class ExecutionFailure(DelayedJobsError):
    """
    Raised by a unit of work to report how its failure should be treated.

    Retryable failures are rescheduled with backoff; non-retryable ones mark
    the job failed immediately regardless of the remaining attempt budget.
    """

    def __init__(
        self,
        detail: str,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ):
        self.detail = detail
        self.retryable = retryable
        super().__init__(detail, details)
