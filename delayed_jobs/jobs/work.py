"""
Unit-of-work contract shared by job kinds and the worker.

A unit of work is a pydantic model: its fields are the captured arguments,
serialized into the job payload as ``{"kind": ..., "args": {...}}`` and
rebuilt by the worker from the job registry. Only registered kinds can be
enqueued or executed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, ValidationError as PydanticValidationError

from delayed_jobs.config.settings import Settings
from delayed_jobs.core.exceptions import ExecutionFailure, ValidationError
from delayed_jobs.core.registries import Notifier, job_registry
from delayed_jobs.jobs.store import JobStore


@dataclass(frozen=True)
class JobContext:
    """Runtime context handed to a unit of work."""

    job_id: UUID
    attempt: int
    worker_id: str
    settings: Settings
    notifier: Notifier
    store: JobStore
    started_at: datetime


class UnitOfWork(BaseModel):
    """
    Base class for job kinds.

    Subclasses set ``kind`` and optionally ``queue``, and implement
    ``perform``. Work may run more than once (a slow worker can be reaped
    and the job reclaimed), so ``perform`` should be idempotent where it can.
    """

    kind: ClassVar[str]
    queue: ClassVar[str | None] = None

    def queue_name(self) -> str | None:
        """Queue this work routes to; None falls back to the default queue."""
        return self.queue

    async def perform(self, ctx: JobContext) -> None:
        raise NotImplementedError

    def to_payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "args": self.model_dump(mode="json")}


def ensure_registered(work: UnitOfWork) -> None:
    if work.kind not in job_registry:
        raise ValidationError(
            f"Job kind '{work.kind}' is not registered",
            details={"registered": job_registry.list()},
        )


def load_work(payload: dict[str, Any]) -> UnitOfWork:
    """
    Rebuild a unit of work from a stored payload.

    Unknown kinds and arguments that no longer validate cannot succeed on a
    retry, so they surface as non-retryable failures.
    """
    kind = (payload or {}).get("kind")
    try:
        cls = job_registry.get(kind)
    except KeyError as e:
        raise ExecutionFailure(f"Unknown job kind: {kind}", retryable=False) from e

    try:
        return cls.model_validate(payload.get("args") or {})
    except PydanticValidationError as e:
        raise ExecutionFailure(
            f"Invalid arguments for {kind}: {e.error_count()} error(s)",
            retryable=False,
            details={"errors": e.errors(include_url=False)},
        ) from e
