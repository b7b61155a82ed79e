"""
Job record model for the delayed job engine.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from delayed_jobs.infra.database import Base, UTCDateTime


def utcnow() -> datetime:
    return datetime.now(UTC)


class Job(Base):
    """
    A persisted unit of scheduled work.

    A job is claimable while run_at has passed and it is neither locked nor
    failed. Successful jobs are deleted; jobs that exhaust their retry budget
    keep their row with failed_at set for inspection.
    """

    __tablename__ = "delayed_jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, comment="Tagged unit of work {kind, args}"
    )

    # Polymorphic owner
    owner_type: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Type tag of the owning entity"
    )
    owner_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Identifier of the owning entity"
    )

    # Scheduling
    queue_name: Mapped[str] = mapped_column(
        Text, nullable=False, default="default", comment="Routing partition"
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Lower is dequeued first"
    )
    run_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, comment="Earliest time to run job"
    )

    # Worker coordination
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="When job was locked by worker"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID that locked the job"
    )

    # Outcome tracking
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of attempts made"
    )
    max_attempts: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="Per-job retry budget override"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message"
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Set when retries are exhausted"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "(owner_type IS NULL) = (owner_id IS NULL)",
            name="delayed_jobs_owner_check",
        ),
        CheckConstraint("attempts >= 0", name="delayed_jobs_attempts_check"),
        Index("ix_delayed_jobs_priority_run_at", "priority", "run_at"),
        Index("ix_delayed_jobs_owner", "owner_type", "owner_id"),
        Index("ix_delayed_jobs_queue_name", "queue_name"),
        Index("ix_delayed_jobs_locked_at", "locked_at"),
    )

    @property
    def kind(self) -> str | None:
        """Registered job kind from the payload."""
        return (self.payload or {}).get("kind")

    @property
    def args(self) -> dict[str, Any]:
        return (self.payload or {}).get("args") or {}

    def is_locked(self) -> bool:
        return self.locked_at is not None

    def is_failed(self) -> bool:
        return self.failed_at is not None

    def is_claimable(self, now: datetime) -> bool:
        """Check whether a worker may claim this job at the given time."""
        return not self.is_locked() and not self.is_failed() and self.run_at <= now

    def is_lock_expired(self, max_run_time_s: int, now: datetime) -> bool:
        """Check if a held lock is older than the execution timeout."""
        if not self.locked_at:
            return False
        return (now - self.locked_at).total_seconds() > max_run_time_s

    def __repr__(self) -> str:
        return (
            f"<Job id={self.id} kind={self.kind} queue={self.queue_name} "
            f"run_at={self.run_at} attempts={self.attempts}>"
        )
