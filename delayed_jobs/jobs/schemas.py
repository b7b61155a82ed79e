"""
Pydantic schemas for job enqueueing, ownership and inspection.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OwnerRef(BaseModel):
    """
    Polymorphic reference to the entity that owns a job.

    The engine never dereferences it; callers map owner_type back to their
    own lookup.
    """

    model_config = ConfigDict(frozen=True)

    owner_type: str = Field(..., min_length=1, description="Entity type tag")
    owner_id: str = Field(..., min_length=1, description="Entity identifier")

    @field_validator("owner_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, (int, UUID)):
            return str(value)
        return value

    @classmethod
    def for_entity(cls, entity: Any, owner_type: str | None = None) -> "OwnerRef":
        """Build a reference from any object exposing an ``id`` attribute."""
        entity_id = getattr(entity, "id", None)
        if entity_id is None:
            raise ValueError(
                f"{type(entity).__name__} has no id; persist it before scheduling jobs"
            )
        return cls(owner_type=owner_type or type(entity).__name__, owner_id=entity_id)


class JobCreate(BaseModel):
    """Scheduling metadata for a new job."""

    queue_name: str = Field(..., min_length=1, description="Routing partition")
    priority: int = Field(default=0, description="Lower values run first")
    run_at: datetime = Field(..., description="Earliest time to run job")
    max_attempts: int | None = Field(
        default=None, ge=1, description="Retry budget override"
    )
    owner: OwnerRef | None = None

    @field_validator("run_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("run_at must be timezone-aware")
        return value


class JobResponse(BaseModel):
    """Read model of a job record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payload: dict[str, Any]
    owner_type: str | None = None
    owner_id: str | None = None
    queue_name: str
    priority: int
    run_at: datetime
    attempts: int
    max_attempts: int | None = None

    # Worker coordination
    locked_at: datetime | None = None
    locked_by: str | None = None

    # Outcome
    last_error: str | None = None
    failed_at: datetime | None = None

    created_at: datetime
    updated_at: datetime


class JobStatsResponse(BaseModel):
    """Queue statistics."""

    total_jobs: int
    pending: int
    scheduled: int
    locked: int
    failed: int
    by_queue: dict[str, int]
    oldest_pending_age_seconds: float | None = None
