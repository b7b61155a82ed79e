"""
Job service: enqueueing and owner-based lookup, rescheduling and cancellation.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from delayed_jobs.config.logging import get_logger
from delayed_jobs.config.settings import Settings
from delayed_jobs.core.exceptions import ClaimConflict, NotFoundError, ValidationError
from delayed_jobs.jobs.models import Job, utcnow
from delayed_jobs.jobs.schemas import JobCreate, JobResponse, JobStatsResponse, OwnerRef
from delayed_jobs.jobs.store import JobStore
from delayed_jobs.jobs.work import UnitOfWork, ensure_registered

logger = get_logger(__name__)


class JobService:
    """
    Entry point for owning entities.

    Enqueue never checks for existing jobs of the same owner; callers that
    want one pending job per owner use schedule(), or find_by_owner() first.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

    async def enqueue(
        self,
        work: UnitOfWork,
        owner: OwnerRef | None = None,
        run_at: datetime | None = None,
        queue_name: str | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
    ) -> UUID:
        """
        Enqueue a unit of work.

        Args:
            work: Registered unit of work carrying its arguments
            owner: Entity the job belongs to, used for later lookup
            run_at: Earliest run time, defaults to now
            queue_name: Overrides the work's own queue
            priority: Lower runs first, defaults to JOB_DEFAULT_PRIORITY
            max_attempts: Overrides JOB_MAX_ATTEMPTS for this job

        Returns:
            The new job id
        """
        ensure_registered(work)
        now = self.clock()

        try:
            job_create = JobCreate(
                queue_name=queue_name
                or work.queue_name()
                or self.settings.job_default_queue,
                priority=(
                    self.settings.job_default_priority if priority is None else priority
                ),
                run_at=_as_utc(run_at) if run_at else now,
                max_attempts=max_attempts,
                owner=owner,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid job parameters",
                details={"errors": e.errors(include_url=False)},
            ) from e

        job = Job(
            payload=work.to_payload(),
            owner_type=owner.owner_type if owner else None,
            owner_id=owner.owner_id if owner else None,
            queue_name=job_create.queue_name,
            priority=job_create.priority,
            run_at=job_create.run_at,
            max_attempts=job_create.max_attempts,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        job_id = await self.store.insert(job)

        logger.info(
            "Job enqueued",
            job_id=str(job_id),
            kind=work.kind,
            queue=job.queue_name,
            priority=job.priority,
            run_at=job.run_at.isoformat(),
            owner_type=job.owner_type,
            owner_id=job.owner_id,
        )
        return job_id

    async def enqueue_for(self, entity, work: UnitOfWork, **kwargs) -> UUID:
        """Enqueue work owned by an entity exposing an ``id``."""
        return await self.enqueue(work, owner=OwnerRef.for_entity(entity), **kwargs)

    async def find_by_owner(self, owner: OwnerRef) -> list[Job]:
        """All jobs of an owner, oldest first (ties ordered by id)."""
        return await self.store.find_by_owner(owner.owner_type, owner.owner_id)

    async def reschedule(self, owner: OwnerRef, new_run_at: datetime) -> int:
        """
        Move every pending job of an owner to a new run time.

        Jobs that are locked or failed are left alone, including ones claimed
        between the lookup and the write.

        Returns:
            Number of jobs updated
        """
        new_run_at = _as_utc(new_run_at)
        now = self.clock()
        updated = 0

        for job in await self.find_by_owner(owner):
            if job.is_locked() or job.is_failed():
                continue
            try:
                await self.store.update(
                    job.id, {"run_at": new_run_at}, now, only_if_unclaimed=True
                )
            except (ClaimConflict, NotFoundError) as e:
                logger.info(
                    "Reschedule skipped job",
                    job_id=str(job.id),
                    reason=type(e).__name__,
                )
                continue
            updated += 1

        logger.info(
            "Jobs rescheduled",
            owner_type=owner.owner_type,
            owner_id=owner.owner_id,
            run_at=new_run_at.isoformat(),
            updated=updated,
        )
        return updated

    async def cancel(self, owner: OwnerRef) -> int:
        """
        Delete every pending job of an owner.

        Running jobs are not interrupted and failed jobs are kept for
        inspection.

        Returns:
            Number of jobs removed
        """
        removed = 0
        for job in await self.find_by_owner(owner):
            if job.is_locked() or job.is_failed():
                continue
            if await self.store.delete(job.id, only_if_unclaimed=True):
                removed += 1

        logger.info(
            "Jobs canceled",
            owner_type=owner.owner_type,
            owner_id=owner.owner_id,
            removed=removed,
        )
        return removed

    async def schedule(
        self,
        owner: OwnerRef,
        work: UnitOfWork,
        run_at: datetime,
        **kwargs,
    ) -> UUID | int:
        """
        Keep one pending job for an owner at run_at.

        Reschedules the owner's pending jobs, or enqueues work when none
        could be updated (none exist, or they are all running or failed).

        Returns:
            The new job id when one was created, otherwise the number updated
        """
        updated = await self.reschedule(owner, run_at)
        if updated:
            return updated
        return await self.enqueue(work, owner=owner, run_at=run_at, **kwargs)

    async def get_job(self, job_id: UUID) -> Job | None:
        return await self.store.get(job_id)

    async def list_failed(self, limit: int = 100) -> list[JobResponse]:
        """Snapshot of permanently failed jobs, most recent first."""
        jobs = await self.store.list_failed(limit=limit)
        return [JobResponse.model_validate(job) for job in jobs]

    async def retry_failed(self, job_id: UUID) -> bool:
        """Requeue a failed job with a fresh retry budget."""
        success = await self.store.retry_failed(
            job_id, self.clock(), extra_attempts=self.settings.job_max_attempts
        )
        if success:
            logger.info("Failed job requeued", job_id=str(job_id))
        return success

    async def purge_failed(self) -> int:
        """Delete failed jobs older than the retention window."""
        cutoff = self.clock() - timedelta(days=self.settings.job_failed_retention_days)
        deleted_count = await self.store.purge_failed(cutoff)

        if deleted_count > 0:
            logger.info(
                "Purged failed jobs",
                deleted_count=deleted_count,
                retention_days=self.settings.job_failed_retention_days,
            )
        return deleted_count

    async def get_job_stats(self) -> JobStatsResponse:
        return await self.store.stats(self.clock())


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
