"""
Job record store.

Every public method runs in its own short transaction so that no lock is
held while a job executes; a claim is represented only by the
locked_at/locked_by columns.
"""

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delayed_jobs.config.logging import get_logger
from delayed_jobs.core.exceptions import (
    ClaimConflict,
    NotFoundError,
    StoreUnavailable,
    ValidationError,
)
from delayed_jobs.jobs.models import Job
from delayed_jobs.jobs.schemas import JobStatsResponse

logger = get_logger(__name__)

# Columns callers may rewrite through update(); lock and outcome columns are
# owned by the claim protocol.
MUTABLE_FIELDS = frozenset({"run_at", "priority", "queue_name", "payload", "max_attempts"})

MAX_ERROR_LENGTH = 4000


def _unclaimed():
    return and_(Job.locked_at.is_(None), Job.failed_at.is_(None))


class JobStore:
    """Durable job table with atomic claim semantics."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        claim_retries: int = 10,
    ):
        self.session_factory = session_factory
        self.claim_retries = claim_retries

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """Open a session and transaction, translating I/O failures."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as e:
            raise StoreUnavailable(
                "Job store unavailable", details={"error": str(e)}
            ) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise StoreUnavailable(
                    "Job store connection lost", details={"error": str(e)}
                ) from e
            raise

    async def insert(self, job: Job) -> UUID:
        """Persist a new job and return its id."""
        async with self._transaction() as session:
            session.add(job)
            await session.flush()
            return job.id

    async def get(self, job_id: UUID) -> Job | None:
        async with self._transaction() as session:
            return await session.get(Job, job_id)

    async def find_by_owner(self, owner_type: str, owner_id: str) -> list[Job]:
        """
        All jobs of an owner ordered by created_at, then id.

        Ids are random, so jobs created in the same instant come back in a
        stable order that is not their insertion order.
        """
        async with self._transaction() as session:
            result = await session.execute(
                select(Job)
                .where(Job.owner_type == owner_type, Job.owner_id == owner_id)
                .order_by(Job.created_at, Job.id)
            )
            return list(result.scalars().all())

    async def update(
        self,
        job_id: UUID,
        mutation: dict[str, Any],
        now: datetime,
        only_if_unclaimed: bool = False,
    ) -> Job:
        """
        Apply a partial update to one job.

        Args:
            job_id: Target job
            mutation: Column values to set, limited to MUTABLE_FIELDS
            now: Timestamp recorded as updated_at
            only_if_unclaimed: Re-check in the same statement that the job is
                neither locked nor failed

        Raises:
            NotFoundError: the job no longer exists
            ClaimConflict: only_if_unclaimed was set and the job is locked or failed
        """
        unknown = set(mutation) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot update job fields: {', '.join(sorted(unknown))}",
                details={"allowed": sorted(MUTABLE_FIELDS)},
            )

        stmt = update(Job).where(Job.id == job_id)
        if only_if_unclaimed:
            stmt = stmt.where(_unclaimed())

        async with self._transaction() as session:
            result = await session.execute(
                stmt.values(**mutation, updated_at=now).execution_options(
                    synchronize_session=False
                )
            )

            if result.rowcount == 0:
                current = await session.get(Job, job_id)
                if current is None:
                    raise NotFoundError(
                        "Job not found", details={"job_id": str(job_id)}
                    )
                raise ClaimConflict(
                    "Job is claimed or failed",
                    details={
                        "job_id": str(job_id),
                        "locked_by": current.locked_by,
                        "failed": current.is_failed(),
                    },
                )

            return await session.get(Job, job_id, populate_existing=True)

    async def delete(self, job_id: UUID, only_if_unclaimed: bool = False) -> bool:
        """Delete a job. Deleting a missing job is not an error."""
        stmt = delete(Job).where(Job.id == job_id)
        if only_if_unclaimed:
            stmt = stmt.where(_unclaimed())

        async with self._transaction() as session:
            result = await session.execute(
                stmt.execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def claim_next(
        self, queues: Iterable[str] | None, worker_id: str, now: datetime
    ) -> Job | None:
        """
        Claim the next runnable job for the given queues.

        The candidate is selected with FOR UPDATE SKIP LOCKED (where the
        backend supports it) and locked by a conditional UPDATE that repeats
        the claimability check, so two workers can never both lock one row.

        Returns:
            The claimed job, or None when nothing is runnable

        Raises:
            ClaimConflict: other workers won every race for claim_retries rounds
        """
        candidate = (
            select(Job.id)
            .where(Job.run_at <= now, _unclaimed())
            .order_by(Job.priority, Job.run_at, Job.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        queues = list(queues or [])
        if queues:
            candidate = candidate.where(Job.queue_name.in_(queues))

        for _ in range(self.claim_retries):
            async with self._transaction() as session:
                job_id = (await session.execute(candidate)).scalar_one_or_none()
                if job_id is None:
                    return None

                result = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, _unclaimed())
                    .values(locked_at=now, locked_by=worker_id, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return await session.get(Job, job_id, populate_existing=True)

            logger.debug("Claim race lost", job_id=str(job_id), worker_id=worker_id)

        raise ClaimConflict(
            "Could not claim a job",
            details={"worker_id": worker_id, "rounds": self.claim_retries},
        )

    async def complete(self, job_id: UUID, worker_id: str) -> bool:
        """Remove a successfully executed job."""
        async with self._transaction() as session:
            result = await session.execute(
                delete(Job)
                .where(
                    Job.id == job_id,
                    or_(Job.locked_by == worker_id, Job.locked_at.is_(None)),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def release_for_retry(
        self,
        job_id: UUID,
        worker_id: str,
        run_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        """Count the failed attempt, unlock the job and push run_at back."""
        return await self._record_attempt(
            job_id, worker_id, now, error, run_at=run_at
        )

    async def mark_failed(
        self, job_id: UUID, worker_id: str, error: str, now: datetime
    ) -> bool:
        """Count the failed attempt and abandon the job for good."""
        return await self._record_attempt(
            job_id, worker_id, now, error, failed_at=now
        )

    async def _record_attempt(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime,
        error: str,
        **values: Any,
    ) -> bool:
        # Only the lock holder records an outcome; after a reap the job may
        # belong to another worker.
        async with self._transaction() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.locked_by == worker_id)
                .values(
                    attempts=Job.attempts + 1,
                    last_error=error[:MAX_ERROR_LENGTH],
                    locked_at=None,
                    locked_by=None,
                    updated_at=now,
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            recorded = result.rowcount == 1

        if not recorded:
            logger.warning(
                "Outcome dropped, job no longer held by worker",
                job_id=str(job_id),
                worker_id=worker_id,
            )
        return recorded

    async def unlock_expired(self, cutoff: datetime, now: datetime) -> int:
        """
        Release locks taken before cutoff so another worker can retry the job.

        Attempts and the failure state are left alone; the reaped job is
        claimable again straight away.

        Returns:
            Number of jobs unlocked
        """
        held_for = int((now - cutoff).total_seconds())
        unlocked = 0

        async with self._transaction() as session:
            expired = (
                await session.execute(
                    select(Job.id, Job.locked_by)
                    .where(Job.locked_at < cutoff)
                    .with_for_update(skip_locked=True)
                )
            ).all()

            for row in expired:
                error = f"Lock expired after {held_for}s (worker {row.locked_by})"
                result = await session.execute(
                    update(Job)
                    .where(Job.id == row.id, Job.locked_at < cutoff)
                    .values(
                        last_error=error,
                        locked_at=None,
                        locked_by=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                unlocked += result.rowcount

        if unlocked:
            logger.warning(
                "Recovered expired job locks",
                job_count=unlocked,
                workers=sorted({row.locked_by for row in expired if row.locked_by}),
            )
        return unlocked

    async def list_failed(self, limit: int = 100) -> list[Job]:
        async with self._transaction() as session:
            result = await session.execute(
                select(Job)
                .where(Job.failed_at.is_not(None))
                .order_by(Job.failed_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def retry_failed(
        self, job_id: UUID, now: datetime, extra_attempts: int
    ) -> bool:
        """Requeue a failed job with a fresh retry budget on top of its attempts."""
        async with self._transaction() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.failed_at.is_not(None))
                .values(
                    failed_at=None,
                    run_at=now,
                    max_attempts=Job.attempts + extra_attempts,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def purge_failed(self, older_than: datetime) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                delete(Job)
                .where(Job.failed_at.is_not(None), Job.failed_at < older_than)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def stats(self, now: datetime) -> JobStatsResponse:
        """Counts of jobs by state and queue."""
        runnable = and_(_unclaimed(), Job.run_at <= now)
        scheduled = and_(_unclaimed(), Job.run_at > now)

        async with self._transaction() as session:

            async def count(*criteria) -> int:
                result = await session.execute(
                    select(func.count()).select_from(Job).where(*criteria)
                )
                return result.scalar() or 0

            total = await count()
            pending = await count(runnable)
            waiting = await count(scheduled)
            locked = await count(Job.locked_at.is_not(None))
            failed = await count(Job.failed_at.is_not(None))

            by_queue_result = await session.execute(
                select(Job.queue_name, func.count())
                .where(Job.failed_at.is_(None))
                .group_by(Job.queue_name)
            )
            by_queue = {name: n for name, n in by_queue_result.all()}

            oldest = (
                await session.execute(
                    select(Job.run_at).where(runnable).order_by(Job.run_at).limit(1)
                )
            ).scalar_one_or_none()

        return JobStatsResponse(
            total_jobs=total,
            pending=pending,
            scheduled=waiting,
            locked=locked,
            failed=failed,
            by_queue=by_queue,
            oldest_pending_age_seconds=(
                (now - oldest).total_seconds() if oldest is not None else None
            ),
        )
