"""
Job worker: polls the store, executes claimed jobs and reaps expired locks.
"""

import asyncio
import os
import socket
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from uuid import UUID

from delayed_jobs.config.logging import bind_job_context, clear_job_context, get_logger
from delayed_jobs.config.settings import Settings
from delayed_jobs.core.exceptions import ClaimConflict, ExecutionFailure, StoreUnavailable
from delayed_jobs.core.registries import Notifier, notifier_registry
from delayed_jobs.jobs.models import Job, utcnow
from delayed_jobs.jobs.retry import RetryPolicy
from delayed_jobs.jobs.store import JobStore
from delayed_jobs.jobs.work import JobContext, load_work

logger = get_logger(__name__)

MAX_POLL_BACKOFF_S = 60
SHUTDOWN_GRACE_S = 30


class JobWorker:
    """
    Polling job worker.

    Features:
    - Atomic claims through the store, any number of workers per table
    - Bounded concurrent executions per worker
    - Retry with exponential backoff, permanent failure after the budget
    - Reaper that releases locks held longer than the execution timeout
    - Backoff while the store is unavailable

    Execution happens outside any store transaction. A job whose lock is
    reaped while its worker is merely slow can run twice, so units of work
    should be idempotent.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        worker_id: str | None = None,
        queues: Iterable[str] | None = None,
        retry_policy: RetryPolicy | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
        reaper: bool = True,
    ):
        self.store = store
        self.settings = settings
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.queues = list(settings.job_queues if queues is None else queues)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.notifier = notifier or notifier_registry.get(settings.notifier.value)
        self.clock = clock
        self.reaper = reaper
        self.running = False
        self.active_jobs: set[UUID] = set()
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._stopped = asyncio.Event()
        self._stopped.set()

    async def start(self) -> None:
        """Start the polling loop, and the reaper loop when enabled."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._stopping.clear()
        self._stopped.clear()
        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            queues=self.queues or "*",
            concurrency=self.settings.job_concurrency,
            poll_interval_ms=self.settings.job_poll_interval_ms,
        )

        loops = [self._worker_loop()]
        if self.reaper:
            loops.append(self._reaper_loop())

        try:
            await asyncio.gather(*loops)
        finally:
            self.running = False
            try:
                await self._drain()
            finally:
                self._stopped.set()

    async def stop(self) -> None:
        """Stop polling and wait until start() has drained running jobs."""
        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False
        self._stopping.set()
        await self._stopped.wait()

    async def _drain(self) -> None:
        """Wait for running jobs up to the grace period, then cancel them."""
        if not self._tasks:
            return

        _, pending = await asyncio.wait(set(self._tasks), timeout=SHUTDOWN_GRACE_S)
        if pending:
            logger.warning(
                "Cancelling jobs still running at shutdown",
                worker_id=self.worker_id,
                active_jobs=len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def run_once(self, now: datetime | None = None) -> bool:
        """
        Claim and execute at most one job.

        Returns:
            True when a job was executed
        """
        job = await self.claim(now)
        if job is None:
            return False
        await self.execute(job)
        return True

    async def claim(self, now: datetime | None = None) -> Job | None:
        return await self.store.claim_next(
            self.queues, self.worker_id, now or self.clock()
        )

    async def execute(self, job: Job) -> None:
        """
        Run a claimed job and record its outcome.

        Never raises for job failures; store failures while recording are
        logged and the lock is left for the reaper.
        """
        attempt = job.attempts + 1
        bind_job_context(job_id=str(job.id), kind=job.kind, worker_id=self.worker_id)
        self.active_jobs.add(job.id)
        deadline = None

        try:
            logger.info("Processing job started", attempt=attempt, queue=job.queue_name)

            work = load_work(job.payload)
            ctx = JobContext(
                job_id=job.id,
                attempt=attempt,
                worker_id=self.worker_id,
                settings=self.settings,
                notifier=self.notifier,
                store=self.store,
                started_at=self.clock(),
            )
            deadline = asyncio.timeout(self.settings.job_max_run_time_s)
            async with deadline:
                await work.perform(ctx)

        except asyncio.CancelledError:
            logger.warning("Job processing cancelled")
            await self._record_failure(job, "Worker shut down during execution", True)
            raise

        except TimeoutError as e:
            if deadline is not None and deadline.expired():
                await self._record_failure(
                    job,
                    f"Execution timed out after {self.settings.job_max_run_time_s}s",
                    True,
                )
            else:
                # Raised by the unit of work itself
                logger.exception("Job processing failed")
                await self._record_failure(job, f"{type(e).__name__}: {e}", True)

        except ExecutionFailure as e:
            logger.warning(
                "Job failed", error=e.detail, retryable=e.retryable, details=e.details
            )
            await self._record_failure(job, e.detail, e.retryable)

        except Exception as e:
            logger.exception("Job processing failed")
            await self._record_failure(job, f"{type(e).__name__}: {e}", True)

        else:
            try:
                await self.store.complete(job.id, self.worker_id)
            except StoreUnavailable:
                logger.exception("Could not delete completed job")
            else:
                logger.info("Processing job completed successfully")

        finally:
            self.active_jobs.discard(job.id)
            clear_job_context("job_id", "kind", "worker_id")

    async def _record_failure(self, job: Job, error: str, retryable: bool) -> None:
        """Reschedule or abandon a job per the retry policy."""
        now = self.clock()
        attempt = job.attempts + 1
        decision = self.retry_policy.decide(
            attempt, now, retryable=retryable, max_attempts=job.max_attempts
        )

        try:
            if decision.give_up:
                await self.store.mark_failed(job.id, self.worker_id, error=error, now=now)
                logger.error(
                    "Job permanently failed",
                    attempts=attempt,
                    retryable=retryable,
                    error=error,
                )
            else:
                await self.store.release_for_retry(
                    job.id, self.worker_id, run_at=decision.run_at, error=error, now=now
                )
                logger.info(
                    "Job scheduled for retry",
                    attempts=attempt,
                    next_run_at=decision.run_at.isoformat(),
                )
        except StoreUnavailable:
            logger.exception("Could not record job failure; lock left for the reaper")

    async def reap_once(self, now: datetime | None = None) -> int:
        """Release locks older than the execution timeout."""
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.settings.job_max_run_time_s)
        return await self.store.unlock_expired(cutoff, now)

    async def _worker_loop(self) -> None:
        """Main loop that claims jobs and hands them to execution tasks."""
        poll_interval = self.settings.job_poll_interval_ms / 1000
        store_failures = 0

        while self.running:
            try:
                # Check if we can process more jobs
                if len(self._tasks) >= self.settings.job_concurrency:
                    await self._sleep(poll_interval)
                    continue

                job = await self.claim()
                store_failures = 0

                if job is None:
                    await self._sleep(poll_interval)
                    continue

                task = asyncio.create_task(self.execute(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

            except ClaimConflict:
                # Lost every race this round; poll again straight away
                await asyncio.sleep(0)

            except StoreUnavailable as e:
                store_failures += 1
                delay = min(MAX_POLL_BACKOFF_S, poll_interval * 2**store_failures)
                logger.warning(
                    "Job store unavailable, backing off",
                    worker_id=self.worker_id,
                    delay_s=delay,
                    error=e.details.get("error"),
                )
                await self._sleep(delay)

            except Exception:
                logger.exception("Error in worker loop", worker_id=self.worker_id)
                await self._sleep(5)  # Back off on errors

    async def _reaper_loop(self) -> None:
        """Periodically release locks of jobs whose worker died."""
        while self.running:
            try:
                await self.reap_once()
            except Exception:
                logger.exception("Error in reaper", worker_id=self.worker_id)

            await self._sleep(self.settings.job_reaper_interval_s)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early when the worker is stopped."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass
