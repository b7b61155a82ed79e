import asyncio
import signal
from dataclasses import dataclass

from delayed_jobs.config.logging import get_logger, setup_logging
from delayed_jobs.config.settings import Settings, get_settings
from delayed_jobs.core.registries import job_registry, notifier_registry
from delayed_jobs.infra.database import Database
from delayed_jobs.jobs.registry_init import register_job_handlers
from delayed_jobs.jobs.service import JobService
from delayed_jobs.jobs.store import JobStore
from delayed_jobs.jobs.worker import JobWorker
from delayed_jobs.notifications.registry_init import register_notifiers

logger = get_logger(__name__)


@dataclass
class JobEngine:
    """Wired-up engine: database, store and service sharing one settings object."""

    settings: Settings
    database: Database
    store: JobStore
    service: JobService

    def worker(self, **kwargs) -> JobWorker:
        return JobWorker(self.store, self.settings, **kwargs)

    async def close(self) -> None:
        """Dispose the database engine and close notifier HTTP clients."""
        for name in notifier_registry.list():
            aclose = getattr(notifier_registry.get(name), "aclose", None)
            if aclose is not None:
                await aclose()
        await self.database.close()


def create_job_engine(settings: Settings | None = None) -> JobEngine:
    """Create and configure the job engine."""
    settings = settings or get_settings()

    # Initialize structured logging
    setup_logging(settings)

    register_job_handlers()
    register_notifiers(settings)

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()
        notifier_registry.freeze()

    database = Database(settings)
    store = JobStore(database.SessionLocal)
    return JobEngine(
        settings=settings,
        database=database,
        store=store,
        service=JobService(store, settings),
    )


async def run_worker(settings: Settings | None = None) -> None:
    """Run one worker until SIGINT or SIGTERM."""
    engine = create_job_engine(settings)
    worker = engine.worker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))

    try:
        await worker.start()
    finally:
        await engine.close()
        logger.info("Worker exited", worker_id=worker.worker_id)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
