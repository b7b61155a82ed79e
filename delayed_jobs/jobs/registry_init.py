"""
Job registry initialization.

Registers all job kinds with the global job registry.
"""

from delayed_jobs.config.logging import get_logger
from delayed_jobs.core.registries import job_registry
from delayed_jobs.jobs.handlers import PurgeFailedJobs, SendReminder

logger = get_logger(__name__)


def register_job_handlers() -> None:
    """Register all job kinds with the job registry."""
    if job_registry.is_frozen():
        return

    # Notification jobs
    job_registry.register(SendReminder.kind, SendReminder)

    # Maintenance jobs
    job_registry.register(PurgeFailedJobs.kind, PurgeFailedJobs)

    logger.info("Job kinds registered", registered_kinds=job_registry.list())


# Auto-register handlers when module is imported
register_job_handlers()
