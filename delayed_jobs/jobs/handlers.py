"""
Job kinds.

Each class is a unit of work: its fields are the job arguments stored in
the payload, perform() does the work.
"""

from datetime import UTC, datetime, timedelta
from typing import ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator

from delayed_jobs.config.logging import get_logger
from delayed_jobs.core.exceptions import ExecutionFailure
from delayed_jobs.jobs.work import JobContext, UnitOfWork
from delayed_jobs.notifications.providers import NotificationError

logger = get_logger(__name__)


class SendReminder(UnitOfWork):
    """
    Text an appointment reminder.

    Args:
        phone_number: Recipient in E.164 form
        name: Recipient name used in the greeting
        appointment_at: Appointment time (aware)
        time_zone: IANA zone the time is rendered in
    """

    kind: ClassVar[str] = "send_reminder"
    queue: ClassVar[str | None] = "notifications"

    phone_number: str = Field(..., pattern=r"^\+?[1-9]\d{6,14}$")
    name: str = Field(..., min_length=1)
    appointment_at: datetime
    time_zone: str = "UTC"

    @field_validator("appointment_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_validator("time_zone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {value}")
        return value

    def render(self) -> str:
        local = self.appointment_at.astimezone(ZoneInfo(self.time_zone))
        return (
            f"Hi {self.name}. Just a reminder that you have an appointment "
            f"coming up at {local:%I:%M %p} on {local:%b %d}."
        )

    async def perform(self, ctx: JobContext) -> None:
        try:
            response = await ctx.notifier.send(self.phone_number, self.render())
        except NotificationError as e:
            # Transient provider failures go back to the retry policy
            raise ExecutionFailure(
                e.message, retryable=e.retryable, details=e.details
            ) from e

        logger.info(
            "Reminder sent",
            job_id=str(ctx.job_id),
            attempt=ctx.attempt,
            sid=response.get("sid"),
        )


class PurgeFailedJobs(UnitOfWork):
    """Delete permanently failed jobs older than the retention window."""

    kind: ClassVar[str] = "purge_failed_jobs"
    queue: ClassVar[str | None] = "maintenance"

    retention_days: int | None = Field(default=None, ge=1)
    dry_run: bool = False

    async def perform(self, ctx: JobContext) -> None:
        days = self.retention_days or ctx.settings.job_failed_retention_days

        if self.dry_run:
            logger.info("Purge skipped, dry run", retention_days=days)
            return

        cutoff = ctx.started_at - timedelta(days=days)
        deleted_count = await ctx.store.purge_failed(cutoff)
        logger.info(
            "Purged failed jobs", deleted_count=deleted_count, retention_days=days
        )
