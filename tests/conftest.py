import asyncio
import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import ClassVar

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from delayed_jobs.config.settings import Settings
from delayed_jobs.core.exceptions import ExecutionFailure
from delayed_jobs.core.registries import job_registry
from delayed_jobs.infra.database import Base
from delayed_jobs.jobs import registry_init  # noqa: F401
from delayed_jobs.jobs.models import Job
from delayed_jobs.jobs.schemas import OwnerRef
from delayed_jobs.jobs.service import JobService
from delayed_jobs.jobs.store import JobStore
from delayed_jobs.jobs.work import JobContext, UnitOfWork
from delayed_jobs.jobs.worker import JobWorker
from delayed_jobs.notifications.providers import LogNotifier

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# Test job kinds
class RecordWork(UnitOfWork):
    """Records each execution."""

    kind: ClassVar[str] = "test_record"
    queue: ClassVar[str | None] = "test"
    performed: ClassVar[list[tuple[str, str]]] = []

    label: str = "job"

    async def perform(self, ctx: JobContext) -> None:
        RecordWork.performed.append((self.label, ctx.worker_id))


class FailWork(UnitOfWork):
    """Always fails."""

    kind: ClassVar[str] = "test_fail"

    message: str = "boom"
    retryable: bool = True
    plain: bool = False
    timeout: bool = False

    async def perform(self, ctx: JobContext) -> None:
        if self.timeout:
            raise TimeoutError(self.message)
        if self.plain:
            raise RuntimeError(self.message)
        raise ExecutionFailure(self.message, retryable=self.retryable)


class SlowWork(UnitOfWork):
    kind: ClassVar[str] = "test_slow"

    seconds: float = 5.0

    async def perform(self, ctx: JobContext) -> None:
        await asyncio.sleep(self.seconds)


for _work in (RecordWork, FailWork, SlowWork):
    job_registry.register(_work.kind, _work)


class FakeClock:
    """Settable clock shared by the service, worker and tests."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_recorded_work():
    RecordWork.performed.clear()
    yield
    RecordWork.performed.clear()


@pytest.fixture
def settings() -> Settings:
    """Deterministic engine settings: no jitter, 1s base backoff, 3 attempts."""
    return Settings(
        _env_file=None,
        job_max_attempts=3,
        job_backoff_base_ms=1000,
        job_max_backoff_s=60,
        job_backoff_jitter=0.0,
        job_poll_interval_ms=10,
        job_max_run_time_s=600,
        job_reaper_interval_s=1,
    )


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite file database per test, or PostgreSQL when DATABASE_URL names one."""
    database_url = os.getenv("DATABASE_URL")

    if database_url and "postgresql" in database_url:
        engine = create_async_engine(database_url, echo=False)
    else:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(test_engine) -> JobStore:
    return JobStore(async_sessionmaker(test_engine, expire_on_commit=False))


@pytest.fixture
def service(store, settings, clock) -> JobService:
    return JobService(store, settings, clock=clock)


@pytest.fixture
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture
def make_worker(store, settings, clock, notifier):
    """Build workers sharing the fake clock, reaper loop disabled."""

    def _make(worker_id: str = "w1", **kwargs) -> JobWorker:
        kwargs.setdefault("notifier", notifier)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("reaper", False)
        return JobWorker(store, kwargs.pop("settings", settings), worker_id=worker_id, **kwargs)

    return _make


@pytest.fixture
def owner() -> OwnerRef:
    return OwnerRef(owner_type="Appointment", owner_id="42")


@pytest.fixture
def insert_job(store, clock):
    """Insert a raw job row, bypassing the registry check."""

    async def _insert(**fields) -> Job:
        fields.setdefault("payload", RecordWork().to_payload())
        fields.setdefault("queue_name", "test")
        fields.setdefault("priority", 0)
        fields.setdefault("run_at", clock())
        fields.setdefault("attempts", 0)
        fields.setdefault("created_at", clock())
        fields.setdefault("updated_at", clock())
        job = Job(**fields)
        await store.insert(job)
        return job

    return _insert
