"""Tests for the job record store."""

from datetime import timedelta
from uuid import uuid4

import pytest

from delayed_jobs.core.exceptions import ClaimConflict, NotFoundError, ValidationError
from delayed_jobs.jobs.models import Job


class TestInsertAndLookup:
    @pytest.mark.asyncio
    async def test_insert_assigns_id(self, store, insert_job):
        job = await insert_job()

        assert job.id is not None
        stored = await store.get(job.id)
        assert stored.id == job.id
        assert stored.payload == {"kind": "test_record", "args": {"label": "job"}}

    @pytest.mark.asyncio
    async def test_find_by_owner_creation_order(self, store, insert_job, clock):
        first = await insert_job(owner_type="Appointment", owner_id="7")
        clock.advance(seconds=1)
        second = await insert_job(owner_type="Appointment", owner_id="7")
        await insert_job(owner_type="Appointment", owner_id="8")
        await insert_job(owner_type="Invoice", owner_id="7")

        jobs = await store.find_by_owner("Appointment", "7")

        assert [job.id for job in jobs] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_find_by_owner_same_instant_ordered_by_id(self, store, insert_job):
        """Test that jobs created at the same instant come back ordered by id."""
        ids = [
            (await insert_job(owner_type="Appointment", owner_id="9")).id
            for _ in range(8)
        ]

        first = [job.id for job in await store.find_by_owner("Appointment", "9")]
        second = [job.id for job in await store.find_by_owner("Appointment", "9")]

        assert first == second == sorted(ids)

    @pytest.mark.asyncio
    async def test_find_by_owner_empty(self, store):
        assert await store.find_by_owner("Appointment", "missing") == []

    @pytest.mark.asyncio
    async def test_timestamps_round_trip_as_utc(self, store, insert_job, clock):
        job = await insert_job(run_at=clock() + timedelta(hours=2))

        stored = await store.get(job.id)

        assert stored.run_at == clock() + timedelta(hours=2)
        assert stored.run_at.utcoffset() == timedelta(0)


class TestUpdateAndDelete:
    @pytest.mark.asyncio
    async def test_update_applies_partial_mutation(self, store, insert_job, clock):
        job = await insert_job(priority=3)
        new_run_at = clock() + timedelta(hours=1)

        updated = await store.update(job.id, {"run_at": new_run_at}, clock())

        assert updated.run_at == new_run_at
        assert updated.priority == 3
        assert updated.attempts == 0

    @pytest.mark.asyncio
    async def test_update_missing_job(self, store, clock):
        with pytest.raises(NotFoundError):
            await store.update(uuid4(), {"priority": 1}, clock())

    @pytest.mark.asyncio
    async def test_update_rejects_protocol_fields(self, store, insert_job, clock):
        job = await insert_job()

        with pytest.raises(ValidationError, match="attempts"):
            await store.update(job.id, {"attempts": 0}, clock())

    @pytest.mark.asyncio
    async def test_update_only_if_unclaimed_rejects_locked(self, store, insert_job, clock):
        job = await insert_job()
        await store.claim_next(None, "w1", clock())

        with pytest.raises(ClaimConflict):
            await store.update(
                job.id,
                {"run_at": clock() + timedelta(hours=1)},
                clock(),
                only_if_unclaimed=True,
            )

        stored = await store.get(job.id)
        assert stored.run_at == clock()
        assert stored.locked_by == "w1"

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, store, insert_job):
        job = await insert_job()

        assert await store.delete(job.id) is True
        assert await store.delete(job.id) is False
        assert await store.get(job.id) is None

    @pytest.mark.asyncio
    async def test_delete_only_if_unclaimed_keeps_locked(self, store, insert_job, clock):
        job = await insert_job()
        await store.claim_next(None, "w1", clock())

        assert await store.delete(job.id, only_if_unclaimed=True) is False
        assert await store.get(job.id) is not None


class TestClaimNext:
    @pytest.mark.asyncio
    async def test_nothing_to_claim(self, store, clock):
        assert await store.claim_next(None, "w1", clock()) is None

    @pytest.mark.asyncio
    async def test_claim_sets_lock(self, store, insert_job, clock):
        job = await insert_job()

        claimed = await store.claim_next(None, "w1", clock())

        assert claimed.id == job.id
        assert claimed.locked_by == "w1"
        assert claimed.locked_at == clock()
        assert claimed.attempts == 0

    @pytest.mark.asyncio
    async def test_future_job_becomes_claimable_after_run_at(
        self, store, insert_job, clock
    ):
        job = await insert_job(run_at=clock() + timedelta(hours=2), priority=0)

        assert await store.claim_next(None, "w1", clock()) is None

        clock.advance(hours=2, seconds=1)
        claimed = await store.claim_next(None, "w1", clock())
        assert claimed.id == job.id
        assert claimed.locked_at is not None

        assert await store.claim_next(None, "w2", clock()) is None

    @pytest.mark.asyncio
    async def test_lower_priority_value_first(self, store, insert_job, clock):
        low = await insert_job(priority=10, run_at=clock() - timedelta(minutes=5))
        high = await insert_job(priority=1)

        assert (await store.claim_next(None, "w1", clock())).id == high.id
        assert (await store.claim_next(None, "w1", clock())).id == low.id

    @pytest.mark.asyncio
    async def test_run_at_breaks_priority_ties(self, store, insert_job, clock):
        later = await insert_job(run_at=clock() - timedelta(minutes=1))
        earlier = await insert_job(run_at=clock() - timedelta(minutes=10))

        assert (await store.claim_next(None, "w1", clock())).id == earlier.id
        assert (await store.claim_next(None, "w1", clock())).id == later.id

    @pytest.mark.asyncio
    async def test_queue_filter(self, store, insert_job, clock):
        await insert_job(queue_name="mail")
        sms = await insert_job(queue_name="sms")

        assert (await store.claim_next(["sms"], "w1", clock())).id == sms.id
        assert await store.claim_next(["sms"], "w1", clock()) is None
        assert await store.claim_next(["mail", "sms"], "w1", clock()) is not None

    @pytest.mark.asyncio
    async def test_failed_job_never_claimed(self, store, insert_job, clock):
        await insert_job(failed_at=clock(), attempts=3)

        assert await store.claim_next(None, "w1", clock()) is None


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_complete_deletes(self, store, insert_job, clock):
        job = await insert_job()
        await store.claim_next(None, "w1", clock())

        assert await store.complete(job.id, "w1") is True
        assert await store.get(job.id) is None

    @pytest.mark.asyncio
    async def test_release_for_retry(self, store, insert_job, clock):
        job = await insert_job()
        await store.claim_next(None, "w1", clock())
        retry_at = clock() + timedelta(seconds=30)

        assert await store.release_for_retry(
            job.id, "w1", run_at=retry_at, error="x" * 5000, now=clock()
        )

        stored = await store.get(job.id)
        assert stored.attempts == 1
        assert stored.locked_at is None
        assert stored.locked_by is None
        assert stored.run_at == retry_at
        assert len(stored.last_error) == 4000
        assert stored.failed_at is None

    @pytest.mark.asyncio
    async def test_mark_failed(self, store, insert_job, clock):
        job = await insert_job()
        await store.claim_next(None, "w1", clock())

        assert await store.mark_failed(job.id, "w1", error="fatal", now=clock())

        stored = await store.get(job.id)
        assert stored.attempts == 1
        assert stored.failed_at == clock()
        assert stored.locked_at is None
        assert stored.last_error == "fatal"

    @pytest.mark.asyncio
    async def test_outcome_from_other_worker_dropped(self, store, insert_job, clock):
        job = await insert_job()
        await store.claim_next(None, "w1", clock())

        assert not await store.mark_failed(job.id, "w2", error="late", now=clock())

        stored = await store.get(job.id)
        assert stored.locked_by == "w1"
        assert stored.attempts == 0


class TestUnlockExpired:
    @pytest.mark.asyncio
    async def test_unlocks_only_expired(self, store, insert_job, clock):
        stale = await insert_job()
        await store.claim_next(None, "w1", clock())
        clock.advance(minutes=30)
        fresh = await insert_job()
        await store.claim_next(None, "w2", clock())

        count = await store.unlock_expired(
            cutoff=clock() - timedelta(minutes=10), now=clock()
        )

        assert count == 1
        stale_row = await store.get(stale.id)
        assert stale_row.locked_at is None
        assert stale_row.locked_by is None
        assert stale_row.attempts == 0
        assert stale_row.last_error == "Lock expired after 600s (worker w1)"
        assert (await store.get(fresh.id)).locked_by == "w2"

    @pytest.mark.asyncio
    async def test_last_attempt_is_released_not_failed(self, store, insert_job, clock):
        job = await insert_job(max_attempts=1)
        await store.claim_next(None, "w1", clock())
        clock.advance(hours=1)

        assert await store.unlock_expired(cutoff=clock(), now=clock()) == 1

        stored = await store.get(job.id)
        assert stored.failed_at is None
        assert stored.attempts == 0
        assert (await store.claim_next(None, "w2", clock())).id == job.id

    @pytest.mark.asyncio
    async def test_nothing_expired(self, store, insert_job, clock):
        await insert_job()
        await store.claim_next(None, "w1", clock())

        assert await store.unlock_expired(cutoff=clock(), now=clock()) == 0


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_retry_failed_grants_new_budget(self, store, insert_job, clock):
        job = await insert_job(failed_at=clock(), attempts=3, last_error="boom")
        clock.advance(minutes=5)

        assert await store.retry_failed(job.id, clock(), extra_attempts=3)

        stored = await store.get(job.id)
        assert stored.failed_at is None
        assert stored.attempts == 3
        assert stored.max_attempts == 6
        assert stored.run_at == clock()
        assert await store.claim_next(None, "w1", clock()) is not None

    @pytest.mark.asyncio
    async def test_retry_failed_ignores_pending(self, store, insert_job, clock):
        job = await insert_job()

        assert await store.retry_failed(job.id, clock(), extra_attempts=3) is False

    @pytest.mark.asyncio
    async def test_purge_failed(self, store, insert_job, clock):
        old = await insert_job(failed_at=clock() - timedelta(days=40))
        recent = await insert_job(failed_at=clock() - timedelta(days=1))
        pending = await insert_job()

        assert await store.purge_failed(clock() - timedelta(days=30)) == 1

        assert await store.get(old.id) is None
        assert await store.get(recent.id) is not None
        assert await store.get(pending.id) is not None

    @pytest.mark.asyncio
    async def test_stats(self, store, insert_job, clock):
        await insert_job(run_at=clock() - timedelta(minutes=2), queue_name="sms")
        await insert_job(run_at=clock() + timedelta(hours=1))
        await insert_job(failed_at=clock())
        locked = Job(
            payload={"kind": "test_record", "args": {}},
            queue_name="sms",
            run_at=clock(),
            locked_at=clock(),
            locked_by="w9",
        )
        await store.insert(locked)

        stats = await store.stats(clock())

        assert stats.total_jobs == 4
        assert stats.pending == 1
        assert stats.scheduled == 1
        assert stats.locked == 1
        assert stats.failed == 1
        assert stats.by_queue == {"sms": 2, "test": 1}
        assert stats.oldest_pending_age_seconds == 120
