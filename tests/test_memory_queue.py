"""Tests for the in-memory job queue."""

import asyncio

import pytest
from conftest import fast_policy, make_settings

from voicenote_pipeline.models import JobStatus, JobType
from voicenote_pipeline.queue import InMemoryJobQueue, job_id_for

T = JobType.TRANSCRIBE


@pytest.fixture
def queue():
    return InMemoryJobQueue(make_settings())


async def start(queue, job_id, worker="w1"):
    await queue.reserve(T)
    return await queue.activate(T, job_id, worker)


class TestEnqueue:
    async def test_enqueue_creates_pending_job(self, queue):
        job_id = await queue.enqueue(T, "note-1", {"noteId": "note-1"}, job_id="j1")
        job = await queue.get_job(T, job_id)
        assert job.status is JobStatus.PENDING
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.priority == 10

    async def test_enqueue_same_id_is_idempotent_while_live(self, queue):
        await queue.enqueue(T, "note-1", {}, job_id="j1")
        await queue.enqueue(T, "note-1", {}, job_id="j1")
        assert (await queue.stats(T)).waiting == 1

    async def test_enqueue_replaces_finished_job(self, queue):
        await queue.enqueue(T, "note-1", {}, job_id="j1")
        job = await start(queue, "j1")
        await queue.fail(T, "j1", job.lease_token, "boom")

        await queue.enqueue(T, "note-1", {}, job_id="j1")

        replaced = await queue.get_job(T, "j1")
        assert replaced.status is JobStatus.PENDING
        assert replaced.attempts == 0

    def test_deterministic_job_ids(self):
        assert job_id_for(JobType.SUMMARIZE, "n1", 2) == "summarize:n1:2"


class TestReserve:
    async def test_priority_then_fifo(self, queue):
        await queue.enqueue(T, "n", {}, job_id="low-1", priority=10)
        await queue.enqueue(T, "n", {}, job_id="high", priority=1)
        await queue.enqueue(T, "n", {}, job_id="low-2", priority=10)

        order = [(await queue.reserve(T)).id for _ in range(3)]

        assert order == ["high", "low-1", "low-2"]
        assert await queue.reserve(T) is None

    async def test_delayed_job_waits_until_due(self, queue):
        await queue.enqueue(T, "n", {}, job_id="later", delay=0.05)

        assert await queue.reserve(T) is None
        assert (await queue.get_status(T, "later")).status == "delayed"
        job = await queue.reserve(T, timeout=1.0)
        assert job.id == "later"

    async def test_reserve_wakes_on_enqueue(self, queue):
        waiter = asyncio.create_task(queue.reserve(T, timeout=2.0))
        await asyncio.sleep(0.01)
        await queue.enqueue(T, "n", {}, job_id="j1")
        job = await asyncio.wait_for(waiter, 1.0)
        assert job.id == "j1"

    async def test_paused_queue_delivers_nothing(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        await queue.pause(T)
        assert await queue.is_paused(T)
        assert await queue.reserve(T, timeout=0.02) is None

        await queue.resume(T)
        assert (await queue.reserve(T)).id == "j1"

    async def test_types_are_isolated(self, queue):
        await queue.enqueue(JobType.SUMMARIZE, "n", {}, job_id="s1")
        assert await queue.reserve(T) is None
        assert (await queue.reserve(JobType.SUMMARIZE)).id == "s1"


class TestActivation:
    async def test_only_one_activation_wins(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        await queue.reserve(T)

        first = await queue.activate(T, "j1", "w1")
        second = await queue.activate(T, "j1", "w2")

        assert first.status is JobStatus.ACTIVE
        assert first.attempts == 1
        assert first.lease_token
        assert second is None

    async def test_writes_require_the_lease(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        job = await start(queue, "j1")

        assert not await queue.complete(T, "j1", "wrong-token")
        assert await queue.complete(T, "j1", job.lease_token, {"ok": True})
        assert not await queue.owns(T, "j1", job.lease_token)

        done = await queue.get_job(T, "j1")
        assert done.status is JobStatus.COMPLETED
        assert done.progress == 100
        assert done.result == {"ok": True}

    async def test_progress_is_monotonic(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        job = await start(queue, "j1")

        for value in (10, 70, 30):
            await queue.update_progress(T, "j1", job.lease_token, value)

        assert (await queue.get_status(T, "j1")).progress == 70


class TestRetryAndFail:
    async def test_retry_returns_job_to_pending(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        job = await start(queue, "j1")

        delay = await queue.retry(T, "j1", job.lease_token, "flaky")

        assert delay == 0.0
        status = await queue.get_status(T, "j1")
        assert status.status == "pending"
        assert status.error == "flaky"
        again = await start(queue, "j1", "w2")
        assert again.attempts == 2

    async def test_backoff_is_exponential(self):
        settings = make_settings(transcribe=fast_policy(backoff_delay=2.0))
        queue = InMemoryJobQueue(settings)
        assert [queue.backoff_delay(T, n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    async def test_backoff_jitter_stays_in_bounds(self):
        settings = make_settings(transcribe=fast_policy(backoff_delay=2.0, backoff_jitter=0.5))
        queue = InMemoryJobQueue(settings)
        for _ in range(20):
            assert 1.0 <= queue.backoff_delay(T, 1) <= 3.0

    async def test_history_is_trimmed(self):
        settings = make_settings(transcribe=fast_policy(remove_on_complete=2, remove_on_fail=1))
        queue = InMemoryJobQueue(settings)
        for index in range(4):
            await queue.enqueue(T, "n", {}, job_id=f"j{index}")
            job = await start(queue, f"j{index}")
            await queue.complete(T, job.id, job.lease_token)

        assert (await queue.stats(T)).completed == 2
        assert (await queue.get_status(T, "j0")).status == "not_found"
        assert (await queue.get_status(T, "j3")).status == "completed"


class TestCancel:
    async def test_cancel_pending_removes_job(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        assert await queue.cancel(T, "j1")
        assert (await queue.get_status(T, "j1")).status == "not_found"

    async def test_cancel_active_flags_job(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        job = await start(queue, "j1")

        assert not await queue.cancel(T, "j1")
        assert not await queue.owns(T, "j1", job.lease_token)
        assert (await queue.get_job(T, "j1")).cancel_requested

    async def test_cancel_unknown(self, queue):
        assert not await queue.cancel(T, "missing")


class TestRecovery:
    async def test_expire_lease_retries_then_fails(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1", max_attempts=2)
        await start(queue, "j1")

        retried = await queue.expire_lease(T, "j1", "stalled")
        assert retried.status is JobStatus.PENDING

        await start(queue, "j1")
        failed = await queue.expire_lease(T, "j1", "stalled")
        assert failed.status is JobStatus.FAILED
        assert failed.last_error == "stalled"

    async def test_find_stalled(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        await start(queue, "j1")
        await asyncio.sleep(0.03)

        assert [j.id for j in await queue.find_stalled(T, 0.01)] == ["j1"]
        assert await queue.find_stalled(T, 60) == []

    async def test_requeue_orphans(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        await queue.reserve(T)
        await asyncio.sleep(0.03)

        assert await queue.reserve(T) is None
        assert await queue.requeue_orphans(T, 0.01) == 1
        assert (await queue.reserve(T)).id == "j1"

    async def test_clean_removes_old_history(self, queue):
        await queue.enqueue(T, "n", {}, job_id="j1")
        job = await start(queue, "j1")
        await queue.complete(T, "j1", job.lease_token)
        await asyncio.sleep(0.02)

        assert await queue.clean(T, 60) == 0
        assert await queue.clean(T, 0.01) == 1
        assert (await queue.stats(T)).completed == 0


class TestStatsAndHealth:
    async def test_stats_counts(self, queue):
        await queue.enqueue(T, "n", {}, job_id="waiting")
        await queue.enqueue(T, "n", {}, job_id="delayed", delay=60)
        await queue.enqueue(T, "n", {}, job_id="active", priority=0)
        await start(queue, "active")

        stats = await queue.stats(T)
        assert (stats.waiting, stats.active, stats.delayed) == (1, 1, 1)

    async def test_health(self, queue):
        health = await queue.health_check()
        assert health.ok
