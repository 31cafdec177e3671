"""Tests for stalled-job recovery."""

import asyncio

import pytest
from conftest import fast_policy, make_settings, seed_note

from voicenote_pipeline.models import JobStatus, JobType, NoteStatus, TranscribeRequest
from voicenote_pipeline.pipeline import ProcessingPipeline
from voicenote_pipeline.providers import MockLLMProvider, MockSTTProvider
from voicenote_pipeline.queue import InMemoryJobQueue

T = JobType.TRANSCRIBE


def build(repository, blobs, **overrides):
    values = {"stalled_job_threshold": 0.05, "watchdog_interval": 0.05}
    values.update(overrides)
    settings = make_settings(**values)
    pipeline = ProcessingPipeline(
        settings,
        InMemoryJobQueue(settings),
        repository,
        blobs,
        stt=MockSTTProvider(),
        llm=MockLLMProvider(),
    )
    return pipeline, pipeline.create_worker_manager().watchdog


async def enqueue(pipeline, repository, blobs):
    note, media = await seed_note(repository, blobs)
    job_id = await pipeline.enqueue_transcribe(
        TranscribeRequest(note_id=note.id, media_id=media.id, storage_key=media.storage_key)
    )
    return note, job_id


async def abandon(queue, job_id):
    """Activate a job as a worker that then dies without heartbeating."""
    await queue.reserve(T)
    await queue.activate(T, job_id, "dead-worker")


class TestStalledJobs:
    async def test_stalled_job_is_retried(self, repository, blobs):
        pipeline, watchdog = build(repository, blobs)
        note, job_id = await enqueue(pipeline, repository, blobs)
        await abandon(pipeline.queue, job_id)
        await asyncio.sleep(0.1)

        report = await watchdog.run_once()

        assert report["transcribe"]["retried"] == 1
        job = await pipeline.queue.get_job(T, job_id)
        assert job.status is JobStatus.PENDING
        assert job.lease_token is None
        events = repository.events_for(note.id, "transcription_retry_scheduled")
        assert events[0].metadata["reason"] == "stalled"

    async def test_stalled_job_without_attempts_left_fails(self, repository, blobs):
        pipeline, watchdog = build(repository, blobs, transcribe=fast_policy(max_attempts=1))
        note, job_id = await enqueue(pipeline, repository, blobs)
        await abandon(pipeline.queue, job_id)
        await asyncio.sleep(0.1)

        report = await watchdog.run_once()

        assert report["transcribe"]["failed"] == 1
        assert (await pipeline.queue.get_job(T, job_id)).status is JobStatus.FAILED
        assert (await repository.get_note(note.id)).status is NoteStatus.ERROR
        assert len(repository.events_for(note.id, "transcription_failed")) == 1

    async def test_heartbeating_job_is_left_alone(self, repository, blobs):
        pipeline, watchdog = build(repository, blobs, stalled_job_threshold=5.0)
        _, job_id = await enqueue(pipeline, repository, blobs)
        await abandon(pipeline.queue, job_id)

        report = await watchdog.run_once()

        assert report["transcribe"] == {"retried": 0, "failed": 0, "orphans": 0, "cleaned": 0}
        assert (await pipeline.queue.get_job(T, job_id)).status is JobStatus.ACTIVE


class TestHousekeeping:
    async def test_orphaned_reservation_is_requeued(self, repository, blobs):
        pipeline, watchdog = build(repository, blobs)
        _, job_id = await enqueue(pipeline, repository, blobs)
        await pipeline.queue.reserve(T)
        await asyncio.sleep(0.1)

        report = await watchdog.run_once()

        assert report["transcribe"]["orphans"] == 1
        assert (await pipeline.queue.reserve(T)).id == job_id

    async def test_old_history_is_cleaned(self, repository, blobs):
        pipeline, watchdog = build(repository, blobs, history_window=0.01)
        _, job_id = await enqueue(pipeline, repository, blobs)
        await pipeline.queue.reserve(T)
        job = await pipeline.queue.activate(T, job_id, "w1")
        await pipeline.queue.complete(T, job_id, job.lease_token)
        await asyncio.sleep(0.05)

        report = await watchdog.run_once()

        assert report["transcribe"]["cleaned"] == 1


class TestLifecycle:
    async def test_start_and_close(self, repository, blobs):
        pipeline, watchdog = build(repository, blobs)
        _, job_id = await enqueue(pipeline, repository, blobs)
        await abandon(pipeline.queue, job_id)

        watchdog.start()
        try:
            for _ in range(100):
                if (await pipeline.queue.get_job(T, job_id)).status is JobStatus.PENDING:
                    break
                await asyncio.sleep(0.02)
            else:
                pytest.fail("watchdog did not recover the job")
        finally:
            await watchdog.close()
