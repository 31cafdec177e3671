"""Shared fixtures for the voice-note pipeline tests."""

import asyncio

import pytest

from voicenote_pipeline.config import PipelineSettings, QueueSettings
from voicenote_pipeline.errors import STTFailure
from voicenote_pipeline.models import JobType, Media, Note, NoteStatus, new_id
from voicenote_pipeline.pipeline import ProcessingPipeline
from voicenote_pipeline.providers import MockLLMProvider, MockSTTProvider
from voicenote_pipeline.queue import InMemoryJobQueue
from voicenote_pipeline.repository import InMemoryBlobStore, InMemoryRepository


def fast_policy(**overrides) -> QueueSettings:
    values = {
        "concurrency": 2,
        "rate_limit_max": 1000,
        "rate_limit_duration": 1.0,
        "backoff_delay": 0.0,
        "backoff_jitter": 0.0,
        "poll_interval": 0.01,
    }
    values.update(overrides)
    return QueueSettings(**values)


def make_settings(**overrides) -> PipelineSettings:
    values = {
        "queue_driver": "memory",
        "stt_provider": "mock",
        "llm_provider": "mock",
        "provider_timeout": 5.0,
        "stalled_job_threshold": 30.0,
        "watchdog_interval": 30.0,
        "transcribe": fast_policy(priority=10),
        "summarize": fast_policy(concurrency=3, priority=5),
    }
    values.update(overrides)
    return PipelineSettings(**values)


class FlakySTT(MockSTTProvider):
    """Fails ``failures`` times with a retryable error, then transcribes."""

    def __init__(self, failures: int, retryable: bool = True):
        super().__init__(seed=7)
        self.failures = failures
        self.retryable = retryable
        self.calls = 0

    async def transcribe(self, audio, options=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise STTFailure("upstream 503", provider=self.name, retryable=self.retryable)
        return await super().transcribe(audio, options)


class BlockingSTT(MockSTTProvider):
    """Waits for ``release`` before transcribing; ``entered`` is set once called."""

    def __init__(self):
        super().__init__(seed=3)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def transcribe(self, audio, options=None):
        self.entered.set()
        await self.release.wait()
        return await super().transcribe(audio, options)


async def seed_note(
    repository: InMemoryRepository,
    blobs: InMemoryBlobStore,
    status: NoteStatus = NoteStatus.UPLOADED,
    mime_type: str = "audio/mpeg",
    audio: bytes = b"ID3-fake-audio",
) -> tuple[Note, Media]:
    note = await repository.add_note(Note(id=new_id(), owner_id="user-1", title="Standup", status=status))
    media = await repository.add_media(
        Media(
            id=new_id(),
            note_id=note.id,
            storage_key=f"audio/{note.id}.mp3",
            mime_type=mime_type,
            size_bytes=len(audio),
        )
    )
    await blobs.put(media.storage_key, audio)
    return note, media


async def drain(pipeline: ProcessingPipeline, max_rounds: int = 50) -> list:
    """Run queued jobs to exhaustion with the pipeline's handlers, one at a time."""
    manager = pipeline.create_worker_manager()
    handlers = {job_type: pool.handler for job_type, pool in manager.pools.items()}
    results = []
    for _ in range(max_rounds):
        progressed = False
        for job_type in (JobType.TRANSCRIBE, JobType.SUMMARIZE):
            job = await pipeline.queue.reserve(job_type)
            if job is not None:
                results.append(await handlers[job_type].handle(job, "test-worker"))
                progressed = True
        if not progressed:
            break
    return results


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def queue(settings):
    return InMemoryJobQueue(settings)


@pytest.fixture
def pipeline(settings, queue, repository, blobs):
    return ProcessingPipeline(
        settings,
        queue,
        repository,
        blobs,
        stt=MockSTTProvider(seed=1),
        llm=MockLLMProvider(seed=1),
    )
