"""Job queue backends."""

from voicenote_pipeline.config import PipelineSettings
from voicenote_pipeline.queue.base import JobQueue, job_id_for
from voicenote_pipeline.queue.memory import InMemoryJobQueue


def create_queue(settings: PipelineSettings) -> JobQueue:
    """Build the queue backend selected by ``settings.queue_driver``."""
    if settings.queue_driver == "redis":
        from voicenote_pipeline.queue.redis_queue import RedisJobQueue

        return RedisJobQueue(settings)
    return InMemoryJobQueue(settings)


__all__ = ["InMemoryJobQueue", "JobQueue", "create_queue", "job_id_for"]
