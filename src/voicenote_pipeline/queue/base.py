"""
Job Queue Contract

Durable, prioritized store of ``ProcessingJob`` records shared by producers
(the pipeline facade and chaining handlers) and worker pools.

Lifecycle of one job::

    enqueue -> pending -(reserve)-> delivered -(activate)-> active
    active -(complete)-> completed
    active -(retry)-> pending (delayed by backoff)
    active -(fail)-> failed

``reserve`` hands a job to one worker; ``activate`` is the compare-and-set
that actually starts it (incrementing ``attempts`` and issuing a lease
token). Every later write requires the lease token so a worker whose lease
was expired or cancelled can no longer change the job.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from typing import Any

from voicenote_pipeline.config import PipelineSettings, QueueSettings
from voicenote_pipeline.models import (
    HealthStatus,
    JobStatusView,
    JobType,
    ProcessingJob,
    QueueStats,
)


def job_id_for(job_type: JobType | str, note_id: str, generation: int) -> str:
    """Deterministic id for the job processing ``note_id`` in a generation."""
    return f"{JobType(job_type).value}:{note_id}:{generation}"


class JobQueue(ABC):
    """Abstract job queue shared by all queue backends."""

    def __init__(self, settings: PipelineSettings | None = None):
        self.settings = settings or PipelineSettings()

    def policy(self, job_type: JobType | str) -> QueueSettings:
        return self.settings.for_job(job_type)

    def backoff_delay(self, job_type: JobType | str, attempts: int) -> float:
        """Exponential backoff for the next attempt, with jitter."""
        policy = self.policy(job_type)
        base = policy.backoff_for(attempts)
        if policy.backoff_jitter and base:
            base *= 1 + random.uniform(-policy.backoff_jitter, policy.backoff_jitter)
        return max(base, 0.0)

    # -- producer side ------------------------------------------------------

    @abstractmethod
    async def enqueue(
        self,
        job_type: JobType | str,
        note_id: str,
        payload: dict[str, Any],
        *,
        job_id: str | None = None,
        priority: int | None = None,
        delay: float = 0.0,
        max_attempts: int | None = None,
        provider: str = "mock",
        generation: int = 0,
        correlation_id: str | None = None,
    ) -> str:
        """Persist a new pending job and return its id.

        Enqueueing an id that is still pending or active returns the id
        without creating a second job. A finished job with the same id is
        replaced.
        """

    # -- worker side ------------------------------------------------------

    @abstractmethod
    async def reserve(self, job_type: JobType | str, timeout: float = 0.0) -> ProcessingJob | None:
        """Deliver the next due job, waiting up to ``timeout`` seconds."""

    @abstractmethod
    async def activate(
        self, job_type: JobType | str, job_id: str, worker_id: str
    ) -> ProcessingJob | None:
        """Move a pending job to active; None when another worker won."""

    @abstractmethod
    async def heartbeat(self, job_type: JobType | str, job_id: str, lease_token: str) -> bool:
        """Refresh the lease of an active job."""

    @abstractmethod
    async def update_progress(
        self, job_type: JobType | str, job_id: str, lease_token: str, progress: int
    ) -> bool:
        """Record progress; values lower than the current one are ignored."""

    @abstractmethod
    async def complete(
        self,
        job_type: JobType | str,
        job_id: str,
        lease_token: str,
        result: dict[str, Any] | None = None,
    ) -> bool:
        pass

    @abstractmethod
    async def retry(
        self, job_type: JobType | str, job_id: str, lease_token: str, error: str
    ) -> float | None:
        """Reschedule an active job after a transient failure.

        Returns the backoff delay in seconds, or None when the lease is lost.
        """

    @abstractmethod
    async def fail(self, job_type: JobType | str, job_id: str, lease_token: str, error: str) -> bool:
        pass

    @abstractmethod
    async def owns(self, job_type: JobType | str, job_id: str, lease_token: str) -> bool:
        """True while the lease is valid and no cancellation was requested."""

    # -- inspection and control ----------------------------------------------

    @abstractmethod
    async def get_job(self, job_type: JobType | str, job_id: str) -> ProcessingJob | None:
        pass

    @abstractmethod
    async def get_status(self, job_type: JobType | str, job_id: str) -> JobStatusView:
        pass

    @abstractmethod
    async def cancel(self, job_type: JobType | str, job_id: str) -> bool:
        """Remove a pending job (True) or flag an active one (False)."""

    @abstractmethod
    async def stats(self, job_type: JobType | str) -> QueueStats:
        pass

    @abstractmethod
    async def health_check(self) -> HealthStatus:
        pass

    @abstractmethod
    async def pause(self, job_type: JobType | str) -> None:
        pass

    @abstractmethod
    async def resume(self, job_type: JobType | str) -> None:
        pass

    @abstractmethod
    async def is_paused(self, job_type: JobType | str) -> bool:
        pass

    # -- recovery ---------------------------------------------------------

    @abstractmethod
    async def find_stalled(self, job_type: JobType | str, older_than: float) -> list[ProcessingJob]:
        """Active jobs whose last heartbeat is older than ``older_than`` seconds."""

    @abstractmethod
    async def expire_lease(
        self, job_type: JobType | str, job_id: str, error: str
    ) -> ProcessingJob | None:
        """Revoke the lease of a stalled job.

        The job goes back to pending with backoff when attempts remain,
        otherwise it fails. Returns the updated job, or None if it was no
        longer active.
        """

    @abstractmethod
    async def requeue_orphans(self, job_type: JobType | str, older_than: float) -> int:
        """Return delivered-but-never-activated jobs to the ready set."""

    @abstractmethod
    async def clean(self, job_type: JobType | str, older_than: float) -> int:
        """Delete completed and failed jobs that finished ``older_than`` seconds ago."""

    async def close(self) -> None:  # noqa: B027
        """Release broker resources."""
