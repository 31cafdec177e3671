"""In-process job queue for tests and single-process development runs."""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.models import (
    HealthStatus,
    JobStatus,
    JobStatusView,
    JobType,
    ProcessingJob,
    QueueStats,
    new_id,
    utcnow,
)
from voicenote_pipeline.queue.base import JobQueue

logger = get_logger()


@dataclass
class _TypeState:
    jobs: dict[str, ProcessingJob] = field(default_factory=dict)
    seq: dict[str, int] = field(default_factory=dict)
    counter: int = 0
    paused: bool = False
    condition: asyncio.Condition | None = None

    def cond(self) -> asyncio.Condition:
        if self.condition is None:
            self.condition = asyncio.Condition()
        return self.condition


class InMemoryJobQueue(JobQueue):
    """Dict-backed ``JobQueue``. State is lost when the process exits."""

    def __init__(self, settings=None):
        super().__init__(settings)
        self._states: dict[JobType, _TypeState] = {t: _TypeState() for t in JobType}

    def _state(self, job_type: JobType | str) -> _TypeState:
        return self._states[JobType(job_type)]

    async def _notify(self, state: _TypeState) -> None:
        cond = state.cond()
        async with cond:
            cond.notify_all()

    # -- producer side ------------------------------------------------------

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
        job_type = JobType(job_type)
        state = self._state(job_type)
        job_id = job_id or new_id()

        existing = state.jobs.get(job_id)
        if existing is not None and existing.status.is_live:
            logger.info("job_already_enqueued", job_id=job_id, status=existing.status.value)
            return job_id

        policy = self.policy(job_type)
        now = utcnow()
        state.jobs[job_id] = ProcessingJob(
            id=job_id,
            type=job_type,
            note_id=note_id,
            payload=copy.deepcopy(payload),
            max_attempts=max_attempts or policy.max_attempts,
            priority=policy.priority if priority is None else priority,
            provider=provider,
            generation=generation,
            correlation_id=correlation_id or new_id(),
            created_at=now,
            available_at=now + timedelta(seconds=max(delay, 0.0)),
        )
        state.counter += 1
        state.seq[job_id] = state.counter
        logger.info("job_enqueued", job_type=job_type.value, job_id=job_id, note_id=note_id)
        await self._notify(state)
        return job_id

    # -- worker side ------------------------------------------------------

    def _take_next(self, state: _TypeState) -> ProcessingJob | None:
        if state.paused:
            return None
        now = utcnow()
        due = [
            job
            for job in state.jobs.values()
            if job.status is JobStatus.PENDING
            and job.delivered_at is None
            and job.available_at <= now
        ]
        if not due:
            return None
        job = min(due, key=lambda j: (j.priority, state.seq[j.id]))
        job.delivered_at = now
        return copy.deepcopy(job)

    def _next_due_in(self, state: _TypeState) -> float | None:
        now = utcnow()
        waits = [
            (job.available_at - now).total_seconds()
            for job in state.jobs.values()
            if job.status is JobStatus.PENDING and job.delivered_at is None
        ]
        return max(min(waits), 0.0) if waits else None

    async def reserve(self, job_type: JobType | str, timeout: float = 0.0) -> ProcessingJob | None:
        state = self._state(job_type)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        cond = state.cond()
        async with cond:
            while True:
                job = self._take_next(state)
                if job is not None:
                    return job
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                next_due = None if state.paused else self._next_due_in(state)
                wait = remaining if next_due is None else min(remaining, next_due + 0.001)
                try:
                    await asyncio.wait_for(cond.wait(), wait)
                except TimeoutError:
                    pass

    async def activate(
        self, job_type: JobType | str, job_id: str, worker_id: str
    ) -> ProcessingJob | None:
        job = self._state(job_type).jobs.get(job_id)
        now = utcnow()
        if job is None or job.status is not JobStatus.PENDING or job.available_at > now:
            return None
        job.status = JobStatus.ACTIVE
        job.attempts += 1
        job.worker_id = worker_id
        job.lease_token = new_id()
        job.started_at = now
        job.heartbeat_at = now
        job.delivered_at = None
        return copy.deepcopy(job)

    def _leased(self, job_type: JobType | str, job_id: str, lease_token: str) -> ProcessingJob | None:
        job = self._state(job_type).jobs.get(job_id)
        if job is None or job.status is not JobStatus.ACTIVE or job.lease_token != lease_token:
            return None
        return job

    async def heartbeat(self, job_type: JobType | str, job_id: str, lease_token: str) -> bool:
        job = self._leased(job_type, job_id, lease_token)
        if job is None:
            return False
        job.heartbeat_at = utcnow()
        return True

    async def update_progress(
        self, job_type: JobType | str, job_id: str, lease_token: str, progress: int
    ) -> bool:
        job = self._leased(job_type, job_id, lease_token)
        if job is None:
            return False
        job.progress = max(job.progress, min(int(progress), 100))
        job.heartbeat_at = utcnow()
        return True

    def _finish(self, job_type: JobType, job: ProcessingJob, status: JobStatus) -> None:
        job.status = status
        job.completed_at = utcnow()
        job.lease_token = None
        job.heartbeat_at = None
        self._trim_history(job_type, status)

    def _trim_history(self, job_type: JobType, status: JobStatus) -> None:
        policy = self.policy(job_type)
        keep = policy.remove_on_complete if status is JobStatus.COMPLETED else policy.remove_on_fail
        state = self._state(job_type)
        finished = sorted(
            (j for j in state.jobs.values() if j.status is status),
            key=lambda j: (j.completed_at, state.seq[j.id]),
        )
        for job in finished[: max(len(finished) - keep, 0)]:
            self._drop(state, job.id)

    @staticmethod
    def _drop(state: _TypeState, job_id: str) -> None:
        state.jobs.pop(job_id, None)
        state.seq.pop(job_id, None)

    async def complete(
        self,
        job_type: JobType | str,
        job_id: str,
        lease_token: str,
        result: dict[str, Any] | None = None,
    ) -> bool:
        job = self._leased(job_type, job_id, lease_token)
        if job is None:
            return False
        job.progress = 100
        job.result = copy.deepcopy(result)
        self._finish(JobType(job_type), job, JobStatus.COMPLETED)
        return True

    def _reschedule(self, job: ProcessingJob, error: str) -> float:
        delay = self.backoff_delay(job.type, job.attempts)
        job.status = JobStatus.PENDING
        job.available_at = utcnow() + timedelta(seconds=delay)
        job.last_error = error
        job.lease_token = None
        job.worker_id = None
        job.heartbeat_at = None
        job.delivered_at = None
        return delay

    async def retry(
        self, job_type: JobType | str, job_id: str, lease_token: str, error: str
    ) -> float | None:
        job = self._leased(job_type, job_id, lease_token)
        if job is None:
            return None
        delay = self._reschedule(job, error)
        await self._notify(self._state(job_type))
        return delay

    async def fail(self, job_type: JobType | str, job_id: str, lease_token: str, error: str) -> bool:
        job = self._leased(job_type, job_id, lease_token)
        if job is None:
            return False
        job.last_error = error
        self._finish(JobType(job_type), job, JobStatus.FAILED)
        return True

    async def owns(self, job_type: JobType | str, job_id: str, lease_token: str) -> bool:
        job = self._leased(job_type, job_id, lease_token)
        return job is not None and not job.cancel_requested

    # -- inspection and control ----------------------------------------------

    async def get_job(self, job_type: JobType | str, job_id: str) -> ProcessingJob | None:
        job = self._state(job_type).jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def get_status(self, job_type: JobType | str, job_id: str) -> JobStatusView:
        job = self._state(job_type).jobs.get(job_id)
        if job is None:
            return JobStatusView.not_found()
        return JobStatusView.from_job(job, delayed=job.available_at > utcnow())

    async def cancel(self, job_type: JobType | str, job_id: str) -> bool:
        state = self._state(job_type)
        job = state.jobs.get(job_id)
        if job is None:
            return False
        if job.status is JobStatus.PENDING:
            self._drop(state, job_id)
            logger.info("job_cancelled", job_id=job_id, status="pending")
            return True
        if job.status is JobStatus.ACTIVE:
            job.cancel_requested = True
            logger.info("job_cancel_requested", job_id=job_id)
        return False

    async def stats(self, job_type: JobType | str) -> QueueStats:
        now = utcnow()
        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
        for job in self._state(job_type).jobs.values():
            if job.status is JobStatus.PENDING:
                counts["delayed" if job.available_at > now else "waiting"] += 1
            else:
                counts[job.status.value] += 1
        return QueueStats(**counts)

    async def health_check(self) -> HealthStatus:
        return HealthStatus(status="ok", latency_ms=0.0)

    async def pause(self, job_type: JobType | str) -> None:
        self._state(job_type).paused = True
        logger.info("queue_paused", job_type=JobType(job_type).value)

    async def resume(self, job_type: JobType | str) -> None:
        state = self._state(job_type)
        state.paused = False
        logger.info("queue_resumed", job_type=JobType(job_type).value)
        await self._notify(state)

    async def is_paused(self, job_type: JobType | str) -> bool:
        return self._state(job_type).paused

    # -- recovery ---------------------------------------------------------

    async def find_stalled(self, job_type: JobType | str, older_than: float) -> list[ProcessingJob]:
        cutoff = utcnow() - timedelta(seconds=older_than)
        return [
            copy.deepcopy(job)
            for job in self._state(job_type).jobs.values()
            if job.status is JobStatus.ACTIVE and job.heartbeat_at and job.heartbeat_at < cutoff
        ]

    async def expire_lease(
        self, job_type: JobType | str, job_id: str, error: str
    ) -> ProcessingJob | None:
        state = self._state(job_type)
        job = state.jobs.get(job_id)
        if job is None or job.status is not JobStatus.ACTIVE:
            return None
        if job.attempts < job.max_attempts and not job.cancel_requested:
            self._reschedule(job, error)
            snapshot = copy.deepcopy(job)
            await self._notify(state)
            return snapshot
        job.last_error = error
        self._finish(JobType(job_type), job, JobStatus.FAILED)
        return copy.deepcopy(job)

    async def requeue_orphans(self, job_type: JobType | str, older_than: float) -> int:
        state = self._state(job_type)
        cutoff = utcnow() - timedelta(seconds=older_than)
        count = 0
        for job in state.jobs.values():
            if job.status is JobStatus.PENDING and job.delivered_at and job.delivered_at < cutoff:
                job.delivered_at = None
                count += 1
        if count:
            await self._notify(state)
        return count

    async def clean(self, job_type: JobType | str, older_than: float) -> int:
        state = self._state(job_type)
        cutoff = utcnow() - timedelta(seconds=older_than)
        stale = [
            job.id
            for job in state.jobs.values()
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED)
            and job.completed_at
            and job.completed_at < cutoff
        ]
        for job_id in stale:
            self._drop(state, job_id)
        return len(stale)
