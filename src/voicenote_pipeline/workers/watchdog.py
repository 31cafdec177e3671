"""Stalled-job recovery.

A worker that dies mid-job leaves the job ``active`` with a heartbeat that
stops advancing. The watchdog periodically revokes such leases, returns
never-activated reservations to the ready set and trims old history.
"""

import asyncio
from typing import Any

from voicenote_pipeline.audit import AuditEventType, AuditSink
from voicenote_pipeline.config import PipelineSettings
from voicenote_pipeline.errors import PipelineError
from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.models import JobStatus, JobType
from voicenote_pipeline.queue import JobQueue
from voicenote_pipeline.state_machine import NoteStateMachine, Trigger

logger = get_logger()

STALLED_ERROR = "stalled: no heartbeat from worker"


class StalledJobWatchdog:
    def __init__(
        self,
        queue: JobQueue,
        state_machine: NoteStateMachine,
        audit: AuditSink,
        settings: PipelineSettings,
    ):
        self.queue = queue
        self.state_machine = state_machine
        self.audit = audit
        self.settings = settings
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    async def run_once(self) -> dict[str, dict[str, int]]:
        """One recovery sweep over every job type; returns per-type counts."""
        report: dict[str, dict[str, int]] = {}
        for job_type in JobType:
            report[job_type.value] = await self._sweep(job_type)
        return report

    async def _sweep(self, job_type: JobType) -> dict[str, int]:
        counts = {"retried": 0, "failed": 0, "orphans": 0, "cleaned": 0}
        threshold = self.settings.stalled_job_threshold

        for job in await self.queue.find_stalled(job_type, threshold):
            updated = await self.queue.expire_lease(job_type, job.id, STALLED_ERROR)
            if updated is None:
                continue
            metadata: dict[str, Any] = {
                "job_id": job.id,
                "attempt": job.attempts,
                "reason": "stalled",
                "worker_id": job.worker_id,
            }
            if updated.status is JobStatus.FAILED:
                counts["failed"] += 1
                try:
                    await self.state_machine.transition(
                        job.note_id, Trigger.FAILED, generation=job.generation
                    )
                except PipelineError as exc:
                    logger.error("stalled_note_transition_failed", note_id=job.note_id, error=exc.message)
                outcome = "failed"
                metadata["error"] = STALLED_ERROR
            else:
                counts["retried"] += 1
                outcome = "retry_scheduled"
            logger.warning("stalled_job_recovered", job_id=job.id, outcome=outcome)
            await self.audit.record(
                AuditEventType.for_stage(job_type, outcome),
                correlation_id=job.correlation_id,
                note_id=job.note_id,
                user_id=job.payload.get("userId"),
                metadata=metadata,
            )

        counts["orphans"] = await self.queue.requeue_orphans(job_type, threshold)
        counts["cleaned"] = await self.queue.clean(job_type, self.settings.history_window)
        if any(counts.values()):
            logger.info("watchdog_sweep", job_type=job_type.value, **counts)
        return counts

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception("watchdog_sweep_failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stopping.wait(), self.settings.watchdog_interval)
            except TimeoutError:
                pass

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop(), name="stalled-job-watchdog")
            logger.info("watchdog_started", interval=self.settings.watchdog_interval)

    async def close(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
