"""
Worker Pools

``WorkerPool`` runs ``concurrency`` asyncio workers for one job type. Each
worker takes a rate-limit slot, reserves a job and hands it to the stage
handler. ``WorkerManager`` owns both pools plus the stalled-job watchdog.

Usage:
    manager = WorkerManager(queue, transcribe_handler, summarize_handler, watchdog, settings)
    manager.start()
    ...
    await manager.close()
"""

import asyncio
import inspect
import os
import socket
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from typing import Any

from voicenote_pipeline.config import PipelineSettings, QueueSettings
from voicenote_pipeline.errors import ServiceUnavailableError
from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.models import JobType
from voicenote_pipeline.queue import JobQueue
from voicenote_pipeline.workers.handlers import JobResult, StageHandler
from voicenote_pipeline.workers.rate_limit import SlidingWindowRateLimiter
from voicenote_pipeline.workers.watchdog import StalledJobWatchdog

logger = get_logger()

ResultCallback = Callable[[JobResult], Awaitable[None] | None]


class WorkerPool:
    """Bounded set of workers for one job type."""

    def __init__(
        self,
        job_type: JobType,
        queue: JobQueue,
        handler: StageHandler,
        policy: QueueSettings,
        *,
        on_result: ResultCallback | None = None,
        shutdown_timeout: float = 30.0,
    ):
        self.job_type = job_type
        self.queue = queue
        self.handler = handler
        self.policy = policy
        self.on_result = on_result
        self.shutdown_timeout = shutdown_timeout
        self.limiter = SlidingWindowRateLimiter(policy.rate_limit_max, policy.rate_limit_duration)
        self.outcomes: Counter[str] = Counter()
        self.in_flight = 0
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._id_prefix = f"{socket.gethostname()}-{os.getpid()}-{job_type.value}"

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(
                self._work(f"{self._id_prefix}-{index}"),
                name=f"{self.job_type.value}-worker-{index}",
            )
            for index in range(self.policy.concurrency)
        ]
        logger.info(
            "worker_pool_started",
            job_type=self.job_type.value,
            concurrency=self.policy.concurrency,
            rate_limit=f"{self.policy.rate_limit_max}/{self.policy.rate_limit_duration}s",
        )

    async def _work(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            await self.limiter.acquire()
            if self._stopping.is_set():
                self.limiter.refund()
                break
            try:
                job = await self.queue.reserve(self.job_type, timeout=self.policy.poll_interval)
            except ServiceUnavailableError as exc:
                self.limiter.refund()
                logger.warning("worker_reserve_failed", worker_id=worker_id, error=exc.message)
                await asyncio.sleep(self.policy.poll_interval)
                continue
            if job is None:
                self.limiter.refund()
                continue

            self.in_flight += 1
            try:
                result = await self.handler.handle(job, worker_id)
            finally:
                self.in_flight -= 1
            self.outcomes[result.outcome.value] += 1
            await self._notify(result)

    async def _notify(self, result: JobResult) -> None:
        if self.on_result is None:
            return
        try:
            outcome = self.on_result(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("worker_result_callback_failed", error=str(exc))

    async def close(self) -> None:
        """Stop taking jobs; let running handlers finish within the shutdown timeout."""
        self._stopping.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("worker_pool_forced_shutdown", job_type=self.job_type.value, cancelled=len(pending))
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("worker_crashed", job_type=self.job_type.value, error=str(task.exception()))
        self._tasks = []
        logger.info("worker_pool_stopped", job_type=self.job_type.value)

    def stats(self) -> dict[str, Any]:
        return {
            "workers": sum(1 for task in self._tasks if not task.done()),
            "concurrency": self.policy.concurrency,
            "in_flight": self.in_flight,
            "rate_limit_available": self.limiter.available,
            "outcomes": dict(self.outcomes),
        }


class WorkerManager:
    """Lifecycle owner for the transcribe pool, the summarize pool and the watchdog."""

    def __init__(
        self,
        queue: JobQueue,
        transcribe_handler: StageHandler,
        summarize_handler: StageHandler,
        watchdog: StalledJobWatchdog,
        settings: PipelineSettings,
        *,
        on_result: ResultCallback | None = None,
    ):
        self.queue = queue
        self.settings = settings
        self.watchdog = watchdog
        self.pools: dict[JobType, WorkerPool] = {
            JobType.TRANSCRIBE: WorkerPool(
                JobType.TRANSCRIBE, queue, transcribe_handler, settings.transcribe, on_result=on_result
            ),
            JobType.SUMMARIZE: WorkerPool(
                JobType.SUMMARIZE, queue, summarize_handler, settings.summarize, on_result=on_result
            ),
        }

    @property
    def running(self) -> bool:
        return all(pool.running for pool in self.pools.values())

    def start(self) -> None:
        for pool in self.pools.values():
            pool.start()
        self.watchdog.start()
        logger.info("worker_manager_started")

    async def close(self) -> None:
        await asyncio.gather(*(pool.close() for pool in self.pools.values()))
        await self.watchdog.close()
        logger.info("worker_manager_stopped")

    async def stats(self) -> dict[str, Any]:
        report: dict[str, Any] = {}
        for job_type, pool in self.pools.items():
            queue_stats = await self.queue.stats(job_type)
            report[job_type.value] = {
                "queue": asdict(queue_stats),
                "paused": await self.queue.is_paused(job_type),
                "pool": pool.stats(),
            }
        return report

    async def health_check(self) -> dict[str, Any]:
        broker = await self.queue.health_check()
        workers = {job_type.value: pool.running for job_type, pool in self.pools.items()}
        healthy = broker.ok and all(workers.values())
        return {
            "status": "healthy" if healthy else "unhealthy",
            "broker": asdict(broker),
            "workers": workers,
        }
