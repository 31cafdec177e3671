"""Worker pools, stage handlers and stalled-job recovery."""

from voicenote_pipeline.workers.handlers import (
    JobOutcome,
    JobResult,
    StageHandler,
    SummarizeHandler,
    TranscribeHandler,
)
from voicenote_pipeline.workers.pool import WorkerManager, WorkerPool
from voicenote_pipeline.workers.rate_limit import SlidingWindowRateLimiter
from voicenote_pipeline.workers.watchdog import StalledJobWatchdog

__all__ = [
    "JobOutcome",
    "JobResult",
    "SlidingWindowRateLimiter",
    "StageHandler",
    "StalledJobWatchdog",
    "SummarizeHandler",
    "TranscribeHandler",
    "WorkerManager",
    "WorkerPool",
]
