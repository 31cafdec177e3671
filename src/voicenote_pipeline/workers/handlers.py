"""
Stage Handlers

One handler per job type. A handler owns a job from activation to its
terminal status and reports the outcome as a ``JobResult``; it never
re-raises.

Steps for every stage:

1. Activate the job (losing the race means another worker has it).
2. Move the note with the stage's ``*_started`` trigger.
3. Load inputs and call the provider under a timeout.
4. If the lease is still held, persist the output idempotently, move the
   note on, chain the next stage and complete the job.
5. On error, reschedule with backoff while attempts remain, otherwise fail
   the job and move the note to ``error``.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from voicenote_pipeline.audit import AuditEventType, AuditSink
from voicenote_pipeline.config import PipelineSettings
from voicenote_pipeline.errors import (
    InvalidTransitionError,
    LLMFailure,
    PipelineError,
    ProviderError,
    STTFailure,
    ValidationError,
    is_retryable,
)
from voicenote_pipeline.logging import bind_job_context, get_logger, log_performance
from voicenote_pipeline.models import (
    Action,
    JobOptions,
    JobType,
    NoteStatus,
    ProcessingJob,
    Summary,
    SummarizeJobData,
    Transcript,
    TranscribeJobData,
    new_id,
)
from voicenote_pipeline.providers import (
    LLMProvider,
    STTProvider,
    SummarizationOptions,
    TranscriptionOptions,
)
from voicenote_pipeline.queue import JobQueue, job_id_for
from voicenote_pipeline.repository import BlobStore, NoteRepository
from voicenote_pipeline.state_machine import NoteStateMachine, Trigger

logger = get_logger()


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class JobResult:
    """What happened to one delivered job."""

    outcome: JobOutcome
    job_id: str
    error: str | None = None
    retry_in: float | None = None
    result: dict[str, Any] = field(default_factory=dict)


class JobDiscarded(Exception):
    """Internal signal: stop processing without touching the note further."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StageHandler(ABC):
    """Shared job lifecycle for transcription and summarization."""

    job_type: JobType
    started_trigger: Trigger
    succeeded_trigger: Trigger
    failure_class: type[ProviderError]

    def __init__(
        self,
        queue: JobQueue,
        state_machine: NoteStateMachine,
        repository: NoteRepository,
        audit: AuditSink,
        settings: PipelineSettings,
    ):
        self.queue = queue
        self.state_machine = state_machine
        self.repository = repository
        self.audit = audit
        self.settings = settings

    # -- stage hooks ------------------------------------------------------

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def load_inputs(self, job: ProcessingJob) -> Any:
        """Fetch and validate whatever the provider call needs."""

    @abstractmethod
    async def invoke(self, job: ProcessingJob, inputs: Any) -> Any:
        """Call the provider. Runs under the provider timeout."""

    @abstractmethod
    async def persist(self, job: ProcessingJob, output: Any) -> dict[str, Any]:
        """Store the provider output; must be idempotent per job id."""

    async def after_success(self, job: ProcessingJob, result: dict[str, Any], status: NoteStatus) -> None:
        """Hook run after the note moved on and before the job completes."""

    # -- lifecycle --------------------------------------------------------

    async def handle(self, job: ProcessingJob, worker_id: str) -> JobResult:
        try:
            active = await self.queue.activate(self.job_type, job.id, worker_id)
        except Exception as exc:
            logger.error("job_activation_failed", job_id=job.id, error=str(exc))
            return JobResult(JobOutcome.SKIPPED, job.id, error=str(exc))
        if active is None:
            logger.debug("job_activation_lost", job_id=job.id, worker_id=worker_id)
            return JobResult(JobOutcome.SKIPPED, job.id)

        with bind_job_context(
            job_id=active.id,
            job_type=self.job_type.value,
            note_id=active.note_id,
            correlation_id=active.correlation_id,
            attempt=active.attempts,
        ):
            try:
                return await self._run(active)
            except Exception as exc:
                # Broker or storage trouble while recording the outcome; the
                # watchdog recovers the job once its lease goes stale.
                logger.exception("job_handler_error", error=str(exc))
                return JobResult(JobOutcome.FAILED, active.id, error=str(exc))

    async def _run(self, job: ProcessingJob) -> JobResult:
        heartbeat = asyncio.create_task(self._heartbeat_loop(job))
        try:
            try:
                return await self._process(job)
            except JobDiscarded as discarded:
                return await self._discard(job, discarded.reason)
            except Exception as exc:
                return await self._handle_failure(job, exc)
        finally:
            heartbeat.cancel()

    async def _process(self, job: ProcessingJob) -> JobResult:
        logger.info("job_started", provider=self.provider_name)
        try:
            started = await self.state_machine.transition(
                job.note_id, self.started_trigger, generation=job.generation
            )
        except InvalidTransitionError as exc:
            raise JobDiscarded(f"note not processable: {exc.message}") from exc
        if started.superseded:
            raise JobDiscarded("superseded by a newer processing generation")

        await self._record(
            "started",
            job,
            attempt=job.attempts,
            provider=self.provider_name,
            generation=job.generation,
        )
        await self._progress(job, 10)

        inputs = await self.load_inputs(job)
        await self._progress(job, 20)
        await self._ensure_owned(job)

        await self._progress(job, 30)
        try:
            async with log_performance(
                logger, f"{self.job_type.value}_provider_call", provider=self.provider_name
            ):
                output = await asyncio.wait_for(
                    self.invoke(job, inputs), timeout=self.settings.provider_timeout
                )
        except TimeoutError as exc:
            raise self.failure_class(
                f"{self.provider_name} timed out after {self.settings.provider_timeout}s",
                provider=self.provider_name,
            ) from exc
        await self._progress(job, 70)

        await self._ensure_owned(job)
        result = await self.persist(job, output)
        await self._progress(job, 80)

        moved = await self.state_machine.transition(
            job.note_id, self.succeeded_trigger, generation=job.generation
        )
        if moved.superseded:
            raise JobDiscarded("superseded by a newer processing generation")
        await self._progress(job, 90)

        await self._record("completed", job, attempt=job.attempts, **result)
        await self.after_success(job, result, moved.status)

        if not await self.queue.complete(self.job_type, job.id, job.lease_token, result):
            logger.warning("job_complete_lost_lease")
            return JobResult(JobOutcome.DISCARDED, job.id, error="lease lost", result=result)
        logger.info("job_completed")
        return JobResult(JobOutcome.COMPLETED, job.id, result=result)

    async def _handle_failure(self, job: ProcessingJob, exc: Exception) -> JobResult:
        error = str(exc) or exc.__class__.__name__
        if not await self.queue.owns(self.job_type, job.id, job.lease_token):
            return await self._discard(job, "lease lost during failure")

        if is_retryable(exc) and job.attempts < job.max_attempts:
            delay = await self.queue.retry(self.job_type, job.id, job.lease_token, error)
            if delay is None:
                return await self._discard(job, "lease lost during retry")
            logger.warning("job_retry_scheduled", error=error, retry_in=round(delay, 3))
            await self._record(
                "retry_scheduled", job, attempt=job.attempts, error=error, retry_in=delay
            )
            return JobResult(JobOutcome.RETRY_SCHEDULED, job.id, error=error, retry_in=delay)

        logger.error(
            "job_failed",
            error=error,
            error_code=getattr(exc, "error_code", None),
            retryable=is_retryable(exc),
        )
        await self.queue.fail(self.job_type, job.id, job.lease_token, error)
        await self._fail_note(job)
        await self._record(
            "failed",
            job,
            attempt=job.attempts,
            error=error,
            error_code=getattr(exc, "error_code", "INTERNAL_ERROR"),
        )
        return JobResult(JobOutcome.FAILED, job.id, error=error)

    async def _discard(self, job: ProcessingJob, reason: str) -> JobResult:
        """Drop the job's output. Cancelled jobs also fail and move the note to error."""
        current = await self.queue.get_job(self.job_type, job.id)
        cancelled = current is not None and current.cancel_requested
        if cancelled:
            reason = "cancelled"
        logger.info("job_discarded", reason=reason)

        still_leased = current is not None and current.lease_token == job.lease_token
        if still_leased:
            await self.queue.fail(self.job_type, job.id, job.lease_token, reason)
        if cancelled:
            await self._fail_note(job)
        await self._record("discarded", job, attempt=job.attempts, reason=reason)
        return JobResult(JobOutcome.DISCARDED, job.id, error=reason)

    # -- helpers ----------------------------------------------------------

    async def _ensure_owned(self, job: ProcessingJob) -> None:
        if not await self.queue.owns(self.job_type, job.id, job.lease_token):
            raise JobDiscarded("lease lost")

    async def _fail_note(self, job: ProcessingJob) -> None:
        try:
            await self.state_machine.transition(job.note_id, Trigger.FAILED, generation=job.generation)
        except PipelineError as exc:
            logger.error("note_fail_transition_failed", error=exc.message)

    async def _record(self, outcome: str, job: ProcessingJob, **metadata: Any) -> None:
        await self.audit.record(
            AuditEventType.for_stage(self.job_type, outcome),
            correlation_id=job.correlation_id,
            note_id=job.note_id,
            user_id=job.payload.get("userId"),
            metadata={"job_id": job.id, **metadata},
        )

    async def _progress(self, job: ProcessingJob, value: int) -> None:
        try:
            await self.queue.update_progress(self.job_type, job.id, job.lease_token, value)
        except Exception as exc:
            logger.warning("job_progress_update_failed", progress=value, error=str(exc))

    async def _heartbeat_loop(self, job: ProcessingJob) -> None:
        interval = max(self.settings.stalled_job_threshold / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.heartbeat(self.job_type, job.id, job.lease_token):
                    return
            except Exception as exc:
                logger.warning("job_heartbeat_failed", error=str(exc))


class TranscribeHandler(StageHandler):
    job_type = JobType.TRANSCRIBE
    started_trigger = Trigger.TRANSCRIBE_STARTED
    succeeded_trigger = Trigger.TRANSCRIBE_SUCCEEDED
    failure_class = STTFailure

    def __init__(
        self,
        queue: JobQueue,
        state_machine: NoteStateMachine,
        repository: NoteRepository,
        audit: AuditSink,
        settings: PipelineSettings,
        stt: STTProvider,
        blobs: BlobStore,
        llm_provider_name: str = "mock",
    ):
        super().__init__(queue, state_machine, repository, audit, settings)
        self.stt = stt
        self.blobs = blobs
        self.llm_provider_name = llm_provider_name

    @property
    def provider_name(self) -> str:
        return self.stt.name

    async def load_inputs(self, job: ProcessingJob) -> tuple[TranscribeJobData, bytes]:
        data = TranscribeJobData.model_validate(job.payload)
        media = await self.repository.get_media(data.media_id)
        if media is None:
            raise ValidationError(
                f"Media {data.media_id} not found", error_code="MEDIA_NOT_FOUND", media_id=data.media_id
            )
        self.stt.check_media(media.mime_type, media.size_bytes)
        audio = await self.blobs.fetch(data.storage_key)
        return data, audio

    async def invoke(self, job: ProcessingJob, inputs: tuple[TranscribeJobData, bytes]):
        data, audio = inputs
        return await self.stt.transcribe(
            audio,
            TranscriptionOptions(
                language=data.options.language or self.settings.default_language,
                model=data.options.model,
            ),
        )

    async def persist(self, job: ProcessingJob, output) -> dict[str, Any]:
        transcript = await self.repository.save_transcript(
            Transcript(
                id=new_id(),
                note_id=job.note_id,
                text=output.text,
                language=output.language,
                confidence=output.confidence,
                provider=self.stt.name,
                job_id=job.id,
                segments=[segment.model_dump() for segment in output.segments],
            )
        )
        return {
            "transcript_id": transcript.id,
            "language": transcript.language,
            "confidence": transcript.confidence,
        }

    async def after_success(self, job: ProcessingJob, result: dict[str, Any], status: NoteStatus) -> None:
        if status is not NoteStatus.TRANSCRIBING_DONE:
            # A replayed job whose summary already started must not queue another.
            logger.info("summarize_chain_skipped", note_status=status.value)
            return

        transcript = await self.repository.get_transcript(result["transcript_id"])
        payload = TranscribeJobData.model_validate(job.payload)
        data = SummarizeJobData(
            note_id=job.note_id,
            transcript_id=result["transcript_id"],
            transcript_text=transcript.text if transcript else "",
            user_id=payload.user_id,
            options=JobOptions(language=payload.options.language),
        )
        summarize_id = await self.queue.enqueue(
            JobType.SUMMARIZE,
            job.note_id,
            data.to_wire(),
            job_id=job_id_for(JobType.SUMMARIZE, job.note_id, job.generation),
            provider=self.llm_provider_name,
            generation=job.generation,
            correlation_id=job.correlation_id,
        )
        logger.info("summarize_chained", summarize_job_id=summarize_id)


class SummarizeHandler(StageHandler):
    job_type = JobType.SUMMARIZE
    started_trigger = Trigger.SUMMARIZE_STARTED
    succeeded_trigger = Trigger.SUMMARIZE_SUCCEEDED
    failure_class = LLMFailure

    def __init__(
        self,
        queue: JobQueue,
        state_machine: NoteStateMachine,
        repository: NoteRepository,
        audit: AuditSink,
        settings: PipelineSettings,
        llm: LLMProvider,
    ):
        super().__init__(queue, state_machine, repository, audit, settings)
        self.llm = llm

    @property
    def provider_name(self) -> str:
        return self.llm.name

    async def load_inputs(self, job: ProcessingJob) -> tuple[SummarizeJobData, str]:
        data = SummarizeJobData.model_validate(job.payload)
        text = data.transcript_text
        if data.transcript_id:
            transcript = await self.repository.get_transcript(data.transcript_id)
            if transcript is not None:
                text = transcript.text
        if not text.strip():
            raise ValidationError("Transcript is empty", error_code="EMPTY_TRANSCRIPT")
        return data, text

    async def invoke(self, job: ProcessingJob, inputs: tuple[SummarizeJobData, str]):
        data, text = inputs
        return await self.llm.summarize(
            text,
            SummarizationOptions(language=data.options.language, model=data.options.model),
        )

    async def persist(self, job: ProcessingJob, output) -> dict[str, Any]:
        summary = Summary(
            id=new_id(),
            note_id=job.note_id,
            tl_dr=output.tl_dr,
            bullets=list(output.bullets),
            provider=self.llm.name,
            job_id=job.id,
        )
        actions = [
            Action(
                id=new_id(),
                note_id=job.note_id,
                text=item.text,
                due_suggested=item.due_suggested,
                priority=item.priority,
            )
            for item in output.actions
        ]
        saved = await self.repository.save_summary_and_actions(summary, actions)
        return {"summary_id": saved.id, "actions": len(actions)}
