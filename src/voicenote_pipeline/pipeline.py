"""
Processing Pipeline

Inbound API used by the CRUD layer. Requests are validated synchronously:
a note in the wrong status, missing media or audio the STT backend cannot
handle raise before anything is enqueued.

Usage:
    pipeline = ProcessingPipeline(settings, queue, repository, blobs)
    job_id = await pipeline.enqueue_transcribe(
        TranscribeRequest(note_id=note.id, media_id=media.id, storage_key=media.storage_key)
    )
    pipeline.start()          # worker pools + watchdog
    ...
    await pipeline.close()
"""

from typing import Any

from voicenote_pipeline.audit import AuditEventType, AuditSink
from voicenote_pipeline.config import PipelineSettings
from voicenote_pipeline.errors import (
    InvalidTransitionError,
    NoteNotFoundError,
    PipelineError,
    ValidationError,
)
from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.models import (
    HealthStatus,
    JobOptions,
    JobStatusView,
    JobType,
    Note,
    NoteStatus,
    QueueStats,
    SummarizeJobData,
    SummarizeRequest,
    TranscribeJobData,
    TranscribeRequest,
    new_id,
)
from voicenote_pipeline.providers import (
    LLMProvider,
    STTProvider,
    create_llm_provider,
    create_stt_provider,
)
from voicenote_pipeline.queue import JobQueue, job_id_for
from voicenote_pipeline.repository import BlobStore, NoteRepository
from voicenote_pipeline.state_machine import NoteStateMachine, Trigger
from voicenote_pipeline.workers import (
    StalledJobWatchdog,
    SummarizeHandler,
    TranscribeHandler,
    WorkerManager,
)
from voicenote_pipeline.workers.pool import ResultCallback

logger = get_logger()

STAGE_STATUS = {
    JobType.TRANSCRIBE: NoteStatus.TRANSCRIBING,
    JobType.SUMMARIZE: NoteStatus.SUMMARIZING,
}


class ProcessingPipeline:
    """Facade over the queue, the state machine and the worker pools."""

    def __init__(
        self,
        settings: PipelineSettings,
        queue: JobQueue,
        repository: NoteRepository,
        blobs: BlobStore,
        *,
        stt: STTProvider | None = None,
        llm: LLMProvider | None = None,
    ):
        self.settings = settings
        self.queue = queue
        self.repository = repository
        self.blobs = blobs
        self.stt = stt or create_stt_provider(settings)
        self.llm = llm or create_llm_provider(settings)
        self.state_machine = NoteStateMachine(repository)
        self.audit = AuditSink(repository)
        self.manager: WorkerManager | None = None

    async def _get_note(self, note_id: str) -> Note:
        note = await self.repository.get_note(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note

    # -- enqueue ------------------------------------------------------------

    async def enqueue_transcribe(self, request: TranscribeRequest) -> str:
        """Queue transcription for an uploaded note; a note in ``error`` is retried."""
        note = await self._get_note(request.note_id)
        if note.status not in (NoteStatus.UPLOADED, NoteStatus.ERROR):
            raise InvalidTransitionError(note.id, note.status.value, Trigger.TRANSCRIBE_STARTED.value)

        media = await self.repository.get_media(request.media_id)
        if media is None or media.note_id != note.id:
            raise ValidationError(
                f"Media {request.media_id} not found for note {note.id}",
                error_code="MEDIA_NOT_FOUND",
                note_id=note.id,
                media_id=request.media_id,
            )
        if request.storage_key != media.storage_key:
            raise ValidationError(
                f"Storage key {request.storage_key!r} does not match media {media.id}",
                error_code="STORAGE_KEY_MISMATCH",
                note_id=note.id,
                media_id=media.id,
            )
        self.stt.check_media(media.mime_type, media.size_bytes)

        generation = note.generation
        retried = note.status is NoteStatus.ERROR
        if retried:
            result = await self.state_machine.transition(note.id, Trigger.RETRY_TRANSCRIBE)
            generation = result.generation

        data = TranscribeJobData(
            note_id=note.id,
            media_id=media.id,
            storage_key=media.storage_key,
            user_id=request.user_id or note.owner_id,
            options=JobOptions(language=request.language, model=request.model),
        )
        return await self._enqueue(
            JobType.TRANSCRIBE, note.id, data.to_wire(), generation, self.stt.name, retried=retried
        )

    async def enqueue_summarize(self, request: SummarizeRequest) -> str:
        """Queue summarization of a transcribed note; a note in ``error`` is retried."""
        note = await self._get_note(request.note_id)
        if note.status not in (NoteStatus.TRANSCRIBING_DONE, NoteStatus.ERROR):
            raise InvalidTransitionError(note.id, note.status.value, Trigger.SUMMARIZE_STARTED.value)

        text = request.transcript_text
        if request.transcript_id:
            transcript = await self.repository.get_transcript(request.transcript_id)
            if transcript is None or transcript.note_id != note.id:
                raise ValidationError(
                    f"Transcript {request.transcript_id} not found for note {note.id}",
                    error_code="TRANSCRIPT_NOT_FOUND",
                    note_id=note.id,
                )
            text = text or transcript.text
        if not text.strip():
            raise ValidationError("Transcript text is empty", error_code="EMPTY_TRANSCRIPT", note_id=note.id)

        generation = note.generation
        retried = note.status is NoteStatus.ERROR
        if retried:
            result = await self.state_machine.transition(note.id, Trigger.RETRY_SUMMARIZE)
            generation = result.generation

        data = SummarizeJobData(
            note_id=note.id,
            transcript_id=request.transcript_id or "",
            transcript_text=text,
            user_id=request.user_id or note.owner_id,
            options=JobOptions(language=request.language, model=request.model),
        )
        return await self._enqueue(
            JobType.SUMMARIZE, note.id, data.to_wire(), generation, self.llm.name, retried=retried
        )

    async def _enqueue(
        self,
        job_type: JobType,
        note_id: str,
        payload: dict[str, Any],
        generation: int,
        provider: str,
        retried: bool,
    ) -> str:
        try:
            job_id = await self.queue.enqueue(
                job_type,
                note_id,
                payload,
                job_id=job_id_for(job_type, note_id, generation),
                provider=provider,
                generation=generation,
                correlation_id=new_id(),
            )
        except Exception as exc:
            logger.error(
                "processing_enqueue_failed",
                job_type=job_type.value,
                note_id=note_id,
                generation=generation,
                error=str(exc),
            )
            # The retry trigger already moved the note into the stage.
            if retried:
                await self._fail_note(note_id, generation)
            raise
        logger.info(
            "processing_requested",
            job_type=job_type.value,
            job_id=job_id,
            note_id=note_id,
            generation=generation,
        )
        return job_id

    async def _owns_note(self, job_type: JobType, note_id: str, generation: int) -> bool:
        """Whether the note sits in ``job_type``'s stage on behalf of ``generation``."""
        note = await self.repository.get_note(note_id)
        return (
            note is not None
            and note.generation == generation
            and note.status is STAGE_STATUS[job_type]
        )

    async def _fail_note(self, note_id: str, generation: int) -> None:
        try:
            await self.state_machine.transition(note_id, Trigger.FAILED, generation=generation)
        except PipelineError as exc:
            logger.error("note_fail_transition_failed", note_id=note_id, error=exc.message)

    # -- inspection and control ---------------------------------------------

    async def get_job_status(self, job_type: JobType | str, job_id: str) -> JobStatusView:
        return await self.queue.get_status(job_type, job_id)

    async def cancel_job(self, job_type: JobType | str, job_id: str) -> bool:
        """
        Cancel a job.

        Pending jobs are removed and True is returned; if the note is in the
        job's stage for the job's generation (a retry, or a job that already
        ran an attempt), the note moves to ``error``. Active jobs are
        flagged and False is returned: the running handler discards its
        result, fails the job and moves the note to ``error``.
        """
        job_type = JobType(job_type)
        job = await self.queue.get_job(job_type, job_id)
        removed = await self.queue.cancel(job_type, job_id)
        if removed and job is not None and await self._owns_note(job_type, job.note_id, job.generation):
            await self._fail_note(job.note_id, job.generation)
            await self.audit.record(
                AuditEventType.for_stage(job_type, "discarded"),
                correlation_id=job.correlation_id,
                note_id=job.note_id,
                user_id=job.payload.get("userId"),
                metadata={"job_id": job_id, "attempt": job.attempts, "reason": "cancelled"},
            )
        return removed

    async def queue_stats(self, job_type: JobType | str) -> QueueStats:
        return await self.queue.stats(job_type)

    async def pause(self, job_type: JobType | str) -> None:
        await self.queue.pause(job_type)

    async def resume(self, job_type: JobType | str) -> None:
        await self.queue.resume(job_type)

    async def health_check(self) -> HealthStatus:
        return await self.queue.health_check()

    # -- lifecycle ----------------------------------------------------------

    def create_worker_manager(self, on_result: ResultCallback | None = None) -> WorkerManager:
        transcribe = TranscribeHandler(
            self.queue,
            self.state_machine,
            self.repository,
            self.audit,
            self.settings,
            stt=self.stt,
            blobs=self.blobs,
            llm_provider_name=self.llm.name,
        )
        summarize = SummarizeHandler(
            self.queue, self.state_machine, self.repository, self.audit, self.settings, llm=self.llm
        )
        watchdog = StalledJobWatchdog(self.queue, self.state_machine, self.audit, self.settings)
        return WorkerManager(
            self.queue, transcribe, summarize, watchdog, self.settings, on_result=on_result
        )

    def start(self, on_result: ResultCallback | None = None) -> WorkerManager:
        if self.manager is None:
            self.manager = self.create_worker_manager(on_result)
        self.manager.start()
        return self.manager

    async def close(self) -> None:
        if self.manager is not None:
            await self.manager.close()
            self.manager = None
        await self.stt.close()
        await self.llm.close()
        await self.queue.close()
        logger.info("pipeline_closed")
