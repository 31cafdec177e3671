"""
Audit Sink

Append-only trail of processing outcomes for each note. Events are written
through the repository and mirrored to the structured log.

Usage:
    sink = AuditSink(repository)

    await sink.record(
        AuditEventType.for_stage(JobType.TRANSCRIBE, "started"),
        note_id=note.id,
        user_id=user_id,
        correlation_id=job.correlation_id,
        metadata={"job_id": job.id, "attempt": job.attempts},
    )

Recording never raises: a failed audit write is logged and the pipeline
carries on.
"""

from typing import Any

from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.models import AuditEvent, JobType
from voicenote_pipeline.repository import NoteRepository

logger = get_logger()


# =============================================================================
# Event Type Definitions
# =============================================================================


class AuditEventType:
    """Standard audit event names."""

    TRANSCRIPTION_STARTED = "transcription_started"
    TRANSCRIPTION_COMPLETED = "transcription_completed"
    TRANSCRIPTION_FAILED = "transcription_failed"
    TRANSCRIPTION_RETRY_SCHEDULED = "transcription_retry_scheduled"
    TRANSCRIPTION_DISCARDED = "transcription_discarded"

    SUMMARIZATION_STARTED = "summarization_started"
    SUMMARIZATION_COMPLETED = "summarization_completed"
    SUMMARIZATION_FAILED = "summarization_failed"
    SUMMARIZATION_RETRY_SCHEDULED = "summarization_retry_scheduled"
    SUMMARIZATION_DISCARDED = "summarization_discarded"

    _STAGE_PREFIX = {
        JobType.TRANSCRIBE: "transcription",
        JobType.SUMMARIZE: "summarization",
    }

    @classmethod
    def for_stage(cls, job_type: JobType | str, outcome: str) -> str:
        """Build the event name for a job type and outcome, e.g. ``summarization_failed``."""
        return f"{cls._STAGE_PREFIX[JobType(job_type)]}_{outcome}"


# =============================================================================
# Audit Sink
# =============================================================================


class AuditSink:
    """Write audit events for note processing."""

    def __init__(self, repository: NoteRepository):
        self.repository = repository

    async def record(
        self,
        event_type: str,
        *,
        correlation_id: str,
        note_id: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        """
        Record an audit event.

        Args:
            event_type: Event name from AuditEventType
            correlation_id: Id shared by every event of one processing chain
            note_id: Note the event belongs to
            user_id: Acting user, if known
            metadata: Additional event data

        Returns:
            Event ID if persisted, None otherwise
        """
        event = AuditEvent(
            type=event_type,
            correlation_id=correlation_id,
            note_id=note_id,
            user_id=user_id,
            metadata=dict(metadata or {}),
        )
        logger.info(
            "audit_event",
            audit_type=event_type,
            note_id=note_id,
            correlation_id=correlation_id,
            metadata=event.metadata,
        )
        try:
            await self.repository.record_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_event_persist_failed",
                audit_type=event_type,
                note_id=note_id,
                error=str(exc),
            )
            return None
        return event.id
