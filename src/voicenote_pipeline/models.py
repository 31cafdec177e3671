"""
Pipeline Data Model

Domain records shared by the state machine, the job queue and the workers.
Records owned by the repository are plain dataclasses; JSON job payloads are
pydantic models so they validate on the way in and out of the broker.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Enumerations
# =============================================================================


class NoteStatus(str, Enum):
    """Lifecycle status of a note."""

    IDLE = "idle"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    TRANSCRIBING_DONE = "transcribing_done"
    SUMMARIZING = "summarizing"
    READY = "ready"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (NoteStatus.READY, NoteStatus.ERROR)


# Forward path; ``error`` sits outside it.
STATUS_ORDER: tuple[NoteStatus, ...] = (
    NoteStatus.IDLE,
    NoteStatus.UPLOADING,
    NoteStatus.UPLOADED,
    NoteStatus.TRANSCRIBING,
    NoteStatus.TRANSCRIBING_DONE,
    NoteStatus.SUMMARIZING,
    NoteStatus.READY,
)


class JobType(str, Enum):
    TRANSCRIBE = "transcribe"
    SUMMARIZE = "summarize"


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_live(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.ACTIVE)


# =============================================================================
# Repository records
# =============================================================================


@dataclass
class Note:
    """Top-level entity for one voice memo."""

    id: str
    owner_id: str
    title: str = ""
    tags: set[str] = field(default_factory=set)
    status: NoteStatus = NoteStatus.IDLE
    version: int = 0
    generation: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Media:
    """Uploaded audio reference; bytes live in the blob store."""

    id: str
    note_id: str
    storage_key: str
    mime_type: str
    size_bytes: int


@dataclass
class Transcript:
    id: str
    note_id: str
    text: str
    language: str
    confidence: float
    provider: str
    job_id: str | None = None
    segments: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Summary:
    id: str
    note_id: str
    tl_dr: str
    bullets: list[str]
    provider: str
    job_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Action:
    id: str
    note_id: str
    text: str
    done: bool = False
    due_suggested: date | None = None
    priority: str | None = None


@dataclass(frozen=True)
class AuditEvent:
    """Write-once record of a lifecycle transition or job outcome."""

    type: str
    correlation_id: str
    note_id: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


# =============================================================================
# Job records
# =============================================================================


@dataclass
class ProcessingJob:
    """Shadow record of one unit of queued work, owned by the job queue."""

    id: str
    type: JobType
    note_id: str
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 10
    provider: str = "mock"
    generation: int = 0
    correlation_id: str = field(default_factory=new_id)
    progress: int = 0
    created_at: datetime = field(default_factory=utcnow)
    available_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    heartbeat_at: datetime | None = None
    delivered_at: datetime | None = None
    last_error: str | None = None
    worker_id: str | None = None
    lease_token: str | None = None
    cancel_requested: bool = False
    result: dict[str, Any] | None = None


@dataclass(frozen=True)
class JobStatusView:
    """What the CRUD layer sees of a job."""

    status: str
    progress: int | None = None
    error: str | None = None
    attempts: int = 0
    max_attempts: int = 0

    @classmethod
    def not_found(cls) -> "JobStatusView":
        return cls(status="not_found")

    @classmethod
    def from_job(cls, job: ProcessingJob, *, delayed: bool = False) -> "JobStatusView":
        status = "delayed" if delayed and job.status is JobStatus.PENDING else job.status.value
        return cls(
            status=status,
            progress=job.progress,
            error=job.last_error,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        )


@dataclass(frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


@dataclass(frozen=True)
class HealthStatus:
    status: str
    latency_ms: float | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


# =============================================================================
# Wire payloads
# =============================================================================


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class JobOptions(WireModel):
    language: str | None = None
    model: str | None = None


class TranscribeJobData(WireModel):
    note_id: str
    media_id: str
    storage_key: str
    user_id: str
    options: JobOptions = Field(default_factory=JobOptions)


class SummarizeJobData(WireModel):
    note_id: str
    transcript_id: str = ""
    transcript_text: str
    user_id: str
    options: JobOptions = Field(default_factory=JobOptions)


# =============================================================================
# Inbound requests
# =============================================================================


class TranscribeRequest(BaseModel):
    note_id: str = Field(min_length=1)
    media_id: str = Field(min_length=1)
    storage_key: str = Field(min_length=1)
    language: str | None = None
    model: str | None = None
    user_id: str | None = None


class SummarizeRequest(BaseModel):
    note_id: str = Field(min_length=1)
    transcript_text: str = ""
    transcript_id: str | None = None
    language: str | None = None
    model: str | None = None
    user_id: str | None = None
