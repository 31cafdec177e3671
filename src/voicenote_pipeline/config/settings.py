"""Environment-based pipeline configuration.

All tunables live on one ``PipelineSettings`` object that is validated once
at startup and then passed to the components that need it. Per-job-type
worker policy is grouped in ``QueueSettings``::

    PIPELINE_QUEUE_DRIVER=redis
    PIPELINE_TRANSCRIBE__CONCURRENCY=4
    PIPELINE_SUMMARIZE__RATE_LIMIT_MAX=30
"""

from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from voicenote_pipeline.models import JobType


class QueueSettings(BaseModel):
    """Worker and retry policy for one job type."""

    concurrency: int = Field(default=2, ge=1, description="Concurrent jobs per worker pool")
    rate_limit_max: int = Field(default=10, ge=1, description="Jobs started per window")
    rate_limit_duration: float = Field(default=60.0, gt=0, description="Window length in seconds")
    max_attempts: int = Field(default=3, ge=1)
    backoff_delay: float = Field(default=2.0, ge=0, description="First retry delay in seconds")
    backoff_jitter: float = Field(default=0.2, ge=0, le=1, description="Jitter ratio")
    priority: int = Field(default=10, ge=0, description="Lower runs first")
    remove_on_complete: int = Field(default=50, ge=0)
    remove_on_fail: int = Field(default=20, ge=0)
    poll_interval: float = Field(default=1.0, gt=0)

    def backoff_for(self, attempts: int) -> float:
        """Base exponential delay before jitter for the given attempt count."""
        return self.backoff_delay * (2 ** max(attempts - 1, 0))


class PipelineSettings(BaseSettings):
    """Process-wide configuration read from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        env_nested_delimiter="__",
        populate_by_name=True,
        extra="ignore",
    )

    service_name: str = "voicenote-pipeline"
    log_level: str = "INFO"
    log_format: Literal["json", "dev"] = "json"

    queue_driver: Literal["memory", "redis"] = "memory"
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("PIPELINE_REDIS_URL", "REDIS_URL"),
    )
    queue_prefix: str = "vnp"

    stt_provider: str = "mock"
    llm_provider: str = "mock"
    provider_timeout: float = Field(default=120.0, gt=0)
    mock_latency: float = Field(default=0.0, ge=0)
    default_language: str = "es"

    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PIPELINE_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    openai_base_url: str = "https://api.openai.com/v1"
    openai_stt_model: str = "whisper-1"
    openai_model: str = "gpt-4o-mini"
    assemblyai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PIPELINE_ASSEMBLYAI_API_KEY", "ASSEMBLYAI_API_KEY"),
    )
    assemblyai_base_url: str = "https://api.assemblyai.com/v2"
    assemblyai_poll_interval: float = Field(default=5.0, gt=0)
    anthropic_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PIPELINE_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    )
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    anthropic_model: str = "claude-3-haiku-20240307"

    transcribe: QueueSettings = Field(
        default_factory=lambda: QueueSettings(concurrency=2, rate_limit_max=10, priority=10)
    )
    summarize: QueueSettings = Field(
        default_factory=lambda: QueueSettings(concurrency=3, rate_limit_max=15, priority=5)
    )

    stalled_job_threshold: float = Field(default=300.0, gt=0)
    watchdog_interval: float = Field(default=60.0, gt=0)
    history_window: float = Field(default=24 * 60 * 60, gt=0)
    blob_root: str = "./storage"

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("stt_provider", "llm_provider")
    @classmethod
    def _lower_provider(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _check_watchdog(self) -> "PipelineSettings":
        if self.watchdog_interval > self.stalled_job_threshold:
            raise ValueError("watchdog_interval must not exceed stalled_job_threshold")
        return self

    def for_job(self, job_type: JobType | str) -> QueueSettings:
        """Return the queue policy for a job type."""
        return self.transcribe if JobType(job_type) is JobType.TRANSCRIBE else self.summarize
