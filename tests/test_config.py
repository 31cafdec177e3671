"""Tests for environment-based settings and the error hierarchy."""

import pytest
from pydantic import ValidationError as SettingsValidationError

from voicenote_pipeline.config import PipelineSettings, QueueSettings
from voicenote_pipeline.errors import (
    BrokerUnavailableError,
    InvalidTransitionError,
    LLMFailure,
    NoteNotFoundError,
    PipelineError,
    ProviderConfigError,
    STTFailure,
    UnsupportedMediaError,
    is_retryable,
)
from voicenote_pipeline.models import JobType


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("REDIS_URL", "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "ASSEMBLYAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestPipelineSettings:
    def test_defaults(self):
        settings = PipelineSettings()

        assert settings.queue_driver == "memory"
        assert settings.stt_provider == "mock"
        assert settings.transcribe.concurrency == 2
        assert settings.summarize.concurrency == 3
        assert settings.summarize.priority < settings.transcribe.priority

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_QUEUE_DRIVER", "redis")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
        monkeypatch.setenv("PIPELINE_STT_PROVIDER", " OpenAI ")
        monkeypatch.setenv("PIPELINE_LOG_LEVEL", "debug")
        monkeypatch.setenv("PIPELINE_TRANSCRIBE__CONCURRENCY", "4")

        settings = PipelineSettings()

        assert settings.queue_driver == "redis"
        assert settings.redis_url == "redis://cache:6379/2"
        assert settings.stt_provider == "openai"
        assert settings.log_level == "DEBUG"
        assert settings.transcribe.concurrency == 4

    def test_unknown_queue_driver(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_QUEUE_DRIVER", "kafka")
        with pytest.raises(SettingsValidationError):
            PipelineSettings()

    def test_watchdog_must_not_outlast_threshold(self):
        with pytest.raises(SettingsValidationError):
            PipelineSettings(stalled_job_threshold=10, watchdog_interval=30)

    def test_for_job(self):
        settings = PipelineSettings()
        assert settings.for_job(JobType.TRANSCRIBE) is settings.transcribe
        assert settings.for_job("summarize") is settings.summarize


class TestQueueSettings:
    def test_backoff_doubles(self):
        policy = QueueSettings(backoff_delay=2.0)
        assert [policy.backoff_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_rejects_zero_concurrency(self):
        with pytest.raises(SettingsValidationError):
            QueueSettings(concurrency=0)


class TestErrors:
    def test_to_dict_includes_context(self):
        error = InvalidTransitionError("n1", "ready", "transcribe_started")
        assert error.to_dict() == {
            "error_code": "INVALID_TRANSITION",
            "message": "Cannot apply 'transcribe_started' to note n1 in status 'ready'",
            "note_id": "n1",
            "status": "ready",
            "trigger": "transcribe_started",
        }

    @pytest.mark.parametrize(
        "error,status_code",
        [
            (NoteNotFoundError("n1"), 404),
            (InvalidTransitionError("n1", "idle", "failed"), 409),
            (UnsupportedMediaError("bad"), 422),
            (BrokerUnavailableError("down"), 503),
            (STTFailure("boom"), 502),
        ],
    )
    def test_status_codes(self, error, status_code):
        assert error.status_code == status_code

    def test_retryability(self):
        assert is_retryable(STTFailure("503"))
        assert not is_retryable(LLMFailure("400", retryable=False))
        assert is_retryable(BrokerUnavailableError("down"))
        assert not is_retryable(UnsupportedMediaError("bad"))
        assert not is_retryable(ProviderConfigError("no key", config_key="OPENAI_API_KEY"))
        assert is_retryable(RuntimeError("unexpected"))

    def test_config_key_in_message(self):
        error = ProviderConfigError("openai API key not configured", config_key="OPENAI_API_KEY")
        assert "OPENAI_API_KEY" in error.message
        assert isinstance(error, PipelineError)
