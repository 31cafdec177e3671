"""Structured exception hierarchy for the voice-note pipeline.

Exception Hierarchy:
    PipelineError (base)
    ├── ValidationError (422) - rejected synchronously, never enqueued
    │   ├── NoteNotFoundError
    │   ├── InvalidTransitionError
    │   └── UnsupportedMediaError
    ├── ConcurrentModificationError (409, retryable)
    ├── ServiceUnavailableError (503, retryable)
    │   ├── BrokerUnavailableError
    │   └── StorageError
    └── ProviderError (502, retryable)
        ├── STTFailure
        ├── LLMFailure
        └── ProviderConfigError (not retryable)
"""

from typing import Any


class PipelineError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        status_code: HTTP status code the CRUD layer should map this error to.
        error_code: Machine-readable error identifier.
        retryable: Whether a worker may reschedule the job after this error.
        context: Arbitrary key-value pairs providing additional error context.
    """

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, error_code: str = "INTERNAL_ERROR", **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message, **self.context}


class ValidationError(PipelineError):
    """Input or precondition failed validation."""

    status_code: int = 422

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR", **context: Any) -> None:
        super().__init__(message, error_code=error_code, **context)


class NoteNotFoundError(ValidationError):
    """The referenced note does not exist."""

    status_code: int = 404

    def __init__(self, note_id: str) -> None:
        super().__init__(f"Note {note_id} not found", error_code="NOTE_NOT_FOUND", note_id=note_id)


class InvalidTransitionError(ValidationError):
    """The note's current status does not permit the requested trigger."""

    status_code: int = 409

    def __init__(self, note_id: str, status: str, trigger: str) -> None:
        super().__init__(
            f"Cannot apply '{trigger}' to note {note_id} in status '{status}'",
            error_code="INVALID_TRANSITION",
            note_id=note_id,
            status=status,
            trigger=trigger,
        )


class UnsupportedMediaError(ValidationError):
    """Audio cannot be handled by the configured STT provider."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="UNSUPPORTED_MEDIA", **context)


class ConcurrentModificationError(PipelineError):
    """An optimistic version check kept losing to concurrent writers."""

    status_code: int = 409
    retryable: bool = True

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="CONCURRENT_MODIFICATION", **context)


class ServiceUnavailableError(PipelineError):
    """A downstream dependency is unreachable or unhealthy."""

    status_code: int = 503
    retryable: bool = True

    def __init__(self, message: str, error_code: str = "SERVICE_UNAVAILABLE", **context: Any) -> None:
        super().__init__(message, error_code=error_code, **context)


class BrokerUnavailableError(ServiceUnavailableError):
    """The queue broker could not be reached."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="BROKER_UNAVAILABLE", **context)


class StorageError(ServiceUnavailableError):
    """Blob bytes could not be fetched."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="STORAGE_ERROR", **context)


class ProviderError(PipelineError):
    """A speech-to-text or language-model backend failed."""

    status_code: int = 502
    retryable: bool = True

    def __init__(
        self,
        message: str,
        error_code: str = "PROVIDER_ERROR",
        provider: str = "unknown",
        retryable: bool | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, error_code=error_code, provider=provider, **context)
        self.provider = provider
        if retryable is not None:
            self.retryable = retryable


class STTFailure(ProviderError):
    """Transcription failed; wraps the backend's error."""

    def __init__(self, message: str, provider: str = "unknown", **context: Any) -> None:
        super().__init__(message, error_code="STT_FAILURE", provider=provider, **context)


class LLMFailure(ProviderError):
    """Summarization failed; wraps the backend's error."""

    def __init__(self, message: str, provider: str = "unknown", **context: Any) -> None:
        super().__init__(message, error_code="LLM_FAILURE", provider=provider, **context)


class ProviderConfigError(ProviderError):
    """A provider was selected without the configuration it needs."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        config_key: str | None = None,
        **context: Any,
    ) -> None:
        if config_key and config_key not in message:
            message = f"{message} (config key: {config_key})"
        super().__init__(
            message,
            error_code="PROVIDER_CONFIG_ERROR",
            provider=provider,
            retryable=False,
            config_key=config_key,
            **context,
        )
        self.config_key = config_key


def is_retryable(exc: BaseException) -> bool:
    """Whether a handler failure should be rescheduled.

    Unknown exceptions are treated as transient.
    """
    if isinstance(exc, PipelineError):
        return exc.retryable
    return True
