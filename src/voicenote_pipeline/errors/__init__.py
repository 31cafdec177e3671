"""Structured error hierarchy for the voice-note pipeline."""

from voicenote_pipeline.errors.exceptions import (
    BrokerUnavailableError,
    ConcurrentModificationError,
    InvalidTransitionError,
    LLMFailure,
    NoteNotFoundError,
    PipelineError,
    ProviderConfigError,
    ProviderError,
    ServiceUnavailableError,
    StorageError,
    STTFailure,
    UnsupportedMediaError,
    ValidationError,
    is_retryable,
)

__all__ = [
    "BrokerUnavailableError",
    "ConcurrentModificationError",
    "InvalidTransitionError",
    "LLMFailure",
    "NoteNotFoundError",
    "PipelineError",
    "ProviderConfigError",
    "ProviderError",
    "STTFailure",
    "ServiceUnavailableError",
    "StorageError",
    "UnsupportedMediaError",
    "ValidationError",
    "is_retryable",
]
