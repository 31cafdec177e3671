"""
Provider Interfaces

Speech-to-text and language-model backends share two small contracts so the
worker handlers never see vendor specifics. Results are pydantic models and
are validated before they reach persistence; backend errors are wrapped in
``STTFailure`` / ``LLMFailure``.
"""

from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import Any, Literal

import aiohttp
from pydantic import BaseModel, Field, field_validator

from voicenote_pipeline.errors import ProviderError, UnsupportedMediaError
from voicenote_pipeline.logging import get_logger

logger = get_logger()

MB = 1024 * 1024

# HTTP statuses worth retrying; other 4xx responses are permanent.
RETRYABLE_STATUSES = frozenset({408, 409, 425, 429})

# Raised while decoding an unexpected response body. pydantic.ValidationError
# is a ValueError.
MALFORMED_RESPONSE_ERRORS = (AttributeError, IndexError, KeyError, TypeError, ValueError)


# =============================================================================
# Request / result models
# =============================================================================


class TranscriptionOptions(BaseModel):
    language: str | None = None
    model: str | None = None
    temperature: float | None = None
    prompt: str | None = None


class TranscriptionSegment(BaseModel):
    start: float
    end: float
    text: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class TranscriptionResult(BaseModel):
    text: str
    language: str
    confidence: float = Field(ge=0.0, le=1.0)
    segments: list[TranscriptionSegment] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SummarizationOptions(BaseModel):
    language: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    custom_prompt: str | None = None


class ActionItem(BaseModel):
    text: str
    priority: Literal["low", "medium", "high"] = "medium"
    due_suggested: date | None = None
    category: str | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> Any:
        if value is None:
            return "medium"
        value = str(value).strip().lower()
        return value if value in ("low", "medium", "high") else "medium"


class SummarizationResult(BaseModel):
    tl_dr: str
    bullets: list[str] = Field(default_factory=list)
    actions: list[ActionItem] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


def stagger_due_dates(actions: list[dict[str, Any]], step_days: int = 3) -> list[ActionItem]:
    """Build action items, suggesting due dates ``step_days`` apart from today."""
    today = date.today()
    return [
        ActionItem(
            text=action.get("text", ""),
            priority=action.get("priority"),
            category=action.get("category"),
            due_suggested=today + timedelta(days=(index + 1) * step_days),
        )
        for index, action in enumerate(actions)
        if action.get("text")
    ]


# =============================================================================
# Provider contracts
# =============================================================================


class STTProvider(ABC):
    """Abstract speech-to-text backend."""

    name: str = "base"

    @abstractmethod
    async def transcribe(
        self, audio: bytes, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult:
        """
        Transcribe an audio file.

        Raises:
            STTFailure: The backend failed; ``retryable`` tells whether a
                later attempt may succeed.
        """

    @abstractmethod
    def supported_formats(self) -> list[str]:
        pass

    @abstractmethod
    def max_file_size(self) -> int:
        """Largest accepted upload in bytes."""

    def check_media(self, mime_type: str, size_bytes: int) -> None:
        """Reject audio this backend cannot handle before calling it."""
        if mime_type not in self.supported_formats():
            raise UnsupportedMediaError(
                f"{self.name} does not support {mime_type}",
                provider=self.name,
                mime_type=mime_type,
            )
        if size_bytes > self.max_file_size():
            raise UnsupportedMediaError(
                f"Audio of {size_bytes} bytes exceeds the {self.name} limit",
                provider=self.name,
                size_bytes=size_bytes,
                max_file_size=self.max_file_size(),
            )

    async def close(self) -> None:  # noqa: B027
        """Release network resources."""


class LLMProvider(ABC):
    """Abstract summarization backend."""

    name: str = "base"

    @abstractmethod
    async def summarize(
        self, text: str, options: SummarizationOptions | None = None
    ) -> SummarizationResult:
        """
        Summarize a transcript into a TL;DR, bullets and action items.

        Raises:
            LLMFailure: The backend failed or returned unusable output.
        """

    @abstractmethod
    def supported_models(self) -> list[str]:
        pass

    @abstractmethod
    def max_tokens(self) -> int:
        pass

    async def close(self) -> None:  # noqa: B027
        """Release network resources."""


# =============================================================================
# HTTP plumbing
# =============================================================================


class HTTPProviderMixin:
    """Lazily created ``aiohttp`` session shared by the HTTP backends."""

    name: str
    failure_class: type[ProviderError] = ProviderError

    def __init__(self, base_url: str, api_key: str, timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    def _headers(self) -> dict[str, str]:
        return {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=self._headers(),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("provider_session_closed", provider=self.name)

    def _failure(self, message: str, **context: Any) -> ProviderError:
        return self.failure_class(f"{self.name}: {message}", provider=self.name, **context)

    def _malformed(self, exc: Exception) -> ProviderError:
        return self._failure(f"malformed response: {exc!r}")

    async def _check_response(self, response: aiohttp.ClientResponse, action: str) -> None:
        if response.status < 400:
            return
        body = await response.text()
        error = self._failure(
            f"{action} failed: HTTP {response.status} - {body[:200]}",
            http_status=response.status,
        )
        error.retryable = response.status >= 500 or response.status in RETRYABLE_STATUSES
        raise error
