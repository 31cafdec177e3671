"""AssemblyAI transcription: upload the audio, create a transcript, poll until done."""

import asyncio

import aiohttp

from voicenote_pipeline.errors import STTFailure
from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.providers.base import (
    MALFORMED_RESPONSE_ERRORS,
    MB,
    HTTPProviderMixin,
    STTProvider,
    TranscriptionOptions,
    TranscriptionResult,
    TranscriptionSegment,
)

logger = get_logger()

ASSEMBLYAI_BASE_URL = "https://api.assemblyai.com/v2"

# Used only when the transcript carries no confidence at all.
DEFAULT_CONFIDENCE = 0.8


class AssemblyAISTTProvider(HTTPProviderMixin, STTProvider):
    name = "assemblyai"
    failure_class = STTFailure

    def __init__(
        self,
        api_key: str,
        base_url: str = ASSEMBLYAI_BASE_URL,
        timeout: float = 120.0,
        poll_interval: float = 5.0,
        max_polls: int = 60,
        default_language: str = "es",
    ):
        super().__init__(base_url=base_url, api_key=api_key, timeout=timeout)
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.default_language = default_language

    def _headers(self) -> dict[str, str]:
        return {"Authorization": self.api_key}

    async def transcribe(
        self, audio: bytes, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult:
        options = options or TranscriptionOptions()
        language = options.language or self.default_language
        session = await self._get_session()

        try:
            async with session.post(
                f"{self.base_url}/upload",
                data=audio,
                headers={"Content-Type": "application/octet-stream"},
            ) as response:
                await self._check_response(response, "upload")
                audio_url = (await response.json())["upload_url"]

            async with session.post(
                f"{self.base_url}/transcript",
                json={
                    "audio_url": audio_url,
                    "language_code": language,
                    "punctuate": True,
                    "format_text": True,
                },
            ) as response:
                await self._check_response(response, "transcript request")
                transcript_id = (await response.json())["id"]

            result = await self._poll(session, transcript_id)
            segments = [
                TranscriptionSegment(
                    start=word["start"] / 1000,
                    end=word["end"] / 1000,
                    text=word["text"],
                    confidence=word.get("confidence"),
                )
                for word in result.get("words") or []
            ]
            confidence = result.get("confidence")
            return TranscriptionResult(
                text=result.get("text") or "",
                language=language,
                confidence=DEFAULT_CONFIDENCE if confidence is None else confidence,
                segments=segments,
                metadata={
                    "provider": self.name,
                    "transcript_id": transcript_id,
                    "audio_url": audio_url,
                },
            )
        except aiohttp.ClientError as exc:
            raise self._failure(f"request error: {exc}") from exc
        except MALFORMED_RESPONSE_ERRORS as exc:
            raise self._malformed(exc) from exc

    async def _poll(self, session: aiohttp.ClientSession, transcript_id: str) -> dict:
        for attempt in range(self.max_polls):
            async with session.get(f"{self.base_url}/transcript/{transcript_id}") as response:
                await self._check_response(response, "status check")
                result = await response.json()

            status = result.get("status")
            if status == "completed":
                return result
            if status == "error":
                error = self._failure(f"transcription error: {result.get('error')}")
                error.retryable = False
                raise error

            logger.debug(
                "assemblyai_transcript_pending",
                transcript_id=transcript_id,
                status=status,
                attempt=attempt + 1,
            )
            await asyncio.sleep(self.poll_interval)

        raise self._failure("transcription timed out", transcript_id=transcript_id)

    def supported_formats(self) -> list[str]:
        return [
            "audio/aac",
            "audio/flac",
            "audio/mp3",
            "audio/mpeg",
            "audio/mp4",
            "audio/ogg",
            "audio/wav",
            "audio/webm",
        ]

    def max_file_size(self) -> int:
        return 5 * 1024 * MB
