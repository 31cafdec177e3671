"""
OpenAI Providers

Whisper transcription via ``/audio/transcriptions`` and transcript
summarization via ``/chat/completions`` with JSON-object output.

Usage:
    stt = OpenAISTTProvider(api_key=settings.openai_api_key)
    result = await stt.transcribe(audio, TranscriptionOptions(language="es"))
    await stt.close()
"""

import json
from typing import Any

import aiohttp

from voicenote_pipeline.errors import LLMFailure, STTFailure
from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.providers.base import (
    MALFORMED_RESPONSE_ERRORS,
    MB,
    HTTPProviderMixin,
    LLMProvider,
    STTProvider,
    SummarizationOptions,
    SummarizationResult,
    TranscriptionOptions,
    TranscriptionResult,
    TranscriptionSegment,
    stagger_due_dates,
)

logger = get_logger()

OPENAI_BASE_URL = "https://api.openai.com/v1"

# Whisper does not report a confidence score.
WHISPER_CONFIDENCE = 0.9

SUMMARY_SYSTEM_PROMPT = """Eres un asistente experto en resumir y organizar información. \
Tu tarea es analizar transcripciones de audio y generar:

1. Un resumen corto (TL;DR) de máximo 100 palabras
2. Una lista de puntos clave (bullets) - máximo 5 puntos
3. Una lista de acciones identificadas con prioridad sugerida

Responde ÚNICAMENTE con un JSON válido en este formato:
{{
  "tlDr": "resumen corto aquí",
  "bullets": ["punto 1", "punto 2", "punto 3"],
  "actions": [
    {{
      "text": "acción a realizar",
      "priority": "high|medium|low",
      "category": "desarrollo|reunión|documentación|testing|etc"
    }}
  ]
}}

El contenido debe estar en {language}. \
Si no se identifican acciones claras, devuelve un array vacío para actions."""


def parse_summary_json(content: str, provider: str, model: str, usage: dict[str, Any]) -> SummarizationResult:
    """Turn the model's JSON answer into a ``SummarizationResult``."""
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise LLMFailure(
            f"{provider}: invalid JSON response", provider=provider, retryable=True
        ) from exc
    if not isinstance(parsed, dict):
        raise LLMFailure(f"{provider}: expected a JSON object", provider=provider)

    try:
        return SummarizationResult(
            tl_dr=parsed.get("tlDr") or parsed.get("tl_dr") or "",
            bullets=[str(b) for b in parsed.get("bullets") or []],
            actions=stagger_due_dates(
                [a for a in parsed.get("actions") or [] if isinstance(a, dict)]
            ),
            metadata={"provider": provider, "model": model, **usage},
        )
    except MALFORMED_RESPONSE_ERRORS as exc:
        raise LLMFailure(f"{provider}: malformed summary: {exc!r}", provider=provider) from exc


class OpenAISTTProvider(HTTPProviderMixin, STTProvider):
    name = "openai"
    failure_class = STTFailure

    def __init__(
        self,
        api_key: str,
        base_url: str = OPENAI_BASE_URL,
        model: str = "whisper-1",
        timeout: float = 120.0,
        default_language: str | None = None,
    ):
        super().__init__(base_url=base_url, api_key=api_key, timeout=timeout)
        self.model = model
        self.default_language = default_language

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def transcribe(
        self, audio: bytes, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult:
        options = options or TranscriptionOptions()
        model = options.model or self.model
        language = options.language or self.default_language

        form = aiohttp.FormData()
        form.add_field("file", audio, filename="audio.mp3", content_type="audio/mpeg")
        form.add_field("model", model)
        form.add_field("response_format", "verbose_json")
        if language:
            form.add_field("language", language)
        if options.temperature is not None:
            form.add_field("temperature", str(options.temperature))
        if options.prompt:
            form.add_field("prompt", options.prompt)

        session = await self._get_session()
        try:
            async with session.post(f"{self.base_url}/audio/transcriptions", data=form) as response:
                await self._check_response(response, "transcription")
                data = await response.json()
            segments = [
                TranscriptionSegment(start=s["start"], end=s["end"], text=s["text"])
                for s in data.get("segments") or []
            ]
            return TranscriptionResult(
                text=data.get("text", ""),
                language=data.get("language") or language or "es",
                confidence=WHISPER_CONFIDENCE,
                segments=segments,
                metadata={"provider": self.name, "model": model, "duration": data.get("duration")},
            )
        except aiohttp.ClientError as exc:
            raise self._failure(f"request error: {exc}") from exc
        except MALFORMED_RESPONSE_ERRORS as exc:
            raise self._malformed(exc) from exc

    def supported_formats(self) -> list[str]:
        return ["audio/flac", "audio/mpeg", "audio/mp4", "audio/ogg", "audio/wav", "audio/webm"]

    def max_file_size(self) -> int:
        return 25 * MB


class OpenAILLMProvider(HTTPProviderMixin, LLMProvider):
    name = "openai"
    failure_class = LLMFailure

    def __init__(
        self,
        api_key: str,
        base_url: str = OPENAI_BASE_URL,
        model: str = "gpt-4o-mini",
        timeout: float = 120.0,
    ):
        super().__init__(base_url=base_url, api_key=api_key, timeout=timeout)
        self.model = model

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def summarize(
        self, text: str, options: SummarizationOptions | None = None
    ) -> SummarizationResult:
        options = options or SummarizationOptions()
        model = options.model or self.model
        system_prompt = options.custom_prompt or SUMMARY_SYSTEM_PROMPT.format(
            language=options.language or "español"
        )
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": f"Analiza esta transcripción y genera el resumen estructurado:\n\n{text}",
                },
            ],
            "temperature": options.temperature if options.temperature is not None else 0.3,
            "max_tokens": options.max_tokens or 1000,
            "response_format": {"type": "json_object"},
        }

        session = await self._get_session()
        try:
            async with session.post(f"{self.base_url}/chat/completions", json=payload) as response:
                await self._check_response(response, "chat completion")
                data = await response.json()
            choices = data.get("choices") or []
            content = choices[0].get("message", {}).get("content") if choices else None
            tokens = data.get("usage") or {}
            usage = {
                "input_tokens": tokens.get("prompt_tokens"),
                "output_tokens": tokens.get("completion_tokens"),
                "total_tokens": tokens.get("total_tokens"),
            }
        except aiohttp.ClientError as exc:
            raise self._failure(f"request error: {exc}") from exc
        except MALFORMED_RESPONSE_ERRORS as exc:
            raise self._malformed(exc) from exc
        if not content or not isinstance(content, str):
            raise self._failure("no response content")

        return parse_summary_json(content, provider=self.name, model=model, usage=usage)

    def supported_models(self) -> list[str]:
        return ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"]

    def max_tokens(self) -> int:
        return 128000
