"""Anthropic messages-API summarization."""

import re

import aiohttp

from voicenote_pipeline.errors import LLMFailure
from voicenote_pipeline.providers.base import (
    MALFORMED_RESPONSE_ERRORS,
    HTTPProviderMixin,
    LLMProvider,
    SummarizationOptions,
    SummarizationResult,
)
from voicenote_pipeline.providers.openai_provider import parse_summary_json

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

# Claude sometimes wraps the JSON object in prose.
JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

SUMMARY_PROMPT = """Eres un asistente experto en resumir y organizar información. \
Analiza esta transcripción de audio y genera un resumen estructurado.

Transcripción:
{text}

Genera un resumen en {language} con el siguiente formato JSON:

{{
  "tlDr": "resumen corto de máximo 100 palabras",
  "bullets": ["punto clave 1", "punto clave 2", "punto clave 3"],
  "actions": [
    {{
      "text": "acción específica a realizar",
      "priority": "high|medium|low",
      "category": "desarrollo|reunión|documentación|testing|etc"
    }}
  ]
}}

Reglas:
- TL;DR: máximo 100 palabras, conciso y claro
- Bullets: máximo 5 puntos clave
- Actions: solo acciones específicas y realizables
- Si no hay acciones claras, devuelve array vacío
- Responde SOLO con el JSON válido"""


class AnthropicLLMProvider(HTTPProviderMixin, LLMProvider):
    name = "anthropic"
    failure_class = LLMFailure

    def __init__(
        self,
        api_key: str,
        base_url: str = ANTHROPIC_BASE_URL,
        model: str = "claude-3-haiku-20240307",
        timeout: float = 120.0,
    ):
        super().__init__(base_url=base_url, api_key=api_key, timeout=timeout)
        self.model = model

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    async def summarize(
        self, text: str, options: SummarizationOptions | None = None
    ) -> SummarizationResult:
        options = options or SummarizationOptions()
        model = options.model or self.model
        prompt = options.custom_prompt or SUMMARY_PROMPT.format(
            text=text, language=options.language or "español"
        )
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature if options.temperature is not None else 0.3,
            "max_tokens": options.max_tokens or 1000,
        }

        session = await self._get_session()
        try:
            async with session.post(f"{self.base_url}/messages", json=payload) as response:
                await self._check_response(response, "messages")
                data = await response.json()
            blocks = data.get("content") or []
            content = blocks[0].get("text") if blocks else None
            tokens = data.get("usage") or {}
            usage = {
                "input_tokens": tokens.get("input_tokens"),
                "output_tokens": tokens.get("output_tokens"),
            }
        except aiohttp.ClientError as exc:
            raise self._failure(f"request error: {exc}") from exc
        except MALFORMED_RESPONSE_ERRORS as exc:
            raise self._malformed(exc) from exc
        if not content or not isinstance(content, str):
            raise self._failure("no response content")

        match = JSON_OBJECT_RE.search(content)
        if match is None:
            raise self._failure("no JSON object in response")

        return parse_summary_json(match.group(0), provider=self.name, model=model, usage=usage)

    def supported_models(self) -> list[str]:
        return [
            "claude-3-opus-20240229",
            "claude-3-sonnet-20240229",
            "claude-3-haiku-20240307",
        ]

    def max_tokens(self) -> int:
        return 200000
