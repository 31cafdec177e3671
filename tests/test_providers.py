"""Tests for STT/LLM providers, the HTTP backends and the provider factory."""

import json
from datetime import date

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from conftest import make_settings

from voicenote_pipeline.errors import (
    LLMFailure,
    ProviderConfigError,
    STTFailure,
    UnsupportedMediaError,
)
from voicenote_pipeline.providers import (
    AnthropicLLMProvider,
    AssemblyAISTTProvider,
    MockLLMProvider,
    MockSTTProvider,
    OpenAILLMProvider,
    OpenAISTTProvider,
    TranscriptionOptions,
    create_llm_provider,
    create_stt_provider,
)
from voicenote_pipeline.providers.base import ActionItem, stagger_due_dates
from voicenote_pipeline.providers.openai_provider import parse_summary_json

SUMMARY_JSON = {
    "tlDr": "Planificación del sprint",
    "bullets": ["Revisar backlog", "Asignar tareas"],
    "actions": [
        {"text": "Preparar demo", "priority": "HIGH"},
        {"text": "", "priority": "low"},
        {"text": "Enviar acta", "priority": "urgent"},
    ],
}


@pytest.fixture
async def serve():
    """Start an aiohttp app from route definitions and return its base URL."""
    servers = []

    async def _serve(routes: web.RouteTableDef) -> str:
        app = web.Application()
        app.add_routes(routes)
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return str(server.make_url("")).rstrip("/")

    yield _serve
    for server in servers:
        await server.close()


class TestMockProviders:
    async def test_mock_transcription(self):
        stt = MockSTTProvider(seed=1)
        result = await stt.transcribe(b"audio", TranscriptionOptions(language="en"))

        assert result.text
        assert result.language == "en"
        assert 0.85 <= result.confidence <= 0.95
        assert len(result.segments) == 2
        assert result.metadata["file_size"] == 5

    async def test_mock_summary(self):
        result = await MockLLMProvider(seed=1).summarize("texto")

        assert result.tl_dr
        assert len(result.bullets) == 3
        assert len(result.actions) == 3
        assert all(action.due_suggested > date.today() for action in result.actions)

    def test_check_media_rejects_format(self):
        with pytest.raises(UnsupportedMediaError) as exc_info:
            MockSTTProvider().check_media("video/mp4", 10)
        assert exc_info.value.context["mime_type"] == "video/mp4"

    def test_check_media_rejects_size(self):
        stt = MockSTTProvider()
        with pytest.raises(UnsupportedMediaError):
            stt.check_media("audio/mpeg", stt.max_file_size() + 1)


class TestSummaryParsing:
    def test_actions_are_normalized(self):
        result = parse_summary_json(json.dumps(SUMMARY_JSON), "openai", "gpt-4o-mini", {})

        assert result.tl_dr == "Planificación del sprint"
        assert [a.text for a in result.actions] == ["Preparar demo", "Enviar acta"]
        assert [a.priority for a in result.actions] == ["high", "medium"]

    def test_invalid_json_is_retryable(self):
        with pytest.raises(LLMFailure) as exc_info:
            parse_summary_json("not json", "openai", "gpt-4o-mini", {})
        assert exc_info.value.retryable

    def test_stagger_due_dates(self):
        items = stagger_due_dates([{"text": "a"}, {"text": "b"}], step_days=2)
        assert (items[1].due_suggested - items[0].due_suggested).days == 2

    def test_unknown_priority_defaults_to_medium(self):
        assert ActionItem(text="x", priority=None).priority == "medium"

    def test_wrongly_typed_fields_are_provider_failures(self):
        content = json.dumps({"tlDr": ["not", "a", "string"], "bullets": []})
        with pytest.raises(LLMFailure) as exc_info:
            parse_summary_json(content, "openai", "gpt-4o-mini", {})
        assert exc_info.value.error_code == "LLM_FAILURE"
        assert "malformed summary" in exc_info.value.message

    def test_non_list_actions_are_provider_failures(self):
        content = json.dumps({"tlDr": "ok", "actions": 7})
        with pytest.raises(LLMFailure):
            parse_summary_json(content, "openai", "gpt-4o-mini", {})


class TestOpenAI:
    async def test_transcription(self, serve):
        routes = web.RouteTableDef()
        seen = {}

        @routes.post("/audio/transcriptions")
        async def transcriptions(request):
            seen["auth"] = request.headers.get("Authorization")
            form = await request.post()
            seen["model"] = form["model"]
            seen["language"] = form["language"]
            return web.json_response(
                {
                    "text": "Hola equipo",
                    "language": "es",
                    "duration": 2.5,
                    "segments": [{"start": 0.0, "end": 2.5, "text": "Hola equipo"}],
                }
            )

        stt = OpenAISTTProvider(api_key="sk-test", base_url=await serve(routes))
        try:
            result = await stt.transcribe(b"audio", TranscriptionOptions(language="es"))
        finally:
            await stt.close()

        assert result.text == "Hola equipo"
        assert result.confidence == 0.9
        assert result.segments[0].end == 2.5
        assert seen == {"auth": "Bearer sk-test", "model": "whisper-1", "language": "es"}

    @pytest.mark.parametrize("status,retryable", [(503, True), (429, True), (400, False)])
    async def test_http_errors(self, serve, status, retryable):
        routes = web.RouteTableDef()

        @routes.post("/audio/transcriptions")
        async def transcriptions(request):
            return web.Response(status=status, text="nope")

        stt = OpenAISTTProvider(api_key="sk-test", base_url=await serve(routes))
        try:
            with pytest.raises(STTFailure) as exc_info:
                await stt.transcribe(b"audio")
        finally:
            await stt.close()

        assert exc_info.value.retryable is retryable
        assert exc_info.value.context["http_status"] == status

    async def test_summary(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/chat/completions")
        async def completions(request):
            body = await request.json()
            assert body["response_format"] == {"type": "json_object"}
            return web.json_response(
                {
                    "choices": [{"message": {"content": json.dumps(SUMMARY_JSON)}}],
                    "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
                }
            )

        llm = OpenAILLMProvider(api_key="sk-test", base_url=await serve(routes))
        try:
            result = await llm.summarize("transcripción")
        finally:
            await llm.close()

        assert result.bullets == ["Revisar backlog", "Asignar tareas"]
        assert result.metadata["total_tokens"] == 15

    async def test_empty_completion(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/chat/completions")
        async def completions(request):
            return web.json_response({"choices": []})

        llm = OpenAILLMProvider(api_key="sk-test", base_url=await serve(routes))
        try:
            with pytest.raises(LLMFailure):
                await llm.summarize("transcripción")
        finally:
            await llm.close()

    async def test_segment_without_start_is_provider_failure(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/audio/transcriptions")
        async def transcriptions(request):
            return web.json_response({"text": "Hola", "segments": [{"end": 1.0, "text": "Hola"}]})

        stt = OpenAISTTProvider(api_key="sk-test", base_url=await serve(routes))
        try:
            with pytest.raises(STTFailure) as exc_info:
                await stt.transcribe(b"audio")
        finally:
            await stt.close()

        assert exc_info.value.error_code == "STT_FAILURE"
        assert "malformed response" in exc_info.value.message
        assert exc_info.value.retryable

    async def test_non_object_body_is_provider_failure(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/chat/completions")
        async def completions(request):
            return web.json_response(["unexpected"])

        llm = OpenAILLMProvider(api_key="sk-test", base_url=await serve(routes))
        try:
            with pytest.raises(LLMFailure) as exc_info:
                await llm.summarize("transcripción")
        finally:
            await llm.close()

        assert exc_info.value.error_code == "LLM_FAILURE"


class TestAssemblyAI:
    async def test_upload_request_and_poll(self, serve):
        routes = web.RouteTableDef()
        polls = []

        @routes.post("/upload")
        async def upload(request):
            assert request.headers["Authorization"] == "aai-key"
            return web.json_response({"upload_url": "https://cdn.example/audio"})

        @routes.post("/transcript")
        async def transcript(request):
            body = await request.json()
            assert body["audio_url"] == "https://cdn.example/audio"
            return web.json_response({"id": "tr-1"})

        @routes.get("/transcript/{transcript_id}")
        async def status(request):
            polls.append(request.match_info["transcript_id"])
            if len(polls) < 2:
                return web.json_response({"status": "processing"})
            return web.json_response(
                {
                    "status": "completed",
                    "text": "Hola",
                    "confidence": 0.95,
                    "words": [{"start": 0, "end": 500, "text": "Hola", "confidence": 0.95}],
                }
            )

        stt = AssemblyAISTTProvider(api_key="aai-key", base_url=await serve(routes), poll_interval=0.01)
        try:
            result = await stt.transcribe(b"audio")
        finally:
            await stt.close()

        assert result.text == "Hola"
        assert result.segments[0].end == 0.5
        assert polls == ["tr-1", "tr-1"]

    async def test_transcription_error_is_permanent(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/upload")
        async def upload(request):
            return web.json_response({"upload_url": "u"})

        @routes.post("/transcript")
        async def transcript(request):
            return web.json_response({"id": "tr-1"})

        @routes.get("/transcript/{transcript_id}")
        async def status(request):
            return web.json_response({"status": "error", "error": "bad audio"})

        stt = AssemblyAISTTProvider(api_key="k", base_url=await serve(routes), poll_interval=0.01)
        try:
            with pytest.raises(STTFailure) as exc_info:
                await stt.transcribe(b"audio")
        finally:
            await stt.close()

        assert not exc_info.value.retryable

    async def test_zero_confidence_is_kept(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/upload")
        async def upload(request):
            return web.json_response({"upload_url": "u"})

        @routes.post("/transcript")
        async def transcript(request):
            return web.json_response({"id": "tr-3"})

        @routes.get("/transcript/{transcript_id}")
        async def status(request):
            return web.json_response({"status": "completed", "text": "...", "confidence": 0.0})

        stt = AssemblyAISTTProvider(api_key="k", base_url=await serve(routes), poll_interval=0.01)
        try:
            result = await stt.transcribe(b"audio")
        finally:
            await stt.close()

        assert result.confidence == 0.0

    async def test_upload_without_url_is_provider_failure(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/upload")
        async def upload(request):
            return web.json_response({"error": "quota"})

        stt = AssemblyAISTTProvider(api_key="k", base_url=await serve(routes), poll_interval=0.01)
        try:
            with pytest.raises(STTFailure) as exc_info:
                await stt.transcribe(b"audio")
        finally:
            await stt.close()

        assert "malformed response" in exc_info.value.message


class TestAnthropic:
    async def test_json_is_extracted_from_prose(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/messages")
        async def messages(request):
            assert request.headers["x-api-key"] == "ak"
            text = f"Aquí tienes el resumen:\n{json.dumps(SUMMARY_JSON)}\nSaludos."
            return web.json_response(
                {
                    "content": [{"type": "text", "text": text}],
                    "usage": {"input_tokens": 20, "output_tokens": 8},
                }
            )

        llm = AnthropicLLMProvider(api_key="ak", base_url=await serve(routes))
        try:
            result = await llm.summarize("transcripción")
        finally:
            await llm.close()

        assert result.tl_dr == "Planificación del sprint"
        assert result.metadata["input_tokens"] == 20

    async def test_missing_json(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/messages")
        async def messages(request):
            return web.json_response({"content": [{"type": "text", "text": "sin json"}]})

        llm = AnthropicLLMProvider(api_key="ak", base_url=await serve(routes))
        try:
            with pytest.raises(LLMFailure):
                await llm.summarize("transcripción")
        finally:
            await llm.close()

    async def test_non_text_block_is_provider_failure(self, serve):
        routes = web.RouteTableDef()

        @routes.post("/messages")
        async def messages(request):
            return web.json_response({"content": ["plain string block"]})

        llm = AnthropicLLMProvider(api_key="ak", base_url=await serve(routes))
        try:
            with pytest.raises(LLMFailure) as exc_info:
                await llm.summarize("transcripción")
        finally:
            await llm.close()

        assert "malformed response" in exc_info.value.message


class TestFactory:
    def test_mock_defaults(self):
        settings = make_settings()
        assert isinstance(create_stt_provider(settings), MockSTTProvider)
        assert isinstance(create_llm_provider(settings), MockLLMProvider)

    def test_configured_backends(self):
        settings = make_settings(
            stt_provider="AssemblyAI",
            llm_provider="anthropic",
            assemblyai_api_key="aai",
            anthropic_api_key="ak",
        )
        assert isinstance(create_stt_provider(settings), AssemblyAISTTProvider)
        assert isinstance(create_llm_provider(settings), AnthropicLLMProvider)

    def test_missing_key(self):
        settings = make_settings(stt_provider="openai", openai_api_key=None)
        with pytest.raises(ProviderConfigError) as exc_info:
            create_stt_provider(settings)
        assert exc_info.value.config_key == "OPENAI_API_KEY"
        assert not exc_info.value.retryable

    def test_unknown_provider(self):
        with pytest.raises(ProviderConfigError):
            create_llm_provider(make_settings(llm_provider="gemini"))
