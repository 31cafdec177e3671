"""Build providers from settings.

Selection is pure: the same settings always produce the same backend.
Unknown names and missing credentials fail at construction time.
"""

from voicenote_pipeline.config import PipelineSettings
from voicenote_pipeline.errors import ProviderConfigError
from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.providers.anthropic_provider import AnthropicLLMProvider
from voicenote_pipeline.providers.assemblyai_provider import AssemblyAISTTProvider
from voicenote_pipeline.providers.base import LLMProvider, STTProvider
from voicenote_pipeline.providers.mock import MockLLMProvider, MockSTTProvider
from voicenote_pipeline.providers.openai_provider import OpenAILLMProvider, OpenAISTTProvider

logger = get_logger()

STT_PROVIDERS = ("mock", "openai", "assemblyai")
LLM_PROVIDERS = ("mock", "openai", "anthropic")


def _require(value: str | None, provider: str, config_key: str) -> str:
    if not value:
        raise ProviderConfigError(
            f"{provider} API key not configured", provider=provider, config_key=config_key
        )
    return value


def create_stt_provider(settings: PipelineSettings) -> STTProvider:
    name = settings.stt_provider
    if name == "mock":
        provider: STTProvider = MockSTTProvider(
            latency=settings.mock_latency, default_language=settings.default_language
        )
    elif name == "openai":
        provider = OpenAISTTProvider(
            api_key=_require(settings.openai_api_key, name, "OPENAI_API_KEY"),
            base_url=settings.openai_base_url,
            model=settings.openai_stt_model,
            timeout=settings.provider_timeout,
        )
    elif name == "assemblyai":
        provider = AssemblyAISTTProvider(
            api_key=_require(settings.assemblyai_api_key, name, "ASSEMBLYAI_API_KEY"),
            base_url=settings.assemblyai_base_url,
            timeout=settings.provider_timeout,
            poll_interval=settings.assemblyai_poll_interval,
            default_language=settings.default_language,
        )
    else:
        raise ProviderConfigError(
            f"Unknown STT provider '{name}' (expected one of {', '.join(STT_PROVIDERS)})",
            provider=name,
            config_key="PIPELINE_STT_PROVIDER",
        )
    logger.info("stt_provider_created", provider=name)
    return provider


def create_llm_provider(settings: PipelineSettings) -> LLMProvider:
    name = settings.llm_provider
    if name == "mock":
        provider: LLMProvider = MockLLMProvider(latency=settings.mock_latency)
    elif name == "openai":
        provider = OpenAILLMProvider(
            api_key=_require(settings.openai_api_key, name, "OPENAI_API_KEY"),
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            timeout=settings.provider_timeout,
        )
    elif name == "anthropic":
        provider = AnthropicLLMProvider(
            api_key=_require(settings.anthropic_api_key, name, "ANTHROPIC_API_KEY"),
            base_url=settings.anthropic_base_url,
            model=settings.anthropic_model,
            timeout=settings.provider_timeout,
        )
    else:
        raise ProviderConfigError(
            f"Unknown LLM provider '{name}' (expected one of {', '.join(LLM_PROVIDERS)})",
            provider=name,
            config_key="PIPELINE_LLM_PROVIDER",
        )
    logger.info("llm_provider_created", provider=name)
    return provider
