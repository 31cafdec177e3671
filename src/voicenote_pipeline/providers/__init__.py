"""Speech-to-text and language-model providers."""

from voicenote_pipeline.providers.anthropic_provider import AnthropicLLMProvider
from voicenote_pipeline.providers.assemblyai_provider import AssemblyAISTTProvider
from voicenote_pipeline.providers.base import (
    ActionItem,
    LLMProvider,
    STTProvider,
    SummarizationOptions,
    SummarizationResult,
    TranscriptionOptions,
    TranscriptionResult,
    TranscriptionSegment,
)
from voicenote_pipeline.providers.factory import create_llm_provider, create_stt_provider
from voicenote_pipeline.providers.mock import MockLLMProvider, MockSTTProvider
from voicenote_pipeline.providers.openai_provider import OpenAILLMProvider, OpenAISTTProvider

__all__ = [
    "ActionItem",
    "AnthropicLLMProvider",
    "AssemblyAISTTProvider",
    "LLMProvider",
    "MockLLMProvider",
    "MockSTTProvider",
    "OpenAILLMProvider",
    "OpenAISTTProvider",
    "STTProvider",
    "SummarizationOptions",
    "SummarizationResult",
    "TranscriptionOptions",
    "TranscriptionResult",
    "TranscriptionSegment",
    "create_llm_provider",
    "create_stt_provider",
]
