"""Pipeline configuration."""

from voicenote_pipeline.config.settings import PipelineSettings, QueueSettings

__all__ = ["PipelineSettings", "QueueSettings"]
