"""Structured logging for the voice-note pipeline."""

from voicenote_pipeline.logging.performance import log_performance
from voicenote_pipeline.logging.setup import bind_job_context, get_logger, setup_logging

__all__ = ["bind_job_context", "get_logger", "log_performance", "setup_logging"]
