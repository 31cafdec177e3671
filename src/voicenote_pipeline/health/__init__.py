"""Health check utilities for the pipeline worker."""

from voicenote_pipeline.health.endpoints import create_health_router, queue_check

__all__ = ["create_health_router", "queue_check"]
