"""Asynchronous transcription and summarization pipeline for voice notes."""

__version__ = "0.1.0"
