"""
Persistence Contracts

The pipeline reads and writes notes, media, transcripts, summaries, actions
and audit events through ``NoteRepository`` and fetches audio bytes through
``BlobStore``. Production deployments plug in their own relational store;
this module ships in-memory implementations for tests and local runs and a
filesystem blob store for the development worker.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import replace
from pathlib import Path
from typing import Protocol, runtime_checkable

from voicenote_pipeline.errors import StorageError
from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.models import (
    Action,
    AuditEvent,
    Media,
    Note,
    NoteStatus,
    Summary,
    Transcript,
    utcnow,
)

logger = get_logger()


@runtime_checkable
class NoteRepository(Protocol):
    """Storage operations the pipeline depends on."""

    async def get_note(self, note_id: str) -> Note | None: ...

    async def compare_and_set_status(
        self,
        note_id: str,
        expected_version: int,
        status: NoteStatus,
        generation: int,
    ) -> Note | None:
        """Write ``status`` only if the note is still at ``expected_version``.

        Returns the updated note, or None when another writer got there first.
        """
        ...

    async def get_media(self, media_id: str) -> Media | None: ...

    async def get_transcript(self, transcript_id: str) -> Transcript | None: ...

    async def save_transcript(self, transcript: Transcript) -> Transcript:
        """Persist a transcript; a second save for the same job returns the first."""
        ...

    async def save_summary_and_actions(
        self, summary: Summary, actions: list[Action]
    ) -> Summary:
        """Persist a summary with its actions; idempotent per job id."""
        ...

    async def record_audit_event(self, event: AuditEvent) -> None: ...


@runtime_checkable
class BlobStore(Protocol):
    async def fetch(self, storage_key: str) -> bytes: ...

    async def put(self, storage_key: str, data: bytes) -> None: ...


class InMemoryRepository:
    """Dict-backed ``NoteRepository`` used by tests and the dev worker."""

    def __init__(self) -> None:
        self.notes: dict[str, Note] = {}
        self.media: dict[str, Media] = {}
        self.transcripts: dict[str, Transcript] = {}
        self.summaries: dict[str, Summary] = {}
        self.actions: dict[str, list[Action]] = defaultdict(list)
        self.audit_events: list[AuditEvent] = []
        self._transcripts_by_job: dict[str, str] = {}
        self._summaries_by_job: dict[str, str] = {}

    # -- seeding helpers --------------------------------------------------

    async def add_note(self, note: Note) -> Note:
        self.notes[note.id] = note
        return note

    async def add_media(self, media: Media) -> Media:
        self.media[media.id] = media
        return media

    # -- NoteRepository -------------------------------------------------

    async def get_note(self, note_id: str) -> Note | None:
        note = self.notes.get(note_id)
        return replace(note, tags=set(note.tags)) if note else None

    async def compare_and_set_status(
        self,
        note_id: str,
        expected_version: int,
        status: NoteStatus,
        generation: int,
    ) -> Note | None:
        note = self.notes.get(note_id)
        if note is None or note.version != expected_version:
            return None
        note.status = status
        note.generation = generation
        note.version += 1
        note.updated_at = utcnow()
        return replace(note, tags=set(note.tags))

    async def get_media(self, media_id: str) -> Media | None:
        return self.media.get(media_id)

    async def get_transcript(self, transcript_id: str) -> Transcript | None:
        return self.transcripts.get(transcript_id)

    async def current_transcript(self, note_id: str) -> Transcript | None:
        candidates = [t for t in self.transcripts.values() if t.note_id == note_id]
        return max(candidates, key=lambda t: t.created_at, default=None)

    async def save_transcript(self, transcript: Transcript) -> Transcript:
        if transcript.job_id and transcript.job_id in self._transcripts_by_job:
            existing = self.transcripts[self._transcripts_by_job[transcript.job_id]]
            logger.info(
                "transcript_already_saved",
                job_id=transcript.job_id,
                transcript_id=existing.id,
            )
            return existing
        self.transcripts[transcript.id] = transcript
        if transcript.job_id:
            self._transcripts_by_job[transcript.job_id] = transcript.id
        return transcript

    async def save_summary_and_actions(
        self, summary: Summary, actions: list[Action]
    ) -> Summary:
        if summary.job_id and summary.job_id in self._summaries_by_job:
            existing = self.summaries[self._summaries_by_job[summary.job_id]]
            logger.info("summary_already_saved", job_id=summary.job_id, summary_id=existing.id)
            return existing
        self.summaries[summary.id] = summary
        # A fresh summary replaces the note's action list.
        self.actions[summary.note_id] = list(actions)
        if summary.job_id:
            self._summaries_by_job[summary.job_id] = summary.id
        return summary

    async def current_summary(self, note_id: str) -> Summary | None:
        candidates = [s for s in self.summaries.values() if s.note_id == note_id]
        return max(candidates, key=lambda s: s.created_at, default=None)

    async def list_actions(self, note_id: str) -> list[Action]:
        return list(self.actions.get(note_id, []))

    async def record_audit_event(self, event: AuditEvent) -> None:
        self.audit_events.append(event)

    def events_for(self, note_id: str, event_type: str | None = None) -> list[AuditEvent]:
        return [
            e
            for e in self.audit_events
            if e.note_id == note_id and (event_type is None or e.type == event_type)
        ]


class InMemoryBlobStore:
    def __init__(self, blobs: dict[str, bytes] | None = None) -> None:
        self._blobs: dict[str, bytes] = dict(blobs or {})

    async def fetch(self, storage_key: str) -> bytes:
        try:
            return self._blobs[storage_key]
        except KeyError:
            raise StorageError(f"Blob {storage_key} not found", storage_key=storage_key) from None

    async def put(self, storage_key: str, data: bytes) -> None:
        self._blobs[storage_key] = data


class FileSystemBlobStore:
    """Blob store rooted at a local directory; storage keys are relative paths."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _path(self, storage_key: str) -> Path:
        path = (self.root / storage_key).resolve()
        if not path.is_relative_to(self.root):
            raise StorageError(
                f"Storage key {storage_key} escapes blob root", storage_key=storage_key
            )
        return path

    async def fetch(self, storage_key: str) -> bytes:
        path = self._path(storage_key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageError(
                f"Failed to read blob {storage_key}: {exc}", storage_key=storage_key
            ) from exc

    async def put(self, storage_key: str, data: bytes) -> None:
        path = self._path(storage_key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(
                f"Failed to write blob {storage_key}: {exc}", storage_key=storage_key
            ) from exc
