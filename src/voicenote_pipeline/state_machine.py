"""
Note Lifecycle State Machine

Single writer of ``Note.status``. Every status change goes through
``NoteStateMachine.transition`` which validates the trigger against the
current status, treats late or duplicate triggers as no-ops, and commits the
new status with a compare-and-set on the note version.

Forward path::

    idle -> uploading -> uploaded -> transcribing -> transcribing_done
         -> summarizing -> ready

``error`` is reachable from any non-terminal status and left again only via
the explicit ``retry_transcribe`` / ``retry_summarize`` triggers, which open
a new processing generation.
"""

from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass
from enum import Enum

from voicenote_pipeline.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NoteNotFoundError,
)
from voicenote_pipeline.logging import get_logger
from voicenote_pipeline.models import STATUS_ORDER, Note, NoteStatus
from voicenote_pipeline.repository import NoteRepository

logger = get_logger()


class Trigger(str, Enum):
    UPLOAD_STARTED = "upload_started"
    UPLOAD_COMPLETED = "upload_completed"
    TRANSCRIBE_STARTED = "transcribe_started"
    TRANSCRIBE_SUCCEEDED = "transcribe_succeeded"
    SUMMARIZE_STARTED = "summarize_started"
    SUMMARIZE_SUCCEEDED = "summarize_succeeded"
    FAILED = "failed"
    RETRY_TRANSCRIBE = "retry_transcribe"
    RETRY_SUMMARIZE = "retry_summarize"


# trigger -> (allowed source statuses, target status)
FORWARD_TRANSITIONS: dict[Trigger, tuple[NoteStatus, NoteStatus]] = {
    Trigger.UPLOAD_STARTED: (NoteStatus.IDLE, NoteStatus.UPLOADING),
    Trigger.UPLOAD_COMPLETED: (NoteStatus.UPLOADING, NoteStatus.UPLOADED),
    Trigger.TRANSCRIBE_STARTED: (NoteStatus.UPLOADED, NoteStatus.TRANSCRIBING),
    Trigger.TRANSCRIBE_SUCCEEDED: (NoteStatus.TRANSCRIBING, NoteStatus.TRANSCRIBING_DONE),
    Trigger.SUMMARIZE_STARTED: (NoteStatus.TRANSCRIBING_DONE, NoteStatus.SUMMARIZING),
    Trigger.SUMMARIZE_SUCCEEDED: (NoteStatus.SUMMARIZING, NoteStatus.READY),
}

RETRY_TRANSITIONS: dict[Trigger, NoteStatus] = {
    Trigger.RETRY_TRANSCRIBE: NoteStatus.TRANSCRIBING,
    Trigger.RETRY_SUMMARIZE: NoteStatus.SUMMARIZING,
}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one ``transition`` call.

    ``applied`` is False for stale triggers; ``superseded`` marks the subset
    that carried an older processing generation than the note.
    """

    note_id: str
    previous: NoteStatus
    status: NoteStatus
    generation: int
    applied: bool
    stale: bool = False
    superseded: bool = False


class NoteStateMachine:
    """Validates and commits note status changes."""

    def __init__(self, repository: NoteRepository, max_cas_attempts: int = 5):
        self.repository = repository
        self.max_cas_attempts = max_cas_attempts
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, note_id: str) -> asyncio.Lock:
        lock = self._locks.get(note_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[note_id] = lock
        return lock

    async def transition(
        self,
        note_id: str,
        trigger: Trigger | str,
        *,
        generation: int | None = None,
    ) -> TransitionResult:
        """Apply ``trigger`` to the note.

        Args:
            note_id: Note to move.
            trigger: Lifecycle trigger.
            generation: Processing generation the caller acts for. Triggers
                from an older generation are ignored.

        Raises:
            NoteNotFoundError: The note does not exist.
            InvalidTransitionError: The trigger is not permitted and is not a
                late duplicate.
            ConcurrentModificationError: The version check kept failing.
        """
        trigger = Trigger(trigger)
        lock = self._lock_for(note_id)
        async with lock:
            for _ in range(self.max_cas_attempts):
                note = await self.repository.get_note(note_id)
                if note is None:
                    raise NoteNotFoundError(note_id)

                stale = self._stale_result(note, trigger, generation)
                if stale is not None:
                    logger.debug(
                        "transition_ignored",
                        note_id=note_id,
                        trigger=trigger.value,
                        status=note.status.value,
                        superseded=stale.superseded,
                    )
                    return stale

                target, new_generation = self._resolve(note, trigger)
                updated = await self.repository.compare_and_set_status(
                    note_id, note.version, target, new_generation
                )
                if updated is None:
                    logger.debug("transition_conflict", note_id=note_id, trigger=trigger.value)
                    continue

                logger.info(
                    "note_transitioned",
                    note_id=note_id,
                    trigger=trigger.value,
                    previous=note.status.value,
                    status=target.value,
                    generation=new_generation,
                )
                return TransitionResult(
                    note_id=note_id,
                    previous=note.status,
                    status=target,
                    generation=new_generation,
                    applied=True,
                )

        raise ConcurrentModificationError(
            f"Note {note_id} kept changing while applying '{trigger.value}'",
            note_id=note_id,
            trigger=trigger.value,
        )

    @staticmethod
    def _stale_result(
        note: Note, trigger: Trigger, generation: int | None
    ) -> TransitionResult | None:
        def ignored(superseded: bool = False) -> TransitionResult:
            return TransitionResult(
                note_id=note.id,
                previous=note.status,
                status=note.status,
                generation=note.generation,
                applied=False,
                stale=True,
                superseded=superseded,
            )

        if generation is not None and generation < note.generation:
            return ignored(superseded=True)

        if trigger is Trigger.FAILED:
            return ignored() if note.status.is_terminal else None

        if trigger in FORWARD_TRANSITIONS and note.status in STATUS_ORDER:
            _, target = FORWARD_TRANSITIONS[trigger]
            if STATUS_ORDER.index(note.status) >= STATUS_ORDER.index(target):
                return ignored()
        return None

    @staticmethod
    def _resolve(note: Note, trigger: Trigger) -> tuple[NoteStatus, int]:
        if trigger is Trigger.FAILED:
            return NoteStatus.ERROR, note.generation

        if trigger in RETRY_TRANSITIONS:
            if note.status is not NoteStatus.ERROR:
                raise InvalidTransitionError(note.id, note.status.value, trigger.value)
            return RETRY_TRANSITIONS[trigger], note.generation + 1

        source, target = FORWARD_TRANSITIONS[trigger]
        if note.status is not source:
            raise InvalidTransitionError(note.id, note.status.value, trigger.value)
        return target, note.generation
