"""Transcript aggregation: the ``recording -> processing -> terminal`` state machine.

Segments may arrive out of order (chunk 3 can be re-transcribed before
chunk 1), so everything derived from them is computed over a timestamp sort
at freeze time, never over append order.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID

from lessonflow.models import Speaker
from lessonflow.pipelines.lesson.types import (
    ChunkRecord,
    NewSegment,
    SegmentRecord,
    TranscriptRecord,
    TranscriptSummary,
)
from lessonflow.services.audio_store import StoredAudio
from lessonflow.services.transcript_repository import TranscriptRepository
from lessonflow.utils.time import ensure_utc

logger = logging.getLogger(__name__)

WORDS_PER_SECOND = 2.5
MIN_SEGMENT_SECONDS = 1.0
NO_STUDENT_SPEECH = "No student speech detected"


def sort_segments(segments: Iterable[SegmentRecord]) -> list[SegmentRecord]:
    return sorted(segments, key=lambda segment: (segment.timestamp, segment.id))


def build_full_text(segments: Iterable[SegmentRecord]) -> str:
    """Space-join segment texts in chronological order."""

    return " ".join(segment.text.strip() for segment in sort_segments(segments) if segment.text.strip())


def estimate_speaking_seconds(text: str) -> float:
    words = len(text.split())
    return max(MIN_SEGMENT_SECONDS, words / WORDS_PER_SECOND)


def summarize(record: TranscriptRecord, end_time: datetime) -> TranscriptSummary:
    """Compute the metadata written when ``record`` is frozen at ``end_time``."""

    ordered = sort_segments(record.segments)
    student = [segment for segment in ordered if segment.speaker == Speaker.STUDENT]
    tutor = [segment for segment in ordered if segment.speaker == Speaker.TUTOR]
    duration = (ensure_utc(end_time) - record.start_time).total_seconds()
    return TranscriptSummary(
        full_text=build_full_text(ordered),
        total_duration_seconds=max(duration, 0.0),
        student_speaking_seconds=sum(estimate_speaking_seconds(s.text) for s in student),
        tutor_speaking_seconds=sum(estimate_speaking_seconds(s.text) for s in tutor),
        word_count=sum(len(s.text.split()) for s in student),
    )


class TranscriptAggregator:
    """State transitions for one lesson's transcript."""

    def __init__(self, repository: TranscriptRepository | None = None) -> None:
        self._repository = repository or TranscriptRepository()

    @property
    def repository(self) -> TranscriptRepository:
        return self._repository

    async def start(
        self,
        *,
        lesson_id: UUID,
        student_id: str,
        tutor_id: str,
        language: str,
        start_time: datetime,
    ) -> TranscriptRecord:
        record = await self._repository.create(
            lesson_id=lesson_id,
            student_id=student_id,
            tutor_id=tutor_id,
            language=language,
            start_time=start_time,
        )
        logger.info("Started transcript %s for lesson %s", record.id, lesson_id)
        return record

    async def register_chunk(
        self,
        transcript_id: UUID,
        *,
        chunk_index: int,
        speaker: Speaker,
        stored: StoredAudio,
        transcribed: bool = False,
    ) -> ChunkRecord:
        return await self._repository.add_chunk(
            transcript_id,
            chunk_index=chunk_index,
            speaker=speaker,
            storage_path=stored.path,
            size_bytes=stored.size_bytes,
            uploaded_at=stored.uploaded_at,
            delete_at=stored.delete_at,
            transcribed=transcribed,
        )

    async def append_segments(self, transcript_id: UUID, segments: Sequence[NewSegment]) -> int:
        """Append segments; raises ``InvalidStateError`` once the transcript is terminal."""

        appended = await self._repository.append_segments(transcript_id, segments)
        logger.debug("Appended %s segments to transcript %s", appended, transcript_id)
        return appended

    async def begin_processing(self, transcript_id: UUID) -> bool:
        return await self._repository.begin_processing(transcript_id)

    async def freeze(self, transcript_id: UUID, end_time: datetime) -> TranscriptRecord:
        """Complete the transcript; idempotent once completed.

        Raises ``InsufficientDataError`` when no student spoke, in which case
        the caller is expected to ``mark_failed`` instead.
        """

        record = await self._repository.complete(transcript_id, end_time, summarize)
        logger.info(
            "Froze transcript %s: %s segments, %s student words",
            transcript_id,
            len(record.segments),
            record.word_count,
        )
        return record

    async def mark_failed(self, transcript_id: UUID, reason: str) -> TranscriptRecord:
        record = await self._repository.mark_failed(transcript_id, reason)
        logger.warning("Transcript %s marked failed: %s", transcript_id, reason)
        return record


__all__ = [
    "NO_STUDENT_SPEECH",
    "TranscriptAggregator",
    "build_full_text",
    "estimate_speaking_seconds",
    "sort_segments",
    "summarize",
]
