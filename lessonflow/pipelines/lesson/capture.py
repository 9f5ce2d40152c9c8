"""Live capture path: chunk ingestion during the call and the close at hang-up.

A chunk is backed up first (best effort) and registered, then transcribed
right away when asked. A failed live transcription leaves the chunk
untranscribed for the retry sweep; a failed backup leaves nothing to retry
but still lets the live transcription land.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from lessonflow.config.settings import settings
from lessonflow.models import Speaker
from lessonflow.pipelines.lesson.aggregator import NO_STUDENT_SPEECH, TranscriptAggregator
from lessonflow.pipelines.lesson.errors import (
    InsufficientDataError,
    InvalidStateError,
    ProviderTimeoutError,
)
from lessonflow.pipelines.lesson.transcription_retry import segments_from_result
from lessonflow.pipelines.lesson.types import (
    BillingSummary,
    ChunkRecord,
    LessonGateway,
    SpeechToText,
    TranscriptRecord,
)
from lessonflow.services.audio_store import AudioStore
from lessonflow.services.language import normalize_language
from lessonflow.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkIngestResult:
    chunk: Optional[ChunkRecord]
    backed_up: bool
    transcribed: bool
    segments_added: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class CloseResult:
    transcript: TranscriptRecord
    billing: Optional[BillingSummary]
    analysable: bool


class LiveCapture:
    def __init__(
        self,
        aggregator: TranscriptAggregator,
        audio_store: AudioStore,
        speech_to_text: SpeechToText,
        lessons: LessonGateway,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._audio_store = audio_store
        self._speech = speech_to_text
        self._lessons = lessons
        self._timeout = timeout_seconds or settings.pipeline.speech_timeout_seconds

    async def ingest_chunk(
        self,
        transcript_id: UUID,
        *,
        chunk_index: int,
        speaker: Speaker,
        data: bytes,
        mime_type: str | None,
        transcribe: bool = True,
        now: datetime | None = None,
    ) -> ChunkIngestResult:
        now = ensure_utc(now) if now else utcnow()
        transcript = await self._aggregator.repository.require(transcript_id)
        if transcript.is_terminal:
            raise InvalidStateError(
                f"Transcript {transcript_id} is {transcript.status.value}; no more audio accepted"
            )

        stored = await self._audio_store.backup(
            transcript.lesson_id, chunk_index, speaker, data, mime_type, now=now
        )
        chunk = None
        if stored is not None:
            chunk = await self._aggregator.register_chunk(
                transcript_id,
                chunk_index=chunk_index,
                speaker=speaker,
                stored=stored,
            )
        if not transcribe:
            return ChunkIngestResult(chunk=chunk, backed_up=stored is not None, transcribed=False)

        try:
            language_code = normalize_language(transcript.language)
            result = await asyncio.wait_for(
                self._speech.transcribe(data, language_code, speaker),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            error = str(ProviderTimeoutError("speech", self._timeout))
            logger.warning("Live transcription timed out transcript=%s chunk=%s", transcript_id, chunk_index)
            return ChunkIngestResult(chunk=chunk, backed_up=stored is not None, transcribed=False, error=error)
        except Exception as exc:  # noqa: BLE001 - the retry sweep picks the chunk up later
            logger.warning(
                "Live transcription failed transcript=%s chunk=%s: %s",
                transcript_id,
                chunk_index,
                exc,
            )
            return ChunkIngestResult(
                chunk=chunk, backed_up=stored is not None, transcribed=False, error=str(exc)
            )

        segments = segments_from_result(
            transcript, result, speaker=speaker, chunk_index=chunk_index
        )
        if chunk is not None:
            committed = await self._aggregator.repository.commit_chunk_transcription(
                chunk, segments, now
            )
            added = len(segments) if committed else 0
        else:
            added = await self._aggregator.append_segments(transcript_id, segments)
        return ChunkIngestResult(
            chunk=chunk,
            backed_up=stored is not None,
            transcribed=True,
            segments_added=added,
        )

    async def close(self, transcript_id: UUID, end_time: datetime | None = None) -> CloseResult:
        """Freeze the transcript (or fail it when the student never spoke) and finalize."""

        end_time = ensure_utc(end_time) if end_time else utcnow()
        try:
            transcript = await self._aggregator.freeze(transcript_id, end_time)
            analysable = True
        except InsufficientDataError:
            transcript = await self._aggregator.mark_failed(transcript_id, NO_STUDENT_SPEECH)
            analysable = False

        billing = None
        if await self._lessons.get(transcript.lesson_id) is not None:
            billing = await self._lessons.finalize(transcript.lesson_id, end_time)
        else:
            logger.warning("Lesson %s not found while closing transcript %s", transcript.lesson_id, transcript_id)
        return CloseResult(transcript=transcript, billing=billing, analysable=analysable)


__all__ = ["ChunkIngestResult", "CloseResult", "LiveCapture"]
