"""Re-transcribe backed-up audio chunks whose live transcription failed.

Selection: ``transcribed = false AND attempts < max AND now < delete_at``,
restricted to transcripts that are still recording or processing. Chunks are
processed one at a time; any failure (lookup, download, language, provider,
timeout) consumes exactly one attempt and the sweep moves on to the next
chunk. Chunks left behind when a transcript closes are stamped ``closed`` and
never sent to the provider.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from lessonflow.config.settings import settings
from lessonflow.models import ACTIVE_TRANSCRIPT_STATUSES, Speaker
from lessonflow.pipelines.lesson.errors import ProviderTimeoutError
from lessonflow.pipelines.lesson.types import (
    ChunkRecord,
    ChunkRetryStats,
    NewSegment,
    RetryReport,
    SpeechResult,
    SpeechToText,
    TranscriptRecord,
)
from lessonflow.services.audio_store import AudioStore
from lessonflow.services.language import normalize_language
from lessonflow.services.transcript_repository import TranscriptRepository
from lessonflow.telemetry import record_items
from lessonflow.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)
pipeline_logger = logging.getLogger("lessonflow.pipeline")

JOB_NAME = "transcription_retry"


def _clamp_confidence(value: Optional[float]) -> float:
    if value is None:
        return 1.0
    return max(0.0, min(1.0, float(value)))


def segments_from_result(
    transcript: TranscriptRecord,
    result: SpeechResult,
    *,
    speaker: Speaker,
    chunk_index: Optional[int] = None,
) -> list[NewSegment]:
    """Anchor provider offsets at the transcript start and drop empty text."""

    segments = []
    for timed in result.segments:
        text = (timed.text or "").strip()
        if not text:
            continue
        segments.append(
            NewSegment(
                timestamp=transcript.start_time + timedelta(seconds=max(timed.start, 0.0)),
                speaker=speaker,
                text=text,
                confidence=_clamp_confidence(timed.confidence),
                language=transcript.language,
                chunk_index=chunk_index,
            )
        )
    return segments


class TranscriptionRetryEngine:
    """Retry sweep plus the operator-triggered single-transcript retry."""

    def __init__(
        self,
        repository: TranscriptRepository,
        audio_store: AudioStore,
        speech_to_text: SpeechToText,
        *,
        max_attempts: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._repository = repository
        self._audio_store = audio_store
        self._speech = speech_to_text
        self._max_attempts = max_attempts or settings.pipeline.max_transcription_attempts
        self._timeout = timeout_seconds or settings.pipeline.speech_timeout_seconds

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def retry_failed_transcriptions(
        self,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> RetryReport:
        """Sweep every eligible chunk across all transcripts."""

        return await self._run(max_attempts=max_attempts, now=now, transcript_id=None)

    async def retry_transcript(
        self,
        transcript_id: UUID,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> RetryReport:
        """Retry one transcript's chunks; raises ``TranscriptNotFoundError``."""

        await self._repository.require(transcript_id)
        return await self._run(max_attempts=max_attempts, now=now, transcript_id=transcript_id)

    async def retry_stats(
        self,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> ChunkRetryStats:
        return await self._repository.chunk_stats(
            max_attempts=max_attempts or self._max_attempts,
            now=ensure_utc(now) if now else utcnow(),
        )

    async def _run(
        self,
        *,
        max_attempts: int | None,
        now: datetime | None,
        transcript_id: UUID | None,
    ) -> RetryReport:
        limit = max_attempts or self._max_attempts
        now = ensure_utc(now) if now else utcnow()

        closed = await self._repository.mark_closed_chunks()
        if closed:
            pipeline_logger.info("Marked %s chunks closed (transcript no longer active)", closed)
        expired = await self._repository.mark_expired_chunks(now)
        if expired:
            pipeline_logger.info("Marked %s chunks expired (past retention)", expired)

        chunks = await self._repository.retryable_chunks(
            max_attempts=limit,
            now=now,
            transcript_id=transcript_id,
        )
        pipeline_logger.info("Transcription retry: %s eligible chunks", len(chunks))

        transcripts: dict[UUID, TranscriptRecord] = {}
        retried = succeeded = failed = 0
        for chunk in chunks:
            retried += 1
            try:
                transcript = transcripts.get(chunk.transcript_id)
                if transcript is None:
                    transcript = await self._repository.require(chunk.transcript_id)
                    transcripts[chunk.transcript_id] = transcript
                if transcript.status not in ACTIVE_TRANSCRIPT_STATUSES:
                    # Closed since selection; the next sweep stamps the chunk.
                    retried -= 1
                    continue
                outcome = await self._retry_chunk(transcript, chunk, now)
            except Exception as exc:  # noqa: BLE001 - one bad chunk must not halt the sweep
                failed += 1
                await self._repository.record_chunk_failure(
                    chunk,
                    now=now,
                    error=str(exc) or exc.__class__.__name__,
                    max_attempts=limit,
                )
                pipeline_logger.warning(
                    "Retry failed for transcript=%s chunk=%s attempt=%s: %s",
                    chunk.transcript_id,
                    chunk.chunk_index,
                    chunk.transcription_attempts + 1,
                    exc,
                )
                continue
            if outcome:
                succeeded += 1
                pipeline_logger.info(
                    "Re-transcribed transcript=%s chunk=%s",
                    chunk.transcript_id,
                    chunk.chunk_index,
                )
            else:
                # Another sweep claimed this attempt first.
                retried -= 1

        record_items(JOB_NAME, "succeeded", succeeded)
        record_items(JOB_NAME, "failed", failed)
        logger.info(
            "Transcription retry complete: retried=%s succeeded=%s failed=%s",
            retried,
            succeeded,
            failed,
        )
        return RetryReport(retried=retried, succeeded=succeeded, failed=failed)

    async def _retry_chunk(
        self,
        transcript: TranscriptRecord,
        chunk: ChunkRecord,
        now: datetime,
    ) -> bool:
        audio = await self._audio_store.get(chunk.storage_path)
        language_code = normalize_language(transcript.language)
        try:
            result = await asyncio.wait_for(
                self._speech.transcribe(audio, language_code, chunk.speaker),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError("speech", self._timeout) from exc
        segments = segments_from_result(
            transcript, result, speaker=chunk.speaker, chunk_index=chunk.chunk_index
        )
        return await self._repository.commit_chunk_transcription(chunk, segments, now)


__all__ = ["TranscriptionRetryEngine", "segments_from_result"]
