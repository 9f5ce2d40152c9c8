"""Repository for lesson transcripts, their segments and audio chunks.

Every guarded transition is a single ``UPDATE ... WHERE <expected prior
state>`` whose ``rowcount`` tells the caller whether it won. Segment inserts
first "touch" the parent transcript under a status predicate, which takes the
row lock (or the SQLite write lock) so a concurrent freeze cannot interleave.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lessonflow.models import (
    ACTIVE_TRANSCRIPT_STATUSES,
    AudioChunk,
    ChunkTerminalReason,
    Lesson,
    LessonAnalysis,
    LessonTranscript,
    Speaker,
    TranscriptSegment,
    TranscriptStatus,
)
from lessonflow.pipelines.lesson.errors import (
    InsufficientDataError,
    InvalidStateError,
    TranscriptNotFoundError,
)
from lessonflow.pipelines.lesson.types import (
    ChunkRecord,
    ChunkRetryStats,
    NewSegment,
    SegmentRecord,
    TranscriptRecord,
    TranscriptSummary,
)
from lessonflow.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def _segment_record(row: TranscriptSegment) -> SegmentRecord:
    return SegmentRecord(
        id=row.id,
        timestamp=ensure_utc(row.timestamp),
        speaker=Speaker(row.speaker),
        text=row.text,
        confidence=row.confidence,
        language=row.language,
        chunk_index=row.chunk_index,
    )


def _chunk_record(row: AudioChunk) -> ChunkRecord:
    return ChunkRecord(
        id=row.id,
        transcript_id=row.transcript_id,
        chunk_index=row.chunk_index,
        speaker=Speaker(row.speaker),
        storage_path=row.storage_path,
        size_bytes=row.size_bytes,
        uploaded_at=ensure_utc(row.uploaded_at),
        delete_at=ensure_utc(row.delete_at),
        transcribed=row.transcribed,
        transcription_attempts=row.transcription_attempts,
        last_transcription_attempt=ensure_utc(row.last_transcription_attempt),
        last_error=row.last_error,
        terminal_reason=(
            ChunkTerminalReason(row.terminal_reason) if row.terminal_reason else None
        ),
    )


def _transcript_record(
    row: LessonTranscript,
    segments: Sequence[TranscriptSegment] = (),
    chunks: Sequence[AudioChunk] = (),
) -> TranscriptRecord:
    return TranscriptRecord(
        id=row.id,
        lesson_id=row.lesson_id,
        student_id=row.student_id,
        tutor_id=row.tutor_id,
        language=row.language,
        start_time=ensure_utc(row.start_time),
        status=TranscriptStatus(row.status),
        end_time=ensure_utc(row.end_time),
        failure_reason=row.failure_reason,
        full_text=row.full_text,
        total_duration_seconds=row.total_duration_seconds,
        student_speaking_seconds=row.student_speaking_seconds,
        tutor_speaking_seconds=row.tutor_speaking_seconds,
        word_count=row.word_count,
        segments=tuple(_segment_record(s) for s in segments),
        chunks=tuple(_chunk_record(c) for c in chunks),
    )


async def _load(session: AsyncSession, transcript_id: UUID) -> Optional[TranscriptRecord]:
    row = await session.get(LessonTranscript, transcript_id, populate_existing=True)
    if row is None:
        return None
    segments = (
        await session.execute(
            select(TranscriptSegment)
            .where(TranscriptSegment.transcript_id == transcript_id)
            .order_by(TranscriptSegment.timestamp, TranscriptSegment.id)
        )
    ).scalars().all()
    chunks = (
        await session.execute(
            select(AudioChunk)
            .where(AudioChunk.transcript_id == transcript_id)
            .order_by(AudioChunk.chunk_index)
        )
    ).scalars().all()
    return _transcript_record(row, segments, chunks)


async def _status_of(session: AsyncSession, transcript_id: UUID) -> Optional[TranscriptStatus]:
    status = (
        await session.execute(
            select(LessonTranscript.status).where(LessonTranscript.id == transcript_id)
        )
    ).scalar_one_or_none()
    return TranscriptStatus(status) if status is not None else None


async def _lock_active(session: AsyncSession, transcript_id: UUID) -> None:
    """Touch an active transcript, raising when it is missing or terminal."""

    result = await session.execute(
        update(LessonTranscript)
        .where(
            LessonTranscript.id == transcript_id,
            LessonTranscript.status.in_(ACTIVE_TRANSCRIPT_STATUSES),
        )
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return
    status = await _status_of(session, transcript_id)
    if status is None:
        raise TranscriptNotFoundError(f"Transcript {transcript_id} not found")
    raise InvalidStateError(
        f"Transcript {transcript_id} is {status.value}; segments can no longer be appended"
    )


def _segment_rows(transcript_id: UUID, segments: Iterable[NewSegment]) -> list[TranscriptSegment]:
    rows = []
    for segment in segments:
        text = (segment.text or "").strip()
        if not text:
            continue
        rows.append(
            TranscriptSegment(
                transcript_id=transcript_id,
                timestamp=ensure_utc(segment.timestamp),
                speaker=segment.speaker,
                text=text,
                confidence=segment.confidence,
                language=segment.language,
                chunk_index=segment.chunk_index,
            )
        )
    return rows


class TranscriptRepository:
    """Persistence for transcripts; stages receive frozen snapshots."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from lessonflow.database import SessionFactory

            session_factory = SessionFactory
        self._session_factory = session_factory

    async def create(
        self,
        *,
        lesson_id: UUID,
        student_id: str,
        tutor_id: str,
        language: str,
        start_time: datetime,
    ) -> TranscriptRecord:
        async with self._session_factory() as session:
            row = LessonTranscript(
                lesson_id=lesson_id,
                student_id=student_id,
                tutor_id=tutor_id,
                language=language,
                start_time=ensure_utc(start_time),
                status=TranscriptStatus.RECORDING,
            )
            session.add(row)
            await session.commit()
            return _transcript_record(row)

    async def get(self, transcript_id: UUID) -> Optional[TranscriptRecord]:
        async with self._session_factory() as session:
            return await _load(session, transcript_id)

    async def require(self, transcript_id: UUID) -> TranscriptRecord:
        record = await self.get(transcript_id)
        if record is None:
            raise TranscriptNotFoundError(f"Transcript {transcript_id} not found")
        return record

    async def latest_for_lesson(self, lesson_id: UUID) -> Optional[TranscriptRecord]:
        async with self._session_factory() as session:
            transcript_id = (
                await session.execute(
                    select(LessonTranscript.id)
                    .where(LessonTranscript.lesson_id == lesson_id)
                    .order_by(LessonTranscript.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if transcript_id is None:
                return None
            return await _load(session, transcript_id)

    async def list_active(self, limit: int) -> list[TranscriptRecord]:
        """Return recording/processing transcripts, oldest first, without children."""

        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(LessonTranscript)
                    .where(LessonTranscript.status.in_(ACTIVE_TRANSCRIPT_STATUSES))
                    .order_by(LessonTranscript.start_time)
                    .limit(limit)
                )
            ).scalars().all()
            return [_transcript_record(row) for row in rows]

    async def list_unsettled(self, limit: int) -> list[TranscriptRecord]:
        """Completed transcripts whose lesson was never finalized or never analysed."""

        unfinalized = exists().where(
            Lesson.id == LessonTranscript.lesson_id,
            Lesson.actual_call_end_time.is_(None),
        )
        analysed = exists().where(LessonAnalysis.lesson_id == LessonTranscript.lesson_id)
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(LessonTranscript)
                    .where(
                        LessonTranscript.status == TranscriptStatus.COMPLETED,
                        or_(unfinalized, ~analysed),
                    )
                    .order_by(LessonTranscript.end_time)
                    .limit(limit)
                )
            ).scalars().all()
            return [_transcript_record(row) for row in rows]

    async def count_student_segments(self, transcript_id: UUID) -> int:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(func.count(TranscriptSegment.id)).where(
                        TranscriptSegment.transcript_id == transcript_id,
                        TranscriptSegment.speaker == Speaker.STUDENT,
                    )
                )
            ).scalar_one()

    async def add_chunk(
        self,
        transcript_id: UUID,
        *,
        chunk_index: int,
        speaker: Speaker,
        storage_path: str,
        size_bytes: int,
        uploaded_at: datetime,
        delete_at: datetime,
        transcribed: bool = False,
    ) -> ChunkRecord:
        async with self._session_factory() as session:
            if await _status_of(session, transcript_id) is None:
                raise TranscriptNotFoundError(f"Transcript {transcript_id} not found")
            row = AudioChunk(
                transcript_id=transcript_id,
                chunk_index=chunk_index,
                speaker=speaker,
                storage_path=storage_path,
                size_bytes=size_bytes,
                uploaded_at=ensure_utc(uploaded_at),
                delete_at=ensure_utc(delete_at),
                transcribed=transcribed,
                transcription_attempts=1 if transcribed else 0,
                last_transcription_attempt=utcnow() if transcribed else None,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise InvalidStateError(
                    f"Chunk {chunk_index} already registered for transcript {transcript_id}"
                ) from exc
            return _chunk_record(row)

    async def append_segments(self, transcript_id: UUID, segments: Iterable[NewSegment]) -> int:
        """Insert non-empty segments while the transcript is still active."""

        async with self._session_factory() as session:
            async with session.begin():
                await _lock_active(session, transcript_id)
                rows = _segment_rows(transcript_id, segments)
                session.add_all(rows)
            return len(rows)

    async def begin_processing(self, transcript_id: UUID) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(LessonTranscript)
                .where(
                    LessonTranscript.id == transcript_id,
                    LessonTranscript.status == TranscriptStatus.RECORDING,
                )
                .values(status=TranscriptStatus.PROCESSING, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def complete(
        self,
        transcript_id: UUID,
        end_time: datetime,
        summarize: Callable[[TranscriptRecord, datetime], TranscriptSummary],
    ) -> TranscriptRecord:
        """Freeze an active transcript; a completed one is returned unchanged."""

        end_time = ensure_utc(end_time)
        async with self._session_factory() as session:
            async with session.begin():
                status = await _status_of(session, transcript_id)
                if status is None:
                    raise TranscriptNotFoundError(f"Transcript {transcript_id} not found")
                if status == TranscriptStatus.COMPLETED:
                    return await _load(session, transcript_id)
                if status == TranscriptStatus.FAILED:
                    raise InvalidStateError(f"Transcript {transcript_id} already failed")

                await _lock_active(session, transcript_id)
                record = await _load(session, transcript_id)
                if not record.student_segments:
                    raise InsufficientDataError(
                        f"Transcript {transcript_id} has no student segments"
                    )
                summary = summarize(record, end_time)
                result = await session.execute(
                    update(LessonTranscript)
                    .where(
                        LessonTranscript.id == transcript_id,
                        LessonTranscript.status.in_(ACTIVE_TRANSCRIPT_STATUSES),
                    )
                    .values(
                        status=TranscriptStatus.COMPLETED,
                        end_time=end_time,
                        full_text=summary.full_text,
                        total_duration_seconds=summary.total_duration_seconds,
                        student_speaking_seconds=summary.student_speaking_seconds,
                        tutor_speaking_seconds=summary.tutor_speaking_seconds,
                        word_count=summary.word_count,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidStateError(f"Transcript {transcript_id} changed while freezing")

        async with self._session_factory() as session:
            return await _load(session, transcript_id)

    async def mark_failed(self, transcript_id: UUID, reason: str) -> TranscriptRecord:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(LessonTranscript)
                    .where(
                        LessonTranscript.id == transcript_id,
                        LessonTranscript.status.in_(ACTIVE_TRANSCRIPT_STATUSES),
                    )
                    .values(
                        status=TranscriptStatus.FAILED,
                        failure_reason=reason,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    status = await _status_of(session, transcript_id)
                    if status is None:
                        raise TranscriptNotFoundError(f"Transcript {transcript_id} not found")
                    if status == TranscriptStatus.COMPLETED:
                        raise InvalidStateError(f"Transcript {transcript_id} already completed")
            return await _load(session, transcript_id)

    async def retryable_chunks(
        self,
        *,
        max_attempts: int,
        now: datetime,
        transcript_id: UUID | None = None,
    ) -> list[ChunkRecord]:
        """Chunks with ``transcribed = false AND attempts < max AND now < delete_at``."""

        query = (
            select(AudioChunk)
            .join(LessonTranscript, LessonTranscript.id == AudioChunk.transcript_id)
            .where(
                AudioChunk.transcribed.is_(False),
                AudioChunk.transcription_attempts < max_attempts,
                AudioChunk.delete_at > ensure_utc(now),
                LessonTranscript.status.in_(ACTIVE_TRANSCRIPT_STATUSES),
            )
            .order_by(AudioChunk.transcript_id, AudioChunk.chunk_index)
        )
        if transcript_id is not None:
            query = query.where(AudioChunk.transcript_id == transcript_id)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_chunk_record(row) for row in rows]

    async def commit_chunk_transcription(
        self,
        chunk: ChunkRecord,
        segments: Sequence[NewSegment],
        now: datetime,
    ) -> bool:
        """Append a chunk's segments and mark it transcribed in one transaction.

        Returns False when another sweep already claimed this attempt; raises
        ``InvalidStateError`` when the transcript became terminal.
        """

        async with self._session_factory() as session:
            async with session.begin():
                claimed = await session.execute(
                    update(AudioChunk)
                    .where(
                        AudioChunk.id == chunk.id,
                        AudioChunk.transcribed.is_(False),
                        AudioChunk.transcription_attempts == chunk.transcription_attempts,
                    )
                    .values(
                        transcribed=True,
                        transcription_attempts=AudioChunk.transcription_attempts + 1,
                        last_transcription_attempt=ensure_utc(now),
                        last_error=None,
                        terminal_reason=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    return False
                await _lock_active(session, chunk.transcript_id)
                session.add_all(_segment_rows(chunk.transcript_id, segments))
            return True

    async def record_chunk_failure(
        self,
        chunk: ChunkRecord,
        *,
        now: datetime,
        error: str,
        max_attempts: int,
    ) -> bool:
        next_attempts = chunk.transcription_attempts + 1
        values = {
            "transcription_attempts": AudioChunk.transcription_attempts + 1,
            "last_transcription_attempt": ensure_utc(now),
            "last_error": error[:2000],
        }
        if next_attempts >= max_attempts:
            values["terminal_reason"] = ChunkTerminalReason.EXHAUSTED
        async with self._session_factory() as session:
            result = await session.execute(
                update(AudioChunk)
                .where(
                    AudioChunk.id == chunk.id,
                    AudioChunk.transcribed.is_(False),
                    AudioChunk.transcription_attempts == chunk.transcription_attempts,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_expired_chunks(self, now: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(AudioChunk)
                .where(
                    AudioChunk.transcribed.is_(False),
                    AudioChunk.terminal_reason.is_(None),
                    AudioChunk.delete_at <= ensure_utc(now),
                )
                .values(terminal_reason=ChunkTerminalReason.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    async def mark_closed_chunks(self) -> int:
        """Stamp untranscribed chunks whose transcript is no longer active."""

        closed_transcripts = select(LessonTranscript.id).where(
            LessonTranscript.status.not_in(ACTIVE_TRANSCRIPT_STATUSES)
        )
        async with self._session_factory() as session:
            result = await session.execute(
                update(AudioChunk)
                .where(
                    AudioChunk.transcribed.is_(False),
                    AudioChunk.terminal_reason.is_(None),
                    AudioChunk.transcript_id.in_(closed_transcripts),
                )
                .values(terminal_reason=ChunkTerminalReason.CLOSED)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount

    async def chunk_stats(self, *, max_attempts: int, now: datetime) -> ChunkRetryStats:
        now = ensure_utc(now)
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(
                        AudioChunk.transcription_attempts,
                        AudioChunk.delete_at,
                        AudioChunk.terminal_reason,
                    ).where(AudioChunk.transcribed.is_(False))
                )
            ).all()
            total_transcripts = (
                await session.execute(
                    select(func.count(func.distinct(AudioChunk.transcript_id)))
                )
            ).scalar_one()

        pending = exhausted = expired = closed = 0
        for attempts, delete_at, reason in rows:
            if reason == ChunkTerminalReason.CLOSED:
                closed += 1
            elif reason == ChunkTerminalReason.EXHAUSTED or (
                reason is None and attempts >= max_attempts
            ):
                exhausted += 1
            elif reason == ChunkTerminalReason.EXPIRED or ensure_utc(delete_at) <= now:
                expired += 1
            else:
                pending += 1
        return ChunkRetryStats(
            pending_retries=pending,
            exhausted_chunks=exhausted,
            expired_chunks=expired,
            total_transcripts=total_transcripts,
            closed_chunks=closed,
        )


__all__ = ["TranscriptRepository"]
