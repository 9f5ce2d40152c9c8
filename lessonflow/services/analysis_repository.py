"""Repository for lesson analyses.

One row per lesson (unique ``lesson_id``). Status changes are
compare-and-set updates, so two sweeps racing on the same record cannot
both claim it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lessonflow.models import AnalysisStatus, LessonAnalysis
from lessonflow.pipelines.lesson.errors import AnalysisNotFoundError
from lessonflow.pipelines.lesson.types import AnalysisRecord, AnalysisRetryStats
from lessonflow.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def _analysis_record(row: LessonAnalysis) -> AnalysisRecord:
    return AnalysisRecord(
        id=row.id,
        lesson_id=row.lesson_id,
        student_id=row.student_id,
        tutor_id=row.tutor_id,
        language=row.language,
        lesson_date=ensure_utc(row.lesson_date),
        status=AnalysisStatus(row.status),
        retry_attempts=row.retry_attempts,
        can_retry=row.can_retry,
        transcript_id=row.transcript_id,
        last_retry_attempt=ensure_utc(row.last_retry_attempt),
        error=row.error,
        processing_time_ms=row.processing_time_ms,
        proficiency_level=row.proficiency_level,
        payload=row.payload,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _retryable_failure(max_attempts: int):
    return and_(
        LessonAnalysis.status == AnalysisStatus.FAILED,
        LessonAnalysis.can_retry.is_(True),
        LessonAnalysis.retry_attempts < max_attempts,
    )


def _stale_processing(stale_before: datetime):
    return and_(
        LessonAnalysis.status == AnalysisStatus.PROCESSING,
        LessonAnalysis.updated_at < ensure_utc(stale_before),
    )


def _claimable(max_attempts: int, stale_before: Optional[datetime]):
    conditions = [LessonAnalysis.status == AnalysisStatus.PENDING, _retryable_failure(max_attempts)]
    if stale_before is not None:
        conditions.append(_stale_processing(stale_before))
    return or_(*conditions)


class AnalysisRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from lessonflow.database import SessionFactory

            session_factory = SessionFactory
        self._session_factory = session_factory

    async def get(self, analysis_id: UUID) -> Optional[AnalysisRecord]:
        async with self._session_factory() as session:
            row = await session.get(LessonAnalysis, analysis_id, populate_existing=True)
            return _analysis_record(row) if row is not None else None

    async def require(self, analysis_id: UUID) -> AnalysisRecord:
        record = await self.get(analysis_id)
        if record is None:
            raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
        return record

    async def get_by_lesson(self, lesson_id: UUID) -> Optional[AnalysisRecord]:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(LessonAnalysis).where(LessonAnalysis.lesson_id == lesson_id)
                )
            ).scalar_one_or_none()
            return _analysis_record(row) if row is not None else None

    async def create_or_get(
        self,
        *,
        lesson_id: UUID,
        transcript_id: Optional[UUID],
        student_id: str,
        tutor_id: str,
        language: str,
        lesson_date: datetime,
    ) -> tuple[AnalysisRecord, bool]:
        """Insert a pending analysis; returns ``(record, created)``."""

        async with self._session_factory() as session:
            row = LessonAnalysis(
                lesson_id=lesson_id,
                transcript_id=transcript_id,
                student_id=student_id,
                tutor_id=tutor_id,
                language=language,
                lesson_date=ensure_utc(lesson_date),
                status=AnalysisStatus.PENDING,
                retry_attempts=0,
                can_retry=True,
            )
            session.add(row)
            try:
                await session.commit()
                return _analysis_record(row), True
            except IntegrityError:
                await session.rollback()

        existing = await self.get_by_lesson(lesson_id)
        if existing is None:
            raise AnalysisNotFoundError(f"Analysis for lesson {lesson_id} vanished after conflict")
        return existing, False

    async def claim(
        self,
        analysis_id: UUID,
        *,
        max_attempts: int,
        stale_before: Optional[datetime] = None,
    ) -> bool:
        """CAS ``pending | failed(can_retry) | stale processing -> processing``.

        A ``processing`` row last touched before ``stale_before`` belongs to a
        run that died without recording its outcome.
        """

        async with self._session_factory() as session:
            result = await session.execute(
                update(LessonAnalysis)
                .where(
                    LessonAnalysis.id == analysis_id,
                    _claimable(max_attempts, stale_before),
                )
                .values(status=AnalysisStatus.PROCESSING, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_completed(
        self,
        analysis_id: UUID,
        *,
        payload: Mapping[str, Any],
        proficiency_level: Optional[str],
        processing_time_ms: int,
        now: datetime,
    ) -> AnalysisRecord:
        async with self._session_factory() as session:
            result = await session.execute(
                update(LessonAnalysis)
                .where(
                    LessonAnalysis.id == analysis_id,
                    LessonAnalysis.status == AnalysisStatus.PROCESSING,
                )
                .values(
                    status=AnalysisStatus.COMPLETED,
                    payload=dict(payload),
                    proficiency_level=proficiency_level,
                    processing_time_ms=processing_time_ms,
                    error=None,
                    retry_attempts=LessonAnalysis.retry_attempts + 1,
                    last_retry_attempt=ensure_utc(now),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                logger.warning("Analysis %s was not processing when completing", analysis_id)
        return await self.require(analysis_id)

    async def mark_failed(
        self,
        analysis_id: UUID,
        *,
        error: str,
        max_attempts: int,
        now: datetime,
        permanent: bool = False,
    ) -> AnalysisRecord:
        """Count the attempt; ``can_retry`` only ever goes from true to false."""

        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(LessonAnalysis, analysis_id, populate_existing=True)
                if row is None:
                    raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
                attempts = row.retry_attempts + 1
                can_retry = bool(row.can_retry) and not permanent and attempts < max_attempts
                await session.execute(
                    update(LessonAnalysis)
                    .where(
                        LessonAnalysis.id == analysis_id,
                        LessonAnalysis.status != AnalysisStatus.COMPLETED,
                        LessonAnalysis.retry_attempts == row.retry_attempts,
                    )
                    .values(
                        status=AnalysisStatus.FAILED,
                        retry_attempts=attempts,
                        can_retry=can_retry,
                        last_retry_attempt=ensure_utc(now),
                        error=error[:2000],
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
        return await self.require(analysis_id)

    async def prior_completed(
        self,
        *,
        student_id: str,
        tutor_id: str,
        before: datetime,
        limit: int,
    ) -> list[AnalysisRecord]:
        if limit <= 0:
            return []
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(LessonAnalysis)
                    .where(
                        LessonAnalysis.student_id == student_id,
                        LessonAnalysis.tutor_id == tutor_id,
                        LessonAnalysis.status == AnalysisStatus.COMPLETED,
                        LessonAnalysis.lesson_date < ensure_utc(before),
                    )
                    .order_by(LessonAnalysis.lesson_date.desc())
                    .limit(limit)
                )
            ).scalars().all()
            return [_analysis_record(row) for row in rows]

    async def retryable(
        self,
        max_attempts: int,
        stale_before: Optional[datetime] = None,
    ) -> list[AnalysisRecord]:
        """Retryable failures plus abandoned ``processing`` rows."""

        conditions = [_retryable_failure(max_attempts)]
        if stale_before is not None:
            conditions.append(_stale_processing(stale_before))
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(LessonAnalysis)
                    .where(or_(*conditions))
                    .order_by(LessonAnalysis.last_retry_attempt)
                )
            ).scalars().all()
            return [_analysis_record(row) for row in rows]

    async def stats(self, max_attempts: int) -> AnalysisRetryStats:
        async with self._session_factory() as session:
            total_failed = (
                await session.execute(
                    select(func.count(LessonAnalysis.id)).where(
                        LessonAnalysis.status == AnalysisStatus.FAILED
                    )
                )
            ).scalar_one()
            pending = (
                await session.execute(
                    select(func.count(LessonAnalysis.id)).where(
                        LessonAnalysis.status == AnalysisStatus.FAILED,
                        LessonAnalysis.can_retry.is_(True),
                        LessonAnalysis.retry_attempts < max_attempts,
                    )
                )
            ).scalar_one()
        return AnalysisRetryStats(
            pending_retries=pending,
            permanently_failed=total_failed - pending,
            total_failed=total_failed,
        )


__all__ = ["AnalysisRepository"]
