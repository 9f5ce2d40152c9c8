"""Analysis stage: one generated analysis per completed lesson.

``ensure_analysis`` is the only way an analysis gets produced. The live
close path, auto-completion, the manual endpoint and the retry sweep all go
through the same claim, so a lesson is never analysed twice concurrently and
a ``completed`` analysis is never touched again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from lessonflow.config.settings import settings
from lessonflow.models import AnalysisStatus, TranscriptStatus
from lessonflow.pipelines.lesson.aggregator import sort_segments
from lessonflow.pipelines.lesson.errors import (
    EmptyTranscriptError,
    InsufficientDataError,
    InvalidStateError,
    MissingTranscriptError,
    PermanentFailureError,
    ProviderTimeoutError,
    TranscriptNotFoundError,
    UnsupportedLanguageError,
)
from lessonflow.pipelines.lesson.pronunciation import PronunciationStage, assessment_payload
from lessonflow.pipelines.lesson.types import (
    AnalysisGenerator,
    AnalysisRecord,
    AnalysisRetryStats,
    PronunciationAssessment,
    RetryReport,
    StudentContext,
    TranscriptRecord,
)
from lessonflow.services.analysis_repository import AnalysisRepository
from lessonflow.services.language import normalize_language
from lessonflow.services.transcript_repository import TranscriptRepository
from lessonflow.telemetry import record_items
from lessonflow.utils.time import utcnow

logger = logging.getLogger(__name__)
pipeline_logger = logging.getLogger("lessonflow.pipeline")

JOB_NAME = "analysis_retry"
DEFAULT_STUDENT_LEVEL = "B1"
UNAVAILABLE_MESSAGE = "analysis unavailable"


@dataclass(frozen=True)
class RetryOutcome:
    """Result of an operator-triggered retry."""

    success: bool
    message: str
    analysis: Optional[AnalysisRecord] = None


def proficiency_of(payload: dict[str, Any]) -> Optional[str]:
    overall = payload.get("overallAssessment") or {}
    level = overall.get("proficiencyLevel")
    return str(level) if level else None


class AnalysisEngine:
    def __init__(
        self,
        analyses: AnalysisRepository,
        transcripts: TranscriptRepository,
        generator: AnalysisGenerator,
        pronunciation: PronunciationStage | None = None,
        *,
        max_attempts: int | None = None,
        timeout_seconds: float | None = None,
        prior_limit: int | None = None,
        stale_after_seconds: float | None = None,
    ) -> None:
        self._analyses = analyses
        self._transcripts = transcripts
        self._generator = generator
        self._pronunciation = pronunciation
        self._max_attempts = max_attempts or settings.pipeline.max_analysis_attempts
        self._timeout = timeout_seconds or settings.pipeline.analysis_timeout_seconds
        self._prior_limit = (
            prior_limit if prior_limit is not None else settings.pipeline.prior_analyses_limit
        )
        self._stale_after = timedelta(
            seconds=(
                stale_after_seconds
                if stale_after_seconds is not None
                else settings.pipeline.analysis_stale_after_seconds
            )
        )

    def _stale_before(self) -> datetime:
        return utcnow() - self._stale_after

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def repository(self) -> AnalysisRepository:
        return self._analyses

    async def ensure_analysis(self, transcript_id: UUID) -> AnalysisRecord:
        """Create (or reuse) the lesson's analysis and run it if it is claimable."""

        transcript = await self._transcripts.get(transcript_id)
        if transcript is None:
            raise TranscriptNotFoundError(f"Transcript {transcript_id} not found")
        if transcript.status != TranscriptStatus.COMPLETED:
            raise InvalidStateError(
                f"Transcript {transcript_id} is {transcript.status.value}; "
                "only completed transcripts are analysed"
            )

        record, created = await self._analyses.create_or_get(
            lesson_id=transcript.lesson_id,
            transcript_id=transcript.id,
            student_id=transcript.student_id,
            tutor_id=transcript.tutor_id,
            language=transcript.language,
            lesson_date=transcript.start_time,
        )
        if record.status == AnalysisStatus.COMPLETED:
            return record
        if not created:
            logger.info(
                "Analysis %s for lesson %s already exists (status=%s)",
                record.id,
                record.lesson_id,
                record.status.value,
            )
        if not await self._analyses.claim(
            record.id, max_attempts=self._max_attempts, stale_before=self._stale_before()
        ):
            return await self._analyses.require(record.id)
        return await self._process(record.id)

    async def ensure_analysis_for_lesson(self, lesson_id: UUID) -> AnalysisRecord:
        transcript = await self._transcripts.latest_for_lesson(lesson_id)
        if transcript is None:
            raise TranscriptNotFoundError(f"No transcript for lesson {lesson_id}")
        return await self.ensure_analysis(transcript.id)

    async def retry_failed_analyses(self, max_attempts: int | None = None) -> RetryReport:
        limit = max_attempts or self._max_attempts
        candidates = await self._analyses.retryable(limit, stale_before=self._stale_before())
        pipeline_logger.info("Analysis retry: %s eligible analyses", len(candidates))

        retried = succeeded = failed = 0
        for candidate in candidates:
            if not await self._analyses.claim(
                candidate.id, max_attempts=limit, stale_before=self._stale_before()
            ):
                continue
            retried += 1
            result = await self._process(candidate.id, max_attempts=limit)
            if result.status == AnalysisStatus.COMPLETED:
                succeeded += 1
            else:
                failed += 1

        record_items(JOB_NAME, "succeeded", succeeded)
        record_items(JOB_NAME, "failed", failed)
        logger.info(
            "Analysis retry complete: retried=%s succeeded=%s failed=%s",
            retried,
            succeeded,
            failed,
        )
        return RetryReport(retried=retried, succeeded=succeeded, failed=failed)

    async def retry_analysis(self, analysis_id: UUID) -> RetryOutcome:
        """Manual retry. Obeys the same eligibility rule as the sweep."""

        record = await self._analyses.require(analysis_id)
        if record.status == AnalysisStatus.COMPLETED:
            return RetryOutcome(True, "Analysis already completed", record)
        if record.status == AnalysisStatus.FAILED and (
            not record.can_retry or record.retry_attempts >= self._max_attempts
        ):
            return RetryOutcome(False, "Analysis cannot be retried", record)
        if not await self._analyses.claim(
            analysis_id, max_attempts=self._max_attempts, stale_before=self._stale_before()
        ):
            current = await self._analyses.require(analysis_id)
            return RetryOutcome(
                False,
                f"Analysis is {current.status.value}; retry not started",
                current,
            )

        result = await self._process(analysis_id)
        if result.status == AnalysisStatus.COMPLETED:
            return RetryOutcome(True, "Analysis completed", result)
        return RetryOutcome(False, result.error or "Analysis failed", result)

    async def analysis_stats(self, max_attempts: int | None = None) -> AnalysisRetryStats:
        return await self._analyses.stats(max_attempts or self._max_attempts)

    async def _process(self, analysis_id: UUID, max_attempts: int | None = None) -> AnalysisRecord:
        limit = max_attempts or self._max_attempts
        record = await self._analyses.require(analysis_id)
        started = time.monotonic()
        try:
            payload = await self._generate(record)
        except (InsufficientDataError, PermanentFailureError, UnsupportedLanguageError) as exc:
            pipeline_logger.warning("Analysis %s failed permanently: %s", analysis_id, exc)
            return await self._analyses.mark_failed(
                analysis_id,
                error=str(exc),
                max_attempts=limit,
                now=utcnow(),
                permanent=True,
            )
        except asyncio.CancelledError:
            pipeline_logger.warning(
                "Analysis %s interrupted during attempt %s", analysis_id, record.retry_attempts + 1
            )
            # Shielded so the row leaves processing even if cancellation repeats.
            await asyncio.shield(
                self._analyses.mark_failed(
                    analysis_id,
                    error="Analysis interrupted before completion",
                    max_attempts=limit,
                    now=utcnow(),
                )
            )
            raise
        except Exception as exc:  # noqa: BLE001 - recorded on the row for the retry sweep
            pipeline_logger.warning(
                "Analysis %s attempt %s failed: %s",
                analysis_id,
                record.retry_attempts + 1,
                exc,
            )
            return await self._analyses.mark_failed(
                analysis_id,
                error=str(exc) or exc.__class__.__name__,
                max_attempts=limit,
                now=utcnow(),
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        completed = await self._analyses.mark_completed(
            analysis_id,
            payload=payload,
            proficiency_level=proficiency_of(payload),
            processing_time_ms=elapsed_ms,
            now=utcnow(),
        )
        pipeline_logger.info(
            "Analysis %s completed for lesson %s in %sms (level=%s)",
            analysis_id,
            completed.lesson_id,
            elapsed_ms,
            completed.proficiency_level,
        )
        return completed

    async def _generate(self, record: AnalysisRecord) -> dict[str, Any]:
        transcript = (
            await self._transcripts.get(record.transcript_id) if record.transcript_id else None
        )
        if transcript is None:
            raise MissingTranscriptError(f"Transcript for lesson {record.lesson_id} is missing")
        if not transcript.student_segments:
            raise EmptyTranscriptError(f"Transcript {transcript.id} has no student speech")

        language = normalize_language(transcript.language)
        prior = await self._analyses.prior_completed(
            student_id=record.student_id,
            tutor_id=record.tutor_id,
            before=record.lesson_date,
            limit=self._prior_limit,
        )
        student_level = next(
            (p.proficiency_level for p in prior if p.proficiency_level), DEFAULT_STUDENT_LEVEL
        )
        assessment, covered = await self._assess_pronunciation(transcript, language, student_level)

        context = StudentContext(
            student_id=record.student_id,
            tutor_id=record.tutor_id,
            lesson_date=record.lesson_date,
            duration_minutes=(
                round(transcript.total_duration_seconds / 60, 1)
                if transcript.total_duration_seconds
                else None
            ),
        )
        try:
            payload = await asyncio.wait_for(
                self._generator.analyze(
                    sort_segments(transcript.segments),
                    language,
                    context,
                    prior,
                    assessment,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError("analysis", self._timeout) from exc

        payload = dict(payload)
        if assessment is not None:
            payload["pronunciationAnalysis"] = assessment_payload(
                assessment,
                segments_assessed=covered,
                sampling_rate=self._pronunciation.sampling_rate,
            )
        return payload

    async def _assess_pronunciation(
        self,
        transcript: TranscriptRecord,
        language: str,
        student_level: str,
    ) -> tuple[Optional[PronunciationAssessment], int]:
        if self._pronunciation is None:
            return None, 0
        try:
            return await self._pronunciation.run(transcript, language, student_level)
        except Exception as exc:  # noqa: BLE001 - pronunciation never fails the analysis
            logger.warning("Pronunciation stage failed for transcript %s: %s", transcript.id, exc)
            return None, 0


__all__ = ["AnalysisEngine", "RetryOutcome", "UNAVAILABLE_MESSAGE", "proficiency_of"]
