"""Safety net for lessons whose live close never happened.

Every tick looks at active transcripts, oldest first, and closes the ones
whose scheduled lesson has ended: freeze (or fail when the student never
spoke), finalize the lesson, and kick off analysis in the background. A
second pass revisits completed transcripts whose lesson was never finalized
or never analysed, so a failure after the freeze is repaired on a later tick.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional, Set
from uuid import UUID

from lessonflow.config.settings import settings
from lessonflow.pipelines.lesson.aggregator import NO_STUDENT_SPEECH, TranscriptAggregator
from lessonflow.pipelines.lesson.analysis import AnalysisEngine
from lessonflow.pipelines.lesson.types import (
    AutoCompleteReport,
    LessonGateway,
    LessonNotifier,
    LessonSnapshot,
    PresenceLookup,
    TranscriptRecord,
)
from lessonflow.telemetry import record_items
from lessonflow.utils.time import ensure_utc, isoformat_z, utcnow

logger = logging.getLogger(__name__)
pipeline_logger = logging.getLogger("lessonflow.pipeline")

JOB_NAME = "auto_complete"
FINALIZED_EVENT = "lesson_finalized"


class LessonAutoCompleter:
    def __init__(
        self,
        aggregator: TranscriptAggregator,
        lessons: LessonGateway,
        analysis: AnalysisEngine,
        presence: PresenceLookup | None = None,
        notifier: LessonNotifier | None = None,
        *,
        batch_size: int | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._lessons = lessons
        self._analysis = analysis
        self._presence = presence
        self._notifier = notifier
        self._batch_size = batch_size or settings.pipeline.auto_complete_batch_size
        self._background: Set[asyncio.Task] = set()
        self._analysing: Set[UUID] = set()

    @property
    def pending_tasks(self) -> Set[asyncio.Task]:
        return set(self._background)

    async def drain(self) -> None:
        """Wait for background analyses started by earlier ticks."""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def auto_complete_transcripts(
        self,
        now: datetime | None = None,
        batch_size: int | None = None,
    ) -> AutoCompleteReport:
        now = ensure_utc(now) if now else utcnow()
        limit = batch_size or self._batch_size
        transcripts = await self._aggregator.repository.list_active(limit)

        completed = skipped = triggered = 0
        for transcript in transcripts:
            try:
                outcome = await self._complete_one(transcript, now)
            except Exception as exc:  # noqa: BLE001 - one lesson must not block the batch
                skipped += 1
                pipeline_logger.error(
                    "Auto-complete failed for transcript %s: %s", transcript.id, exc
                )
                continue
            if outcome is None:
                skipped += 1
                continue
            completed += 1
            if outcome:
                triggered += 1

        recovered, recovered_triggered = await self._recover_unsettled(now, limit)
        triggered += recovered_triggered

        record_items(JOB_NAME, "completed", completed)
        record_items(JOB_NAME, "skipped", skipped)
        record_items(JOB_NAME, "recovered", recovered)
        if completed or skipped or recovered:
            pipeline_logger.info(
                "Auto-complete summary: %s completed, %s skipped, %s recovered",
                completed,
                skipped,
                recovered,
            )
        return AutoCompleteReport(
            completed=completed,
            skipped=skipped,
            analyses_triggered=triggered,
            recovered=recovered,
        )

    async def _complete_one(self, transcript: TranscriptRecord, now: datetime) -> Optional[bool]:
        """None when skipped; otherwise whether an analysis was started."""

        lesson = await self._lessons.get(transcript.lesson_id)
        if lesson is None:
            logger.warning("Lesson %s not found for transcript %s", transcript.lesson_id, transcript.id)
            return None
        if lesson.end_time > now:
            return None

        student_segments = await self._aggregator.repository.count_student_segments(transcript.id)
        if student_segments == 0:
            await self._aggregator.mark_failed(transcript.id, NO_STUDENT_SPEECH)
            pipeline_logger.info(
                "Transcript %s failed: no student speech (lesson %s)",
                transcript.id,
                lesson.id,
            )
            return None

        frozen = await self._aggregator.freeze(transcript.id, now)
        pipeline_logger.info("Auto-completed transcript %s for lesson %s", frozen.id, lesson.id)
        return await self._settle(frozen, lesson, now)

    async def _recover_unsettled(self, now: datetime, limit: int) -> tuple[int, int]:
        """Finish completed transcripts whose finalize or analysis never happened."""

        transcripts = await self._aggregator.repository.list_unsettled(limit)
        recovered = triggered = 0
        for transcript in transcripts:
            if transcript.id in self._analysing:
                continue
            try:
                lesson = await self._lessons.get(transcript.lesson_id)
                started = await self._settle(transcript, lesson, now)
            except Exception as exc:  # noqa: BLE001 - retried on the next tick
                pipeline_logger.error(
                    "Could not settle completed transcript %s: %s", transcript.id, exc
                )
                continue
            recovered += 1
            if started:
                triggered += 1
        return recovered, triggered

    async def _settle(
        self,
        transcript: TranscriptRecord,
        lesson: Optional[LessonSnapshot],
        now: datetime,
    ) -> bool:
        """Finalize the lesson and start its analysis; True when an analysis was started.

        A finalize failure is logged and left to the recovery pass; it never
        holds back the analysis.
        """

        if lesson is not None and lesson.actual_call_end_time is None:
            ended_at = transcript.end_time or now
            try:
                billing = await self._lessons.finalize(lesson.id, ended_at)
            except Exception as exc:  # noqa: BLE001 - the recovery pass finalizes later
                pipeline_logger.error("Finalize failed for lesson %s: %s", lesson.id, exc)
            else:
                pipeline_logger.info(
                    "Finalized lesson %s (%s min)", lesson.id, billing.actual_duration_minutes
                )
                if not billing.already_finalized:
                    await self._notify(lesson, ended_at)

        if transcript.id in self._analysing:
            return False
        if await self._analysis.repository.get_by_lesson(transcript.lesson_id) is not None:
            return False
        self._spawn_analysis(transcript)
        return True

    def _spawn_analysis(self, transcript: TranscriptRecord) -> None:
        self._analysing.add(transcript.id)
        task = asyncio.create_task(self._run_analysis(transcript))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_analysis(self, transcript: TranscriptRecord) -> None:
        try:
            await self._analysis.ensure_analysis(transcript.id)
        except Exception as exc:  # noqa: BLE001 - background task, nothing awaits it
            logger.error("Background analysis failed for transcript %s: %s", transcript.id, exc)
        finally:
            self._analysing.discard(transcript.id)

    async def _notify(self, lesson: LessonSnapshot, now: datetime) -> None:
        if self._presence is None or self._notifier is None:
            return
        payload = {"lessonId": str(lesson.id), "endedAt": isoformat_z(now), "reason": "auto_complete"}
        for user_id in (lesson.student_id, lesson.tutor_id):
            channel = self._presence.lookup(user_id)
            if channel is None:
                continue
            try:
                await self._notifier.notify(channel, FINALIZED_EVENT, payload)
            except Exception as exc:  # noqa: BLE001 - notification is best effort
                logger.warning("Could not notify %s of lesson %s: %s", user_id, lesson.id, exc)


__all__ = ["LessonAutoCompleter"]
