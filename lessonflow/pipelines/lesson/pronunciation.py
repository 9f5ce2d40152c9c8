"""Optional pronunciation step of the analysis stage.

Samples complex student segments, assesses the audio chunks they came from
and folds the per-chunk results into one assessment. Nothing here is fatal:
a missing chunk, an expired object or a provider error just shrinks the
sample, and an empty sample yields ``None``.
"""

from __future__ import annotations

import asyncio
import logging
from statistics import mean
from typing import Any, Optional, Sequence

from lessonflow.config.settings import settings
from lessonflow.models import Speaker
from lessonflow.pipelines.lesson.sampler import sample_segments
from lessonflow.pipelines.lesson.types import (
    ChunkRecord,
    PronunciationAssessment,
    PronunciationAssessor,
    SegmentRecord,
    TranscriptRecord,
    WordIssue,
)
from lessonflow.services.audio_store import AudioStore
from lessonflow.utils.time import utcnow

logger = logging.getLogger(__name__)

MAX_CHUNKS_ASSESSED = 3


def combine_assessments(
    assessments: Sequence[PronunciationAssessment],
    threshold: float,
) -> Optional[PronunciationAssessment]:
    """Average the scores; keep each flagged word once, at its lowest score."""

    if not assessments:
        return None
    worst: dict[str, WordIssue] = {}
    for assessment in assessments:
        for issue in assessment.mispronunciations:
            if issue.score >= threshold:
                continue
            key = issue.word.lower()
            if key not in worst or issue.score < worst[key].score:
                worst[key] = issue
    issues: list[str] = []
    for assessment in assessments:
        for issue in assessment.specific_issues:
            if issue not in issues:
                issues.append(issue)
    return PronunciationAssessment(
        overall_score=round(mean(a.overall_score for a in assessments), 1),
        accuracy_score=round(mean(a.accuracy_score for a in assessments), 1),
        fluency_score=round(mean(a.fluency_score for a in assessments), 1),
        prosody_score=round(mean(a.prosody_score for a in assessments), 1),
        completeness_score=round(mean(a.completeness_score for a in assessments), 1),
        mispronunciations=tuple(sorted(worst.values(), key=lambda issue: issue.score)),
        feedback=next((a.feedback for a in assessments if a.feedback), None),
        specific_issues=tuple(issues),
        assessment_method=assessments[0].assessment_method,
    )


def assessment_payload(
    assessment: PronunciationAssessment,
    *,
    segments_assessed: int,
    sampling_rate: float,
) -> dict[str, Any]:
    """Shape stored under ``pronunciationAnalysis`` in the analysis payload."""

    return {
        "overallScore": assessment.overall_score,
        "accuracyScore": assessment.accuracy_score,
        "fluencyScore": assessment.fluency_score,
        "prosodyScore": assessment.prosody_score,
        "completenessScore": assessment.completeness_score,
        "mispronunciations": [
            {
                "word": issue.word,
                "score": issue.score,
                "errorType": issue.error_type,
                "problematicPhonemes": list(issue.problematic_phonemes),
            }
            for issue in assessment.mispronunciations
        ],
        "feedback": assessment.feedback,
        "specificIssues": list(assessment.specific_issues),
        "assessmentMethod": assessment.assessment_method,
        "segmentsAssessed": segments_assessed,
        "samplingRate": sampling_rate,
    }


class PronunciationStage:
    def __init__(
        self,
        assessor: PronunciationAssessor,
        audio_store: AudioStore,
        *,
        sampling_rate: float | None = None,
        threshold: float | None = None,
        timeout_seconds: float | None = None,
        max_chunks: int = MAX_CHUNKS_ASSESSED,
    ) -> None:
        self._assessor = assessor
        self._audio_store = audio_store
        self._sampling_rate = sampling_rate or settings.pipeline.sampling_rate
        self._threshold = (
            threshold if threshold is not None else settings.pipeline.mispronunciation_threshold
        )
        self._timeout = timeout_seconds or settings.pipeline.pronunciation_timeout_seconds
        self._max_chunks = max_chunks

    @property
    def sampling_rate(self) -> float:
        return self._sampling_rate

    def _chunks_for(
        self,
        transcript: TranscriptRecord,
        sampled: Sequence[SegmentRecord],
    ) -> list[tuple[ChunkRecord, list[SegmentRecord]]]:
        now = utcnow()
        by_index = {
            chunk.chunk_index: chunk
            for chunk in transcript.chunks
            if chunk.speaker == Speaker.STUDENT and chunk.delete_at > now
        }
        grouped: dict[int, list[SegmentRecord]] = {}
        for segment in sampled:
            if segment.chunk_index in by_index:
                grouped.setdefault(segment.chunk_index, []).append(segment)
        ordered = sorted(grouped.items(), key=lambda item: -len(item[1]))
        return [(by_index[index], segments) for index, segments in ordered[: self._max_chunks]]

    async def run(
        self,
        transcript: TranscriptRecord,
        language_code: str,
        student_level: str = "B1",
    ) -> tuple[Optional[PronunciationAssessment], int]:
        """Return the combined assessment and how many segments it covers."""

        sampled = sample_segments(
            transcript.student_segments,
            language_code,
            student_level,
            self._sampling_rate,
        )
        assessments: list[PronunciationAssessment] = []
        covered = 0
        for chunk, segments in self._chunks_for(transcript, sampled):
            reference = " ".join(segment.text for segment in segments)
            try:
                audio = await self._audio_store.get(chunk.storage_path)
                result = await asyncio.wait_for(
                    self._assessor.assess(audio, reference, language_code),
                    timeout=self._timeout,
                )
            except Exception as exc:  # noqa: BLE001 - pronunciation is advisory
                logger.warning(
                    "Pronunciation assessment skipped for transcript=%s chunk=%s: %s",
                    transcript.id,
                    chunk.chunk_index,
                    exc,
                )
                continue
            if result is not None:
                assessments.append(result)
                covered += len(segments)

        combined = combine_assessments(assessments, self._threshold)
        if combined is None:
            logger.info("No pronunciation assessment for transcript=%s", transcript.id)
        return combined, covered


__all__ = ["PronunciationStage", "assessment_payload", "combine_assessments"]
