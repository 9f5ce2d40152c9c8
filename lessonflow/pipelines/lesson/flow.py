"""High-level orchestration map for the post-lesson pipeline.

Nothing here executes work; the scheduler in ``lessonflow.scheduler`` and the
controllers drive the stages. This module documents the canonical order so
contributors can navigate the codebase:

1. ``audio_store`` - every uploaded chunk is backed up with a 48h retention.
2. ``aggregator`` - live capture appends segments to a recording transcript.
3. ``transcription_retry`` - hourly sweep re-transcribes failed chunks.
4. ``auto_complete`` - per-minute sweep freezes transcripts of elapsed lessons.
5. ``sampler`` + ``pronunciation`` - optional assessment of complex utterances.
6. ``analysis`` - idempotent analysis generation plus an hourly retry sweep.
7. ``audio_store.sweep_expired`` - six-hourly deletion of expired audio.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List


@dataclass(frozen=True)
class PipelineStage:
    """Human-readable description of one stage in the lesson pipeline."""

    order: int
    name: str
    module: str
    summary: str


class LessonPipeline:
    """Utility wrapper for documenting the audio-to-insight flow."""

    _STAGES: List[PipelineStage] = [
        PipelineStage(
            1,
            "Audio Backup",
            "lessonflow.services.audio_store",
            "Store each chunk under lessons/{lesson}/ with deleteAt metadata; failures never block capture.",
        ),
        PipelineStage(
            2,
            "Transcript Aggregation",
            "lessonflow.pipelines.lesson.aggregator",
            "Append speaker-attributed segments while recording; freeze or fail exactly once.",
        ),
        PipelineStage(
            3,
            "Transcription Retry",
            "lessonflow.pipelines.lesson.transcription_retry",
            "Re-transcribe untranscribed chunks still inside retention and under the attempt cap.",
        ),
        PipelineStage(
            4,
            "Auto Completion",
            "lessonflow.pipelines.lesson.auto_complete",
            "Freeze transcripts whose scheduled lesson ended, finalize billing, trigger analysis.",
        ),
        PipelineStage(
            5,
            "Pronunciation Sampling",
            "lessonflow.pipelines.lesson.sampler",
            "Score student segments by lexical complexity and assess a spread of the hardest ones.",
        ),
        PipelineStage(
            6,
            "Analysis",
            "lessonflow.pipelines.lesson.analysis",
            "Generate one analysis per lesson with prior-lesson context; retry transient failures.",
        ),
        PipelineStage(
            7,
            "Audio Expiry",
            "lessonflow.services.audio_store",
            "Delete backed-up audio once its deleteAt timestamp has passed.",
        ),
    ]

    @classmethod
    def describe(cls) -> Iterable[PipelineStage]:
        """Expose the ordered list of stages for debugging and documentation."""

        return tuple(cls._STAGES)


__all__ = ["LessonPipeline", "PipelineStage"]
