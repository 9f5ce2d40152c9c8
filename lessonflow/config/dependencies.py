"""Wiring of the pipeline stages and their default collaborators.

``get_pipeline`` is the FastAPI dependency the controllers use; tests replace
it through ``app.dependency_overrides`` with a container built from fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lessonflow.config.settings import settings
from lessonflow.pipelines.lesson.aggregator import TranscriptAggregator
from lessonflow.pipelines.lesson.analysis import AnalysisEngine
from lessonflow.pipelines.lesson.auto_complete import LessonAutoCompleter
from lessonflow.pipelines.lesson.capture import LiveCapture
from lessonflow.pipelines.lesson.pronunciation import PronunciationStage
from lessonflow.pipelines.lesson.transcription_retry import TranscriptionRetryEngine
from lessonflow.pipelines.lesson.types import (
    AnalysisGenerator,
    LessonGateway,
    LessonNotifier,
    PresenceLookup,
    PronunciationAssessor,
    SpeechToText,
)
from lessonflow.scheduler import JobScheduler, PeriodicJob
from lessonflow.services.analysis_repository import AnalysisRepository
from lessonflow.services.audio_store import AudioStore
from lessonflow.services.transcript_repository import TranscriptRepository

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    audio_store: AudioStore
    aggregator: TranscriptAggregator
    capture: LiveCapture
    transcription_retry: TranscriptionRetryEngine
    analysis: AnalysisEngine
    auto_complete: LessonAutoCompleter
    scheduler: JobScheduler


def build_scheduler(services: PipelineServices) -> JobScheduler:
    """The four sweeps with their configured cadences."""

    config = settings.pipeline
    return JobScheduler(
        [
            PeriodicJob(
                "audio_sweep",
                services.audio_store.sweep_expired,
                interval_seconds=config.audio_sweep_interval_seconds,
            ),
            PeriodicJob(
                "transcription_retry",
                services.transcription_retry.retry_failed_transcriptions,
                interval_seconds=config.transcription_retry_interval_seconds,
                offset_seconds=config.transcription_retry_offset_seconds,
            ),
            PeriodicJob(
                "analysis_retry",
                services.analysis.retry_failed_analyses,
                interval_seconds=config.analysis_retry_interval_seconds,
                offset_seconds=config.analysis_retry_offset_seconds,
            ),
            PeriodicJob(
                "auto_complete",
                services.auto_complete.auto_complete_transcripts,
                interval_seconds=config.auto_complete_interval_seconds,
            ),
        ]
    )


def build_pipeline(
    *,
    audio_store: AudioStore,
    speech_to_text: SpeechToText,
    generator: AnalysisGenerator,
    lessons: LessonGateway,
    assessor: Optional[PronunciationAssessor] = None,
    presence: Optional[PresenceLookup] = None,
    notifier: Optional[LessonNotifier] = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> PipelineServices:
    transcripts = TranscriptRepository(session_factory)
    analyses = AnalysisRepository(session_factory)
    aggregator = TranscriptAggregator(transcripts)
    pronunciation = (
        PronunciationStage(assessor, audio_store) if assessor is not None else None
    )
    analysis = AnalysisEngine(analyses, transcripts, generator, pronunciation)
    services = PipelineServices(
        audio_store=audio_store,
        aggregator=aggregator,
        capture=LiveCapture(aggregator, audio_store, speech_to_text, lessons),
        transcription_retry=TranscriptionRetryEngine(transcripts, audio_store, speech_to_text),
        analysis=analysis,
        auto_complete=LessonAutoCompleter(aggregator, lessons, analysis, presence, notifier),
        scheduler=JobScheduler(),
    )
    services.scheduler = build_scheduler(services)
    return services


_PIPELINE: PipelineServices | None = None


def get_pipeline() -> PipelineServices:
    """Lazily build the production pipeline on first use."""

    global _PIPELINE
    if _PIPELINE is None:
        from lessonflow.services.analysis_generator import BedrockAnalysisGenerator
        from lessonflow.services.audio_store import get_audio_store
        from lessonflow.services.lessons import (
            InMemoryPresenceRegistry,
            LoggingNotifier,
            SqlLessonGateway,
        )
        from lessonflow.services.transcribe import get_transcribe_service

        assessor = None
        if settings.openai.enabled and settings.openai.api_key:
            from lessonflow.services.pronunciation import OpenAIPronunciationAssessor

            assessor = OpenAIPronunciationAssessor()
        else:
            logger.info("Pronunciation assessment disabled (no OpenAI key)")

        _PIPELINE = build_pipeline(
            audio_store=get_audio_store(),
            speech_to_text=get_transcribe_service(),
            generator=BedrockAnalysisGenerator(),
            lessons=SqlLessonGateway(),
            assessor=assessor,
            presence=InMemoryPresenceRegistry(),
            notifier=LoggingNotifier(),
        )
    return _PIPELINE


def set_pipeline(services: PipelineServices | None) -> None:
    global _PIPELINE
    _PIPELINE = services


__all__ = [
    "PipelineServices",
    "build_pipeline",
    "build_scheduler",
    "get_pipeline",
    "set_pipeline",
]
