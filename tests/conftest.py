"""Shared fixtures: a throwaway SQLite database and fake providers."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence
from uuid import UUID, uuid4

os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PIPELINE_SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_FILE", "logs/test-app.log")
os.environ.setdefault("PIPELINE_LOG_FILE", "logs/test-pipeline.log")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from lessonflow.database import create_engine_for, create_session_factory, init_models  # noqa: E402
from lessonflow.models import Lesson, LessonStatus, Speaker  # noqa: E402
from lessonflow.pipelines.lesson.aggregator import TranscriptAggregator  # noqa: E402
from lessonflow.pipelines.lesson.types import (  # noqa: E402
    NewSegment,
    SpeechResult,
    StudentContext,
    TimedText,
)
from lessonflow.services.analysis_repository import AnalysisRepository  # noqa: E402
from lessonflow.services.audio_store import (  # noqa: E402
    AudioNotFoundError,
    AudioStoreError,
    StorageStats,
    StoredAudio,
    SweepReport,
)
from lessonflow.services.lessons import SqlLessonGateway  # noqa: E402
from lessonflow.services.transcript_repository import TranscriptRepository  # noqa: E402

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class FakeAudioStore:
    """In-memory stand-in for the S3 store with the same async surface."""

    def __init__(self, retention_hours: int = 48) -> None:
        self.objects: dict[str, bytes] = {}
        self.delete_at: dict[str, datetime] = {}
        self.retention = timedelta(hours=retention_hours)
        self.fail_backup = False

    async def put(self, lesson_id, chunk_index, speaker, data, mime_type, *, now=None) -> StoredAudio:
        if self.fail_backup:
            raise AudioStoreError("bucket unavailable")
        uploaded_at = now or T0
        speaker_value = speaker.value if isinstance(speaker, Speaker) else speaker
        path = f"s3://test-bucket/lessons/{lesson_id}/chunk-{chunk_index}-{speaker_value}.webm"
        self.objects[path] = data
        self.delete_at[path] = uploaded_at + self.retention
        return StoredAudio(
            path=path,
            size_bytes=len(data),
            uploaded_at=uploaded_at,
            delete_at=uploaded_at + self.retention,
        )

    async def backup(self, lesson_id, chunk_index, speaker, data, mime_type, *, now=None):
        try:
            return await self.put(lesson_id, chunk_index, speaker, data, mime_type, now=now)
        except AudioStoreError:
            return None

    async def get(self, path: str) -> bytes:
        if path not in self.objects:
            raise AudioNotFoundError(f"Audio not found: {path}")
        return self.objects[path]

    async def delete(self, path: str) -> bool:
        self.objects.pop(path, None)
        self.delete_at.pop(path, None)
        return True

    async def delete_all_for_lesson(self, lesson_id) -> int:
        doomed = [path for path in self.objects if f"/lessons/{lesson_id}/" in path]
        for path in doomed:
            await self.delete(path)
        return len(doomed)

    async def sweep_expired(self, now: Optional[datetime] = None) -> SweepReport:
        cutoff = now or T0
        doomed = [path for path, when in self.delete_at.items() if when <= cutoff]
        for path in doomed:
            await self.delete(path)
        return SweepReport(deleted=len(doomed), errors=0)

    async def stats(self) -> StorageStats:
        return StorageStats(
            total_files=len(self.objects),
            total_size_bytes=sum(len(data) for data in self.objects.values()),
        )


class FakeSpeechToText:
    """Returns queued results or raises queued exceptions, one per call."""

    def __init__(self, outcomes: Sequence[Any] = ()) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[bytes, str, Speaker]] = []

    async def transcribe(self, data: bytes, language_code: str, speaker_hint: Speaker) -> SpeechResult:
        self.calls.append((data, language_code, speaker_hint))
        outcome = self.outcomes.pop(0) if self.outcomes else speech_result("hola")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeAnalysisGenerator:
    def __init__(self, outcomes: Sequence[Any] = ()) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def analyze(self, segments, language, student_context: StudentContext, prior_analyses, pronunciation=None):
        self.calls.append(
            {
                "segments": list(segments),
                "language": language,
                "context": student_context,
                "prior": list(prior_analyses),
                "pronunciation": pronunciation,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else analysis_payload()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def speech_result(*texts: str, start: float = 0.0, step: float = 2.0) -> SpeechResult:
    return SpeechResult(
        segments=tuple(
            TimedText(start=start + i * step, end=start + i * step + 1.5, text=text, confidence=0.9)
            for i, text in enumerate(texts)
        )
    )


def analysis_payload(level: str = "B1") -> dict[str, Any]:
    return {
        "overallAssessment": {
            "proficiencyLevel": level,
            "confidence": 80,
            "summary": "Talked about travel plans.",
        },
        "grammarAnalysis": {"accuracyScore": 72},
        "fluencyAnalysis": {"overallFluencyScore": 65},
        "topicsDiscussed": ["travel"],
    }


def student_segment(offset_seconds: float, text: str, speaker: Speaker = Speaker.STUDENT) -> NewSegment:
    return NewSegment(
        timestamp=T0 + timedelta(seconds=offset_seconds),
        speaker=speaker,
        text=text,
        language="es",
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'lessonflow.db'}")
    await init_models(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def transcripts(session_factory) -> TranscriptRepository:
    return TranscriptRepository(session_factory)


@pytest.fixture
def analyses(session_factory) -> AnalysisRepository:
    return AnalysisRepository(session_factory)


@pytest.fixture
def aggregator(transcripts) -> TranscriptAggregator:
    return TranscriptAggregator(transcripts)


@pytest.fixture
def lessons(session_factory) -> SqlLessonGateway:
    return SqlLessonGateway(session_factory)


@pytest.fixture
def audio_store() -> FakeAudioStore:
    return FakeAudioStore()


@pytest.fixture
def add_lesson(session_factory) -> Callable[..., Any]:
    async def _add(
        *,
        lesson_id: UUID | None = None,
        student_id: str = "student-1",
        tutor_id: str = "tutor-1",
        start_time: datetime = T0,
        duration_minutes: int = 50,
        price: float = 30.0,
        call_started: datetime | None = None,
    ) -> UUID:
        lesson_id = lesson_id or uuid4()
        async with session_factory() as session:
            session.add(
                Lesson(
                    id=lesson_id,
                    student_id=student_id,
                    tutor_id=tutor_id,
                    start_time=start_time,
                    end_time=start_time + timedelta(minutes=duration_minutes),
                    duration_minutes=duration_minutes,
                    price=price,
                    status=LessonStatus.IN_PROGRESS,
                    actual_call_start_time=call_started,
                )
            )
            await session.commit()
        return lesson_id

    return _add


@pytest.fixture
def start_transcript(aggregator) -> Callable[..., Any]:
    async def _start(
        lesson_id: UUID | None = None,
        *,
        student_id: str = "student-1",
        tutor_id: str = "tutor-1",
        language: str = "Spanish",
        start_time: datetime = T0,
    ):
        return await aggregator.start(
            lesson_id=lesson_id or uuid4(),
            student_id=student_id,
            tutor_id=tutor_id,
            language=language,
            start_time=start_time,
        )

    return _start
