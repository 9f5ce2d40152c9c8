"""Typed containers and collaborator protocols shared across the lesson pipeline.

These live in their own module so the stages (`aggregator`,
`transcription_retry`, `sampler`, `analysis`, `auto_complete`) and the
repositories can import them without creating circular dependencies.
Repositories hand out frozen snapshots rather than live ORM rows so stages
never trigger lazy loads outside a session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence
from uuid import UUID

from lessonflow.models import (
    AnalysisStatus,
    ChunkTerminalReason,
    Speaker,
    TranscriptStatus,
)


@dataclass(frozen=True)
class TimedText:
    """One utterance returned by a speech-to-text provider, offsets in seconds."""

    start: float
    end: float
    text: str
    confidence: Optional[float] = None


@dataclass(frozen=True)
class SpeechResult:
    segments: tuple[TimedText, ...] = ()


@dataclass(frozen=True)
class NewSegment:
    """Segment about to be appended to a transcript."""

    timestamp: datetime
    speaker: Speaker
    text: str
    confidence: float = 1.0
    language: str = ""
    chunk_index: Optional[int] = None


@dataclass(frozen=True)
class SegmentRecord:
    id: int
    timestamp: datetime
    speaker: Speaker
    text: str
    confidence: float
    language: str
    chunk_index: Optional[int] = None


@dataclass(frozen=True)
class ChunkRecord:
    id: int
    transcript_id: UUID
    chunk_index: int
    speaker: Speaker
    storage_path: str
    size_bytes: int
    uploaded_at: datetime
    delete_at: datetime
    transcribed: bool
    transcription_attempts: int
    last_transcription_attempt: Optional[datetime] = None
    last_error: Optional[str] = None
    terminal_reason: Optional[ChunkTerminalReason] = None


@dataclass(frozen=True)
class TranscriptRecord:
    id: UUID
    lesson_id: UUID
    student_id: str
    tutor_id: str
    language: str
    start_time: datetime
    status: TranscriptStatus
    end_time: Optional[datetime] = None
    failure_reason: Optional[str] = None
    full_text: Optional[str] = None
    total_duration_seconds: Optional[float] = None
    student_speaking_seconds: Optional[float] = None
    tutor_speaking_seconds: Optional[float] = None
    word_count: Optional[int] = None
    segments: tuple[SegmentRecord, ...] = ()
    chunks: tuple[ChunkRecord, ...] = ()

    @property
    def student_segments(self) -> tuple[SegmentRecord, ...]:
        return tuple(s for s in self.segments if s.speaker == Speaker.STUDENT)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TranscriptStatus.COMPLETED, TranscriptStatus.FAILED)


@dataclass(frozen=True)
class TranscriptSummary:
    """Values written when a transcript is frozen."""

    full_text: str
    total_duration_seconds: float
    student_speaking_seconds: float
    tutor_speaking_seconds: float
    word_count: int


@dataclass(frozen=True)
class AnalysisRecord:
    id: UUID
    lesson_id: UUID
    student_id: str
    tutor_id: str
    language: str
    lesson_date: datetime
    status: AnalysisStatus
    retry_attempts: int
    can_retry: bool
    transcript_id: Optional[UUID] = None
    last_retry_attempt: Optional[datetime] = None
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None
    proficiency_level: Optional[str] = None
    payload: Optional[Mapping[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class WordIssue:
    word: str
    score: float
    error_type: str = "pronunciation"
    problematic_phonemes: tuple[str, ...] = ()


@dataclass(frozen=True)
class PronunciationAssessment:
    """Scores in [0, 100]; ``mispronunciations`` holds words below threshold."""

    overall_score: float
    accuracy_score: float
    fluency_score: float
    prosody_score: float
    completeness_score: float
    mispronunciations: tuple[WordIssue, ...] = ()
    feedback: Optional[str] = None
    specific_issues: tuple[str, ...] = ()
    assessment_method: str = "gpt4-audio"


@dataclass(frozen=True)
class LessonSnapshot:
    """The slice of a booked lesson the pipeline reads."""

    id: UUID
    student_id: str
    tutor_id: str
    start_time: datetime
    end_time: datetime
    status: str
    actual_call_end_time: Optional[datetime] = None


@dataclass(frozen=True)
class BillingSummary:
    lesson_id: UUID
    actual_duration_minutes: int
    actual_price: float
    already_finalized: bool = False


@dataclass(frozen=True)
class RetryReport:
    retried: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass(frozen=True)
class ChunkRetryStats:
    pending_retries: int
    exhausted_chunks: int
    expired_chunks: int
    total_transcripts: int
    closed_chunks: int = 0


@dataclass(frozen=True)
class AnalysisRetryStats:
    pending_retries: int
    permanently_failed: int
    total_failed: int


@dataclass(frozen=True)
class AutoCompleteReport:
    completed: int = 0
    skipped: int = 0
    analyses_triggered: int = 0
    recovered: int = 0


@dataclass(frozen=True)
class StudentContext:
    """Learner details handed to the analysis generator."""

    student_id: str
    tutor_id: str
    lesson_date: datetime
    duration_minutes: Optional[float] = None
    native_language: str = "en"
    extra: Mapping[str, Any] = field(default_factory=dict)


class SpeechToText(Protocol):
    async def transcribe(
        self,
        data: bytes,
        language_code: str,
        speaker_hint: Speaker,
    ) -> SpeechResult:
        ...


class AnalysisGenerator(Protocol):
    async def analyze(
        self,
        segments: Sequence[SegmentRecord],
        language: str,
        student_context: StudentContext,
        prior_analyses: Sequence[AnalysisRecord],
        pronunciation: Optional[PronunciationAssessment] = None,
    ) -> dict[str, Any]:
        ...


class PronunciationAssessor(Protocol):
    async def assess(
        self,
        audio: bytes,
        reference_text: str,
        language_code: str,
    ) -> Optional[PronunciationAssessment]:
        ...


class LessonGateway(Protocol):
    async def get(self, lesson_id: UUID) -> Optional[LessonSnapshot]:
        ...

    async def finalize(self, lesson_id: UUID, end_time: datetime) -> BillingSummary:
        ...


class PresenceLookup(Protocol):
    def lookup(self, user_id: str) -> Optional[str]:
        ...


class LessonNotifier(Protocol):
    async def notify(self, channel: str, event: str, payload: Mapping[str, Any]) -> None:
        ...


__all__ = [
    "AnalysisGenerator",
    "AnalysisRecord",
    "AnalysisRetryStats",
    "AutoCompleteReport",
    "BillingSummary",
    "ChunkRecord",
    "ChunkRetryStats",
    "LessonGateway",
    "LessonNotifier",
    "LessonSnapshot",
    "NewSegment",
    "PresenceLookup",
    "PronunciationAssessment",
    "PronunciationAssessor",
    "RetryReport",
    "SegmentRecord",
    "SpeechResult",
    "SpeechToText",
    "StudentContext",
    "TimedText",
    "TranscriptRecord",
    "TranscriptSummary",
    "WordIssue",
]
