"""SQLAlchemy models for lessons, transcripts and analyses."""

from .base import Base
from .analysis import AnalysisStatus, LessonAnalysis  # noqa: F401
from .lesson import Lesson, LessonStatus  # noqa: F401
from .transcript import (  # noqa: F401
    ACTIVE_TRANSCRIPT_STATUSES,
    AudioChunk,
    ChunkTerminalReason,
    LessonTranscript,
    Speaker,
    TranscriptSegment,
    TranscriptStatus,
)

__all__ = [
    "Base",
    "ACTIVE_TRANSCRIPT_STATUSES",
    "AnalysisStatus",
    "AudioChunk",
    "ChunkTerminalReason",
    "Lesson",
    "LessonAnalysis",
    "LessonStatus",
    "LessonTranscript",
    "Speaker",
    "TranscriptSegment",
    "TranscriptStatus",
]
