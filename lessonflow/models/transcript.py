"""SQLAlchemy models for lesson transcripts, their segments and audio chunks."""

from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import relationship

from lessonflow.models.base import Base
from lessonflow.utils.time import utcnow


def _enum_values(enum: type[Enum]) -> list[str]:
    return [member.value for member in enum]


class Speaker(str, Enum):
    """Participants whose audio is captured separately."""

    STUDENT = "student"
    TUTOR = "tutor"


class TranscriptStatus(str, Enum):
    """Transcript lifecycle; ``completed`` and ``failed`` are terminal."""

    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_TRANSCRIPT_STATUSES = (TranscriptStatus.RECORDING, TranscriptStatus.PROCESSING)


class ChunkTerminalReason(str, Enum):
    """Why an untranscribed chunk stopped being retried."""

    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    CLOSED = "closed"


class LessonTranscript(Base):
    __tablename__ = "lesson_transcripts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, nullable=False)
    lesson_id = Column(Uuid, nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    tutor_id = Column(String(64), nullable=False, index=True)
    language = Column(String(64), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    status = Column(
        SqlEnum(TranscriptStatus, name="transcript_status", values_callable=_enum_values),
        nullable=False,
        default=TranscriptStatus.RECORDING,
        index=True,
    )
    failure_reason = Column(Text, nullable=True)
    full_text = Column(Text, nullable=True)
    total_duration_seconds = Column(Float, nullable=True)
    student_speaking_seconds = Column(Float, nullable=True)
    tutor_speaking_seconds = Column(Float, nullable=True)
    word_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    segments = relationship(
        "TranscriptSegment",
        back_populates="transcript",
        cascade="all, delete-orphan",
        order_by="(TranscriptSegment.timestamp, TranscriptSegment.id)",
    )
    audio_chunks = relationship(
        "AudioChunk",
        back_populates="transcript",
        cascade="all, delete-orphan",
        order_by="AudioChunk.chunk_index",
    )


class TranscriptSegment(Base):
    __tablename__ = "transcript_segments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transcript_id = Column(
        ForeignKey("lesson_transcripts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    speaker = Column(
        SqlEnum(Speaker, name="speaker", values_callable=_enum_values),
        nullable=False,
    )
    text = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False, default=1.0)
    language = Column(String(64), nullable=False)
    chunk_index = Column(Integer, nullable=True)

    transcript = relationship("LessonTranscript", back_populates="segments")


class AudioChunk(Base):
    __tablename__ = "audio_chunks"
    __table_args__ = (
        UniqueConstraint("transcript_id", "chunk_index", name="uq_audio_chunks_transcript_index"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    transcript_id = Column(
        ForeignKey("lesson_transcripts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chunk_index = Column(Integer, nullable=False)
    speaker = Column(
        SqlEnum(Speaker, name="speaker", values_callable=_enum_values),
        nullable=False,
    )
    storage_path = Column(String(1024), nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    uploaded_at = Column(DateTime(timezone=True), nullable=False)
    delete_at = Column(DateTime(timezone=True), nullable=False, index=True)
    transcribed = Column(Boolean, nullable=False, default=False, index=True)
    transcription_attempts = Column(Integer, nullable=False, default=0)
    last_transcription_attempt = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    terminal_reason = Column(
        SqlEnum(
            ChunkTerminalReason,
            name="chunk_terminal_reason",
            values_callable=_enum_values,
        ),
        nullable=True,
    )

    transcript = relationship("LessonTranscript", back_populates="audio_chunks")


__all__ = [
    "ACTIVE_TRANSCRIPT_STATUSES",
    "AudioChunk",
    "ChunkTerminalReason",
    "LessonTranscript",
    "Speaker",
    "TranscriptSegment",
    "TranscriptStatus",
]
