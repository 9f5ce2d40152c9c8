"""Pydantic schemas for transcript endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from lessonflow.models import Speaker, TranscriptStatus
from lessonflow.pipelines.lesson.types import ChunkRecord, SegmentRecord, TranscriptRecord


class TranscriptCreateRequest(BaseModel):
    lesson_id: UUID = Field(..., description="Booked lesson this transcript belongs to")
    student_id: str = Field(..., min_length=1)
    tutor_id: str = Field(..., min_length=1)
    language: str = Field(..., description="Lesson language, e.g. 'es' or 'Spanish lesson'")
    start_time: Optional[datetime] = Field(
        default=None, description="Call start; defaults to now"
    )


class TranscriptCompleteRequest(BaseModel):
    end_time: Optional[datetime] = Field(default=None, description="Call end; defaults to now")


class SegmentResponse(BaseModel):
    timestamp: datetime
    speaker: Speaker
    text: str
    confidence: float
    chunk_index: Optional[int] = None

    @classmethod
    def from_record(cls, record: SegmentRecord) -> "SegmentResponse":
        return cls(
            timestamp=record.timestamp,
            speaker=record.speaker,
            text=record.text,
            confidence=record.confidence,
            chunk_index=record.chunk_index,
        )


class ChunkResponse(BaseModel):
    chunk_index: int
    speaker: Speaker
    storage_path: str
    size_bytes: int
    uploaded_at: datetime
    delete_at: datetime
    transcribed: bool
    transcription_attempts: int
    last_error: Optional[str] = None
    terminal_reason: Optional[str] = None

    @classmethod
    def from_record(cls, record: ChunkRecord) -> "ChunkResponse":
        return cls(
            chunk_index=record.chunk_index,
            speaker=record.speaker,
            storage_path=record.storage_path,
            size_bytes=record.size_bytes,
            uploaded_at=record.uploaded_at,
            delete_at=record.delete_at,
            transcribed=record.transcribed,
            transcription_attempts=record.transcription_attempts,
            last_error=record.last_error,
            terminal_reason=record.terminal_reason.value if record.terminal_reason else None,
        )


class TranscriptResponse(BaseModel):
    id: UUID
    lesson_id: UUID
    student_id: str
    tutor_id: str
    language: str
    status: TranscriptStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    failure_reason: Optional[str] = None
    full_text: Optional[str] = None
    total_duration_seconds: Optional[float] = None
    student_speaking_seconds: Optional[float] = None
    tutor_speaking_seconds: Optional[float] = None
    word_count: Optional[int] = None
    segments: list[SegmentResponse] = Field(default_factory=list)
    chunks: list[ChunkResponse] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: TranscriptRecord) -> "TranscriptResponse":
        return cls(
            id=record.id,
            lesson_id=record.lesson_id,
            student_id=record.student_id,
            tutor_id=record.tutor_id,
            language=record.language,
            status=record.status,
            start_time=record.start_time,
            end_time=record.end_time,
            failure_reason=record.failure_reason,
            full_text=record.full_text,
            total_duration_seconds=record.total_duration_seconds,
            student_speaking_seconds=record.student_speaking_seconds,
            tutor_speaking_seconds=record.tutor_speaking_seconds,
            word_count=record.word_count,
            segments=[SegmentResponse.from_record(s) for s in record.segments],
            chunks=[ChunkResponse.from_record(c) for c in record.chunks],
        )


class ChunkUploadResponse(BaseModel):
    transcript_id: UUID
    chunk_index: int
    backed_up: bool = Field(..., description="Whether the audio reached durable storage")
    transcribed: bool
    segments_added: int = 0
    error: Optional[str] = None


class CompleteResponse(BaseModel):
    transcript: TranscriptResponse
    analysis_scheduled: bool
    actual_duration_minutes: Optional[int] = None
    actual_price: Optional[float] = None


class RetryReportResponse(BaseModel):
    retried: int
    succeeded: int
    failed: int


class ChunkRetryStatsResponse(BaseModel):
    pending_retries: int
    exhausted_chunks: int
    expired_chunks: int
    total_transcripts: int
    closed_chunks: int = 0
