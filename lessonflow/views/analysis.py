"""Pydantic schemas for analysis endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from lessonflow.models import AnalysisStatus
from lessonflow.pipelines.lesson.analysis import UNAVAILABLE_MESSAGE
from lessonflow.pipelines.lesson.types import AnalysisRecord


class AnalysisResponse(BaseModel):
    """User-facing view; raw provider errors are never exposed."""

    id: UUID
    lesson_id: UUID
    status: AnalysisStatus
    lesson_date: datetime
    language: str
    proficiency_level: Optional[str] = None
    processing_time_ms: Optional[int] = None
    analysis: Optional[dict[str, Any]] = Field(
        default=None, description="Generated analysis payload once completed"
    )
    message: Optional[str] = None

    @classmethod
    def from_record(cls, record: AnalysisRecord) -> "AnalysisResponse":
        message = None
        if record.status == AnalysisStatus.FAILED:
            message = UNAVAILABLE_MESSAGE if not record.can_retry else "analysis pending retry"
        elif record.status in (AnalysisStatus.PENDING, AnalysisStatus.PROCESSING):
            message = "analysis in progress"
        return cls(
            id=record.id,
            lesson_id=record.lesson_id,
            status=record.status,
            lesson_date=record.lesson_date,
            language=record.language,
            proficiency_level=record.proficiency_level,
            processing_time_ms=record.processing_time_ms,
            analysis=dict(record.payload) if record.status == AnalysisStatus.COMPLETED and record.payload else None,
            message=message,
        )


class AnalysisRetryResponse(BaseModel):
    success: bool
    message: str
    analysis: Optional[AnalysisResponse] = None


class AnalysisStatsResponse(BaseModel):
    pending_retries: int
    permanently_failed: int
    total_failed: int
