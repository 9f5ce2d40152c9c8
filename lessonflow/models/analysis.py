"""SQLAlchemy model for generated lesson analyses."""

from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, Uuid
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.dialects.postgresql import JSONB

from lessonflow.models.base import Base
from lessonflow.utils.time import utcnow


class AnalysisStatus(str, Enum):
    """Analysis lifecycle; ``completed`` is never reprocessed."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LessonAnalysis(Base):
    __tablename__ = "lesson_analyses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, nullable=False)
    lesson_id = Column(Uuid, nullable=False, unique=True, index=True)
    transcript_id = Column(Uuid, nullable=True, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    tutor_id = Column(String(64), nullable=False, index=True)
    language = Column(String(64), nullable=False)
    lesson_date = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(
        SqlEnum(
            AnalysisStatus,
            name="analysis_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=AnalysisStatus.PENDING,
        index=True,
    )
    retry_attempts = Column(Integer, nullable=False, default=0)
    can_retry = Column(Boolean, nullable=False, default=True)
    last_retry_attempt = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    proficiency_level = Column(String(8), nullable=True)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


__all__ = ["AnalysisStatus", "LessonAnalysis"]
