"""SQLAlchemy model for scheduled lessons.

Booking and billing own this table; the pipeline only reads the scheduled
window and performs the idempotent finalize write.
"""

from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, Float, Integer, String, Uuid
from sqlalchemy import Enum as SqlEnum

from lessonflow.models.base import Base
from lessonflow.utils.time import utcnow


class LessonStatus(str, Enum):
    """Lifecycle states of a booked lesson."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Lesson(Base):
    __tablename__ = "lessons"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, nullable=False)
    student_id = Column(String(64), nullable=False, index=True)
    tutor_id = Column(String(64), nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False, default=50)
    price = Column(Float, nullable=False, default=0.0)
    status = Column(
        SqlEnum(
            LessonStatus,
            name="lesson_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=LessonStatus.SCHEDULED,
    )
    actual_call_start_time = Column(DateTime(timezone=True), nullable=True)
    actual_call_end_time = Column(DateTime(timezone=True), nullable=True)
    actual_duration_minutes = Column(Integer, nullable=True)
    actual_price = Column(Float, nullable=True)
    billing_status = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


__all__ = ["Lesson", "LessonStatus"]
