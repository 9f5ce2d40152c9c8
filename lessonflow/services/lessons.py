"""Default collaborators around the booked lesson.

``SqlLessonGateway`` reads the ``lessons`` table and performs the finalize
write; presence and notification are in-process stand-ins for the realtime
layer.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Mapping, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lessonflow.models import Lesson, LessonStatus
from lessonflow.pipelines.lesson.errors import PipelineError
from lessonflow.pipelines.lesson.types import BillingSummary, LessonSnapshot
from lessonflow.utils.time import ensure_utc

logger = logging.getLogger(__name__)


class LessonNotFoundError(PipelineError):
    """Raised when a lesson referenced by a transcript does not exist."""


def _snapshot(row: Lesson) -> LessonSnapshot:
    return LessonSnapshot(
        id=row.id,
        student_id=row.student_id,
        tutor_id=row.tutor_id,
        start_time=ensure_utc(row.start_time),
        end_time=ensure_utc(row.end_time),
        status=LessonStatus(row.status).value,
        actual_call_end_time=ensure_utc(row.actual_call_end_time),
    )


def billed_minutes(row: Lesson, end_time: datetime) -> int:
    """Whole minutes from call start, rounded up; booked length when no call start."""

    if row.actual_call_start_time is None:
        return row.duration_minutes
    elapsed = (end_time - ensure_utc(row.actual_call_start_time)).total_seconds()
    return max(0, math.ceil(elapsed / 60))


class SqlLessonGateway:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from lessonflow.database import SessionFactory

            session_factory = SessionFactory
        self._session_factory = session_factory

    async def get(self, lesson_id: UUID) -> Optional[LessonSnapshot]:
        async with self._session_factory() as session:
            row = await session.get(Lesson, lesson_id, populate_existing=True)
            return _snapshot(row) if row is not None else None

    async def finalize(self, lesson_id: UUID, end_time: datetime) -> BillingSummary:
        """Stamp the call end and billing once; later calls only re-assert completion."""

        end_time = ensure_utc(end_time)
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(Lesson, lesson_id, populate_existing=True)
                if row is None:
                    raise LessonNotFoundError(f"Lesson {lesson_id} not found")

                minutes = billed_minutes(row, end_time)
                result = await session.execute(
                    update(Lesson)
                    .where(Lesson.id == lesson_id, Lesson.actual_call_end_time.is_(None))
                    .values(
                        actual_call_end_time=end_time,
                        actual_duration_minutes=minutes,
                        actual_price=row.price,
                        billing_status="charged",
                        status=LessonStatus.COMPLETED,
                    )
                    .execution_options(synchronize_session=False)
                )
                already_finalized = result.rowcount != 1
                if already_finalized:
                    await session.execute(
                        update(Lesson)
                        .where(Lesson.id == lesson_id, Lesson.status != LessonStatus.COMPLETED)
                        .values(status=LessonStatus.COMPLETED)
                        .execution_options(synchronize_session=False)
                    )

            row = await session.get(Lesson, lesson_id, populate_existing=True)
            summary = BillingSummary(
                lesson_id=lesson_id,
                actual_duration_minutes=row.actual_duration_minutes or 0,
                actual_price=row.actual_price if row.actual_price is not None else row.price,
                already_finalized=already_finalized,
            )

        logger.info(
            "Lesson %s finalized: duration=%smin price=%s already=%s",
            lesson_id,
            summary.actual_duration_minutes,
            summary.actual_price,
            already_finalized,
        )
        return summary


class InMemoryPresenceRegistry:
    """``user_id -> channel`` map maintained by whatever owns the live sockets."""

    def __init__(self) -> None:
        self._channels: dict[str, str] = {}

    def register(self, user_id: str, channel: str) -> None:
        self._channels[user_id] = channel

    def unregister(self, user_id: str) -> None:
        self._channels.pop(user_id, None)

    def lookup(self, user_id: str) -> Optional[str]:
        return self._channels.get(user_id)


class LoggingNotifier:
    async def notify(self, channel: str, event: str, payload: Mapping[str, Any]) -> None:
        logger.info("Notify channel=%s event=%s payload=%s", channel, event, dict(payload))


__all__ = [
    "InMemoryPresenceRegistry",
    "LessonNotFoundError",
    "LoggingNotifier",
    "SqlLessonGateway",
    "billed_minutes",
]
