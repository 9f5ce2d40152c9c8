"""Lesson finalize: billed once, idempotent afterwards."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from lessonflow.models import Lesson, LessonStatus
from lessonflow.services.lessons import (
    InMemoryPresenceRegistry,
    LessonNotFoundError,
    billed_minutes,
)

from conftest import T0


@pytest.mark.asyncio
async def test_finalize_bills_from_call_start(lessons, add_lesson):
    lesson_id = await add_lesson(call_started=T0 + timedelta(minutes=3), price=42.5)

    summary = await lessons.finalize(lesson_id, T0 + timedelta(minutes=47, seconds=10))

    assert summary.already_finalized is False
    assert summary.actual_duration_minutes == 45
    assert summary.actual_price == 42.5


@pytest.mark.asyncio
async def test_finalize_without_call_start_uses_booked_length(lessons, add_lesson):
    lesson_id = await add_lesson(duration_minutes=25)

    summary = await lessons.finalize(lesson_id, T0 + timedelta(minutes=40))

    assert summary.actual_duration_minutes == 25


@pytest.mark.asyncio
async def test_second_finalize_keeps_first_end_time(lessons, add_lesson, session_factory):
    lesson_id = await add_lesson(call_started=T0)
    await lessons.finalize(lesson_id, T0 + timedelta(minutes=50))

    again = await lessons.finalize(lesson_id, T0 + timedelta(minutes=90))

    assert again.already_finalized is True
    assert again.actual_duration_minutes == 50
    snapshot = await lessons.get(lesson_id)
    assert snapshot.status == LessonStatus.COMPLETED.value
    assert snapshot.actual_call_end_time == T0 + timedelta(minutes=50)


@pytest.mark.asyncio
async def test_finalize_unknown_lesson(lessons):
    with pytest.raises(LessonNotFoundError):
        await lessons.finalize(uuid4(), T0)
    assert await lessons.get(uuid4()) is None


def test_billed_minutes_never_negative():
    row = Lesson(duration_minutes=50, actual_call_start_time=T0 + timedelta(minutes=5))

    assert billed_minutes(row, T0) == 0
    assert billed_minutes(row, T0 + timedelta(minutes=5, seconds=1)) == 1


def test_presence_registry():
    registry = InMemoryPresenceRegistry()
    registry.register("student-1", "socket-a")
    registry.register("student-1", "socket-b")

    assert registry.lookup("student-1") == "socket-b"
    registry.unregister("student-1")
    assert registry.lookup("student-1") is None
