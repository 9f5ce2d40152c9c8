"""Transcript state machine and freeze metadata."""

from __future__ import annotations

from datetime import timedelta

import pytest

from lessonflow.models import Speaker, TranscriptStatus
from lessonflow.pipelines.lesson.aggregator import build_full_text, estimate_speaking_seconds
from lessonflow.pipelines.lesson.errors import (
    InsufficientDataError,
    InvalidStateError,
    TranscriptNotFoundError,
)

from conftest import T0, student_segment


@pytest.mark.asyncio
async def test_freeze_orders_full_text_by_timestamp_not_append_order(aggregator, start_transcript):
    transcript = await start_transcript()
    await aggregator.append_segments(transcript.id, [student_segment(30, "tercero")])
    await aggregator.append_segments(
        transcript.id,
        [student_segment(0, "primero"), student_segment(10, "segundo", Speaker.TUTOR)],
    )

    frozen = await aggregator.freeze(transcript.id, T0 + timedelta(minutes=50))

    assert frozen.status == TranscriptStatus.COMPLETED
    assert frozen.full_text == "primero segundo tercero"
    assert frozen.total_duration_seconds == 50 * 60
    assert frozen.word_count == 2


@pytest.mark.asyncio
async def test_freeze_is_idempotent(aggregator, start_transcript):
    transcript = await start_transcript()
    await aggregator.append_segments(transcript.id, [student_segment(0, "hola profesor")])

    first = await aggregator.freeze(transcript.id, T0 + timedelta(minutes=10))
    second = await aggregator.freeze(transcript.id, T0 + timedelta(minutes=99))

    assert second.status == TranscriptStatus.COMPLETED
    assert second.end_time == first.end_time
    assert second.full_text == first.full_text


@pytest.mark.asyncio
async def test_append_after_freeze_is_rejected(aggregator, start_transcript):
    transcript = await start_transcript()
    await aggregator.append_segments(transcript.id, [student_segment(0, "hola")])
    await aggregator.freeze(transcript.id, T0 + timedelta(minutes=5))

    with pytest.raises(InvalidStateError):
        await aggregator.append_segments(transcript.id, [student_segment(60, "tarde")])

    stored = await aggregator.repository.require(transcript.id)
    assert [segment.text for segment in stored.segments] == ["hola"]


@pytest.mark.asyncio
async def test_empty_segments_are_dropped(aggregator, start_transcript):
    transcript = await start_transcript()
    appended = await aggregator.append_segments(
        transcript.id, [student_segment(0, "   "), student_segment(1, "vale")]
    )

    assert appended == 1


@pytest.mark.asyncio
async def test_freeze_without_student_speech_raises(aggregator, start_transcript):
    transcript = await start_transcript()
    await aggregator.append_segments(
        transcript.id, [student_segment(0, "Hoy vamos a practicar", Speaker.TUTOR)]
    )

    with pytest.raises(InsufficientDataError):
        await aggregator.freeze(transcript.id, T0 + timedelta(minutes=5))

    stored = await aggregator.repository.require(transcript.id)
    assert stored.status == TranscriptStatus.RECORDING


@pytest.mark.asyncio
async def test_mark_failed_transitions(aggregator, start_transcript):
    transcript = await start_transcript()

    failed = await aggregator.mark_failed(transcript.id, "No student speech detected")
    again = await aggregator.mark_failed(transcript.id, "second call")

    assert failed.status == TranscriptStatus.FAILED
    assert again.failure_reason == "No student speech detected"
    with pytest.raises(InvalidStateError):
        await aggregator.freeze(transcript.id, T0)


@pytest.mark.asyncio
async def test_mark_failed_on_completed_raises(aggregator, start_transcript):
    transcript = await start_transcript()
    await aggregator.append_segments(transcript.id, [student_segment(0, "hola")])
    await aggregator.freeze(transcript.id, T0 + timedelta(minutes=1))

    with pytest.raises(InvalidStateError):
        await aggregator.mark_failed(transcript.id, "too late")


@pytest.mark.asyncio
async def test_begin_processing_is_compare_and_set(aggregator, start_transcript):
    transcript = await start_transcript()

    assert await aggregator.begin_processing(transcript.id) is True
    assert await aggregator.begin_processing(transcript.id) is False
    await aggregator.append_segments(transcript.id, [student_segment(0, "sigo aquí")])


@pytest.mark.asyncio
async def test_unknown_transcript(aggregator):
    from uuid import uuid4

    with pytest.raises(TranscriptNotFoundError):
        await aggregator.append_segments(uuid4(), [student_segment(0, "hola")])


def test_speaking_time_estimate_has_floor():
    assert estimate_speaking_seconds("sí") == 1.0
    assert estimate_speaking_seconds("uno dos tres cuatro cinco") == 2.0


def test_build_full_text_skips_blank_segments():
    assert build_full_text([]) == ""
