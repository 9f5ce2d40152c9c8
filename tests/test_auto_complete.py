"""Auto-completion sweep over transcripts whose lesson already ended."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from lessonflow.models import AnalysisStatus, Lesson, LessonStatus, Speaker, TranscriptStatus
from lessonflow.pipelines.lesson.analysis import AnalysisEngine
from lessonflow.pipelines.lesson.aggregator import NO_STUDENT_SPEECH
from lessonflow.pipelines.lesson.auto_complete import LessonAutoCompleter
from lessonflow.services.lessons import InMemoryPresenceRegistry, SqlLessonGateway

from conftest import T0, FakeAnalysisGenerator, student_segment


class RecordingNotifier:
    def __init__(self, fail_for=None):
        self.sent = []
        self.fail_for = fail_for

    async def notify(self, channel, event, payload):
        if channel == self.fail_for:
            raise ConnectionError("socket closed")
        self.sent.append((channel, event, dict(payload)))


@pytest.fixture
def generator():
    return FakeAnalysisGenerator()


@pytest.fixture
def completer(aggregator, lessons, analyses, transcripts, generator):
    def _make(presence=None, notifier=None):
        engine = AnalysisEngine(
            analyses, transcripts, generator, max_attempts=3, timeout_seconds=5, prior_limit=5
        )
        return LessonAutoCompleter(
            aggregator, lessons, engine, presence, notifier, batch_size=50
        )

    return _make


@pytest.mark.asyncio
async def test_ended_lesson_without_student_speech_fails_transcript(
    completer, aggregator, analyses, add_lesson, start_transcript
):
    lesson_id = await add_lesson()
    transcript = await start_transcript(lesson_id)
    await aggregator.append_segments(
        transcript.id, [student_segment(0, "¿Estás ahí?", Speaker.TUTOR)]
    )

    report = await completer().auto_complete_transcripts(now=T0 + timedelta(minutes=60))

    assert (report.completed, report.skipped, report.analyses_triggered) == (0, 1, 0)
    stored = await aggregator.repository.require(transcript.id)
    assert stored.status == TranscriptStatus.FAILED
    assert stored.failure_reason == NO_STUDENT_SPEECH
    assert await analyses.get_by_lesson(lesson_id) is None


@pytest.mark.asyncio
async def test_ended_lesson_is_frozen_finalized_and_analysed(
    completer, aggregator, analyses, session_factory, generator, add_lesson, start_transcript
):
    lesson_id = await add_lesson(call_started=T0 + timedelta(minutes=2))
    transcript = await start_transcript(lesson_id)
    await aggregator.append_segments(transcript.id, [student_segment(30, "Me gusta cocinar")])
    presence = InMemoryPresenceRegistry()
    presence.register("student-1", "socket-student")
    notifier = RecordingNotifier()
    sweep = completer(presence, notifier)
    now = T0 + timedelta(minutes=55)

    report = await sweep.auto_complete_transcripts(now=now)
    await sweep.drain()

    assert (report.completed, report.analyses_triggered) == (1, 1)
    stored = await aggregator.repository.require(transcript.id)
    assert stored.status == TranscriptStatus.COMPLETED
    assert stored.end_time == now

    async with session_factory() as session:
        lesson = await session.get(Lesson, lesson_id)
        assert LessonStatus(lesson.status) == LessonStatus.COMPLETED
        assert lesson.actual_duration_minutes == 53
        assert lesson.actual_price == 30.0
        assert lesson.billing_status == "charged"

    analysis = await analyses.get_by_lesson(lesson_id)
    assert analysis.status == AnalysisStatus.COMPLETED
    assert len(generator.calls) == 1

    assert notifier.sent == [
        (
            "socket-student",
            "lesson_finalized",
            {"lessonId": str(lesson_id), "endedAt": "2026-03-02T15:55:00.000Z", "reason": "auto_complete"},
        )
    ]


@pytest.mark.asyncio
async def test_lesson_still_running_is_left_alone(completer, aggregator, add_lesson, start_transcript):
    lesson_id = await add_lesson()
    transcript = await start_transcript(lesson_id)
    await aggregator.append_segments(transcript.id, [student_segment(0, "Hola")])

    report = await completer().auto_complete_transcripts(now=T0 + timedelta(minutes=30))

    assert report.skipped == 1
    stored = await aggregator.repository.require(transcript.id)
    assert stored.status == TranscriptStatus.RECORDING


@pytest.mark.asyncio
async def test_missing_lesson_is_skipped(completer, aggregator, start_transcript):
    transcript = await start_transcript(uuid4())
    await aggregator.append_segments(transcript.id, [student_segment(0, "Hola")])

    report = await completer().auto_complete_transcripts(now=T0 + timedelta(days=1))

    assert (report.completed, report.skipped) == (0, 1)


@pytest.mark.asyncio
async def test_failed_notification_does_not_block_completion(
    completer, aggregator, add_lesson, start_transcript
):
    lesson_id = await add_lesson()
    transcript = await start_transcript(lesson_id)
    await aggregator.append_segments(transcript.id, [student_segment(0, "Buenas")])
    presence = InMemoryPresenceRegistry()
    presence.register("student-1", "dead-socket")
    presence.register("tutor-1", "tutor-socket")
    notifier = RecordingNotifier(fail_for="dead-socket")
    sweep = completer(presence, notifier)

    report = await sweep.auto_complete_transcripts(now=T0 + timedelta(hours=1))
    await sweep.drain()

    assert report.completed == 1
    assert [channel for channel, _, _ in notifier.sent] == ["tutor-socket"]


@pytest.mark.asyncio
async def test_second_sweep_does_not_touch_completed_lessons(
    completer, aggregator, generator, add_lesson, start_transcript
):
    lesson_id = await add_lesson()
    transcript = await start_transcript(lesson_id)
    await aggregator.append_segments(transcript.id, [student_segment(0, "Buenas")])
    sweep = completer()

    await sweep.auto_complete_transcripts(now=T0 + timedelta(hours=1))
    await sweep.drain()
    report = await sweep.auto_complete_transcripts(now=T0 + timedelta(hours=2))

    assert (report.completed, report.skipped, report.recovered) == (0, 0, 0)
    assert len(generator.calls) == 1


class FlakyFinalizeGateway(SqlLessonGateway):
    def __init__(self, session_factory, failures=1):
        super().__init__(session_factory)
        self.failures = failures
        self.finalize_calls = 0

    async def finalize(self, lesson_id, end_time):
        self.finalize_calls += 1
        if self.finalize_calls <= self.failures:
            raise ConnectionError("lessons database unavailable")
        return await super().finalize(lesson_id, end_time)


@pytest.mark.asyncio
async def test_finalize_failure_is_repaired_on_next_tick(
    aggregator, analyses, transcripts, session_factory, generator, add_lesson, start_transcript
):
    lesson_id = await add_lesson()
    transcript = await start_transcript(lesson_id)
    await aggregator.append_segments(transcript.id, [student_segment(0, "Buenas tardes")])
    gateway = FlakyFinalizeGateway(session_factory)
    engine = AnalysisEngine(analyses, transcripts, generator, max_attempts=3, timeout_seconds=5)
    sweep = LessonAutoCompleter(aggregator, gateway, engine, batch_size=50)
    ended = T0 + timedelta(hours=1)

    first = await sweep.auto_complete_transcripts(now=ended)
    await sweep.drain()

    assert (first.completed, first.analyses_triggered) == (1, 1)
    assert (await analyses.get_by_lesson(lesson_id)).status == AnalysisStatus.COMPLETED
    async with session_factory() as session:
        assert (await session.get(Lesson, lesson_id)).actual_call_end_time is None

    second = await sweep.auto_complete_transcripts(now=ended + timedelta(minutes=1))

    assert second.recovered == 1
    assert gateway.finalize_calls == 2
    async with session_factory() as session:
        lesson = await session.get(Lesson, lesson_id)
        assert LessonStatus(lesson.status) == LessonStatus.COMPLETED
        assert lesson.billing_status == "charged"

    third = await sweep.auto_complete_transcripts(now=ended + timedelta(minutes=2))
    assert third.recovered == 0
    assert len(generator.calls) == 1


@pytest.mark.asyncio
async def test_frozen_transcript_without_analysis_is_recovered(
    completer, aggregator, analyses, session_factory, add_lesson, start_transcript
):
    lesson_id = await add_lesson()
    transcript = await start_transcript(lesson_id)
    await aggregator.append_segments(transcript.id, [student_segment(0, "Hasta luego")])
    await aggregator.freeze(transcript.id, T0 + timedelta(minutes=50))
    sweep = completer()

    report = await sweep.auto_complete_transcripts(now=T0 + timedelta(hours=1))
    await sweep.drain()

    assert (report.completed, report.recovered, report.analyses_triggered) == (0, 1, 1)
    assert (await analyses.get_by_lesson(lesson_id)).status == AnalysisStatus.COMPLETED
    async with session_factory() as session:
        lesson = await session.get(Lesson, lesson_id)
        assert lesson.actual_duration_minutes == 50
