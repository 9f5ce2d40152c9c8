"""Analysis engine: claim, attempt accounting and permanent failures."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta
from uuid import uuid4

import pytest

from lessonflow.models import AnalysisStatus, Speaker
from lessonflow.pipelines.lesson.analysis import AnalysisEngine, proficiency_of
from lessonflow.pipelines.lesson.errors import (
    InvalidStateError,
    PermanentFailureError,
    TranscriptNotFoundError,
    TransientProviderError,
)
from lessonflow.pipelines.lesson.pronunciation import PronunciationStage
from lessonflow.pipelines.lesson.types import PronunciationAssessment, WordIssue
from lessonflow.utils.time import utcnow

from conftest import T0, FakeAnalysisGenerator, analysis_payload, student_segment


def _engine(analyses, transcripts, generator, **kwargs):
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("timeout_seconds", 5)
    kwargs.setdefault("prior_limit", 5)
    return AnalysisEngine(analyses, transcripts, generator, **kwargs)


@pytest.fixture
def completed_transcript(aggregator, start_transcript):
    async def _make(*, start_time=T0, **kwargs):
        transcript = await start_transcript(start_time=start_time, **kwargs)
        await aggregator.append_segments(
            transcript.id,
            [
                replace(student_segment(0, "Hola, buenas tardes"), timestamp=start_time),
                replace(
                    student_segment(0, "Ayer fui al mercado con mi hermana"),
                    timestamp=start_time + timedelta(seconds=20),
                ),
            ],
        )
        return await aggregator.freeze(transcript.id, start_time + timedelta(minutes=50))

    return _make


@pytest.mark.asyncio
async def test_two_transient_failures_then_success(analyses, transcripts, completed_transcript):
    transcript = await completed_transcript()
    generator = FakeAnalysisGenerator(
        [
            TransientProviderError("analysis", "throttled"),
            TransientProviderError("analysis", "throttled"),
            analysis_payload("B2"),
        ]
    )
    engine = _engine(analyses, transcripts, generator)

    first = await engine.ensure_analysis(transcript.id)
    assert first.status == AnalysisStatus.FAILED
    assert first.retry_attempts == 1
    assert first.can_retry is True

    second = await engine.retry_failed_analyses()
    assert (second.retried, second.failed) == (1, 1)

    third = await engine.retry_failed_analyses()
    assert (third.retried, third.succeeded) == (1, 1)

    final = await analyses.get_by_lesson(transcript.lesson_id)
    assert final.status == AnalysisStatus.COMPLETED
    assert final.retry_attempts == 3
    assert final.error is None
    assert final.proficiency_level == "B2"
    assert final.payload["topicsDiscussed"] == ["travel"]


@pytest.mark.asyncio
async def test_can_retry_never_returns_to_true(analyses, transcripts, completed_transcript):
    transcript = await completed_transcript()
    generator = FakeAnalysisGenerator([TransientProviderError("analysis", "down")] * 3)
    engine = _engine(analyses, transcripts, generator, max_attempts=2)

    record = await engine.ensure_analysis(transcript.id)
    await engine.retry_failed_analyses()
    exhausted = await analyses.require(record.id)

    assert exhausted.retry_attempts == 2
    assert exhausted.can_retry is False
    assert (await engine.retry_failed_analyses()).retried == 0

    outcome = await engine.retry_analysis(record.id)
    assert outcome.success is False
    assert outcome.message == "Analysis cannot be retried"
    assert len(generator.calls) == 2

    stats = await engine.analysis_stats()
    assert (stats.pending_retries, stats.permanently_failed, stats.total_failed) == (0, 1, 1)


@pytest.mark.asyncio
async def test_permanent_failure_disables_retry_immediately(analyses, transcripts, completed_transcript):
    transcript = await completed_transcript()
    generator = FakeAnalysisGenerator([PermanentFailureError("model refused the transcript")])

    record = await _engine(analyses, transcripts, generator).ensure_analysis(transcript.id)

    assert record.status == AnalysisStatus.FAILED
    assert record.can_retry is False
    assert record.retry_attempts == 1


@pytest.mark.asyncio
async def test_one_analysis_per_lesson(analyses, transcripts, completed_transcript):
    transcript = await completed_transcript()
    generator = FakeAnalysisGenerator()
    engine = _engine(analyses, transcripts, generator)

    first = await engine.ensure_analysis(transcript.id)
    second = await engine.ensure_analysis(transcript.id)
    by_lesson = await engine.ensure_analysis_for_lesson(transcript.lesson_id)

    assert first.id == second.id == by_lesson.id
    assert second.status == AnalysisStatus.COMPLETED
    assert len(generator.calls) == 1

    outcome = await engine.retry_analysis(first.id)
    assert outcome.success is True
    assert outcome.message == "Analysis already completed"


@pytest.mark.asyncio
async def test_concurrent_ensure_runs_generator_once(analyses, transcripts, completed_transcript):
    transcript = await completed_transcript()

    class SlowGenerator(FakeAnalysisGenerator):
        async def analyze(self, *args, **kwargs):
            await asyncio.sleep(0.05)
            return await super().analyze(*args, **kwargs)

    generator = SlowGenerator()
    engine = _engine(analyses, transcripts, generator)

    results = await asyncio.gather(
        engine.ensure_analysis(transcript.id),
        engine.ensure_analysis(transcript.id),
    )

    assert results[0].id == results[1].id
    assert len(generator.calls) == 1


@pytest.mark.asyncio
async def test_only_completed_transcripts_are_analysed(analyses, transcripts, start_transcript):
    transcript = await start_transcript()
    engine = _engine(analyses, transcripts, FakeAnalysisGenerator())

    with pytest.raises(InvalidStateError):
        await engine.ensure_analysis(transcript.id)
    with pytest.raises(TranscriptNotFoundError):
        await engine.ensure_analysis(uuid4())
    assert await analyses.get_by_lesson(transcript.lesson_id) is None


@pytest.mark.asyncio
async def test_missing_transcript_fails_permanently(analyses, transcripts):
    record, created = await analyses.create_or_get(
        lesson_id=uuid4(),
        transcript_id=None,
        student_id="student-1",
        tutor_id="tutor-1",
        language="es",
        lesson_date=T0,
    )
    assert created is True

    outcome = await _engine(analyses, transcripts, FakeAnalysisGenerator()).retry_analysis(record.id)

    assert outcome.success is False
    assert outcome.analysis.status == AnalysisStatus.FAILED
    assert outcome.analysis.can_retry is False


@pytest.mark.asyncio
async def test_empty_transcript_fails_permanently(analyses, transcripts, aggregator, start_transcript):
    transcript = await start_transcript()
    await aggregator.append_segments(
        transcript.id, [student_segment(0, "¿Me oyes?", Speaker.TUTOR)]
    )
    record, _ = await analyses.create_or_get(
        lesson_id=transcript.lesson_id,
        transcript_id=transcript.id,
        student_id=transcript.student_id,
        tutor_id=transcript.tutor_id,
        language=transcript.language,
        lesson_date=transcript.start_time,
    )
    generator = FakeAnalysisGenerator()

    outcome = await _engine(analyses, transcripts, generator).retry_analysis(record.id)

    assert outcome.analysis.can_retry is False
    assert "no student speech" in outcome.analysis.error
    assert generator.calls == []


@pytest.mark.asyncio
async def test_timeout_is_retryable(analyses, transcripts, completed_transcript):
    transcript = await completed_transcript()

    class HangingGenerator(FakeAnalysisGenerator):
        async def analyze(self, *args, **kwargs):
            await asyncio.sleep(1)

    engine = _engine(analyses, transcripts, HangingGenerator(), timeout_seconds=0.01)
    record = await engine.ensure_analysis(transcript.id)

    assert record.status == AnalysisStatus.FAILED
    assert record.can_retry is True
    assert "timed out" in record.error


@pytest.mark.asyncio
async def test_cancelled_run_is_recorded_and_retried(analyses, transcripts, completed_transcript):
    transcript = await completed_transcript()
    started = asyncio.Event()

    class BlockingGenerator(FakeAnalysisGenerator):
        async def analyze(self, *args, **kwargs):
            started.set()
            await asyncio.Event().wait()

    task = asyncio.create_task(
        _engine(analyses, transcripts, BlockingGenerator()).ensure_analysis(transcript.id)
    )
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    interrupted = await analyses.get_by_lesson(transcript.lesson_id)
    assert interrupted.status == AnalysisStatus.FAILED
    assert interrupted.retry_attempts == 1
    assert interrupted.can_retry is True

    report = await _engine(analyses, transcripts, FakeAnalysisGenerator()).retry_failed_analyses()

    assert (report.retried, report.succeeded) == (1, 1)
    assert (await analyses.require(interrupted.id)).status == AnalysisStatus.COMPLETED


@pytest.mark.asyncio
async def test_abandoned_processing_row_is_reclaimed(analyses, transcripts, completed_transcript):
    transcript = await completed_transcript()
    record, _ = await analyses.create_or_get(
        lesson_id=transcript.lesson_id,
        transcript_id=transcript.id,
        student_id=transcript.student_id,
        tutor_id=transcript.tutor_id,
        language=transcript.language,
        lesson_date=transcript.start_time,
    )
    assert await analyses.claim(record.id, max_attempts=3) is True

    generator = FakeAnalysisGenerator()
    fresh = _engine(analyses, transcripts, generator, stale_after_seconds=600)
    assert (await fresh.retry_failed_analyses()).retried == 0
    assert (await fresh.ensure_analysis(transcript.id)).status == AnalysisStatus.PROCESSING
    assert generator.calls == []

    await asyncio.sleep(0.01)
    stale = _engine(analyses, transcripts, generator, stale_after_seconds=0)
    report = await stale.retry_failed_analyses()

    assert (report.retried, report.succeeded) == (1, 1)
    assert (await analyses.require(record.id)).status == AnalysisStatus.COMPLETED


@pytest.mark.asyncio
async def test_prior_analyses_feed_later_lessons(analyses, transcripts, completed_transcript):
    earlier = await completed_transcript(start_time=T0)
    later = await completed_transcript(start_time=T0 + timedelta(days=7))
    generator = FakeAnalysisGenerator([analysis_payload("A2"), analysis_payload("B1")])
    engine = _engine(analyses, transcripts, generator)

    await engine.ensure_analysis(earlier.id)
    await engine.ensure_analysis(later.id)

    assert generator.calls[0]["prior"] == []
    prior = generator.calls[1]["prior"]
    assert [p.proficiency_level for p in prior] == ["A2"]
    assert generator.calls[1]["language"] == "es"
    assert generator.calls[1]["context"].duration_minutes == 50.0


class FakeAssessor:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def assess(self, audio, reference_text, language_code):
        self.calls.append((audio, reference_text, language_code))
        if self.error:
            raise self.error
        return self.result


async def _transcript_with_student_chunk(aggregator, audio_store, start_transcript):
    transcript = await start_transcript()
    stored = await audio_store.put(
        transcript.lesson_id, 1, Speaker.STUDENT, b"student-audio", "audio/webm", now=utcnow()
    )
    await aggregator.register_chunk(
        transcript.id, chunk_index=1, speaker=Speaker.STUDENT, stored=stored, transcribed=True
    )
    await aggregator.append_segments(
        transcript.id,
        [replace(student_segment(3, "El ferrocarril llega tarde"), chunk_index=1)],
    )
    return await aggregator.freeze(transcript.id, T0 + timedelta(minutes=30))


@pytest.mark.asyncio
async def test_pronunciation_is_folded_into_payload(
    analyses, transcripts, aggregator, audio_store, start_transcript
):
    transcript = await _transcript_with_student_chunk(aggregator, audio_store, start_transcript)
    assessor = FakeAssessor(
        PronunciationAssessment(
            overall_score=78,
            accuracy_score=74,
            fluency_score=80,
            prosody_score=70,
            completeness_score=95,
            mispronunciations=(
                WordIssue(word="ferrocarril", score=41, problematic_phonemes=("rr",)),
                WordIssue(word="llega", score=88),
            ),
            feedback="Trill the double r.",
        )
    )
    stage = PronunciationStage(assessor, audio_store, sampling_rate=1.0, threshold=70, timeout_seconds=5)
    generator = FakeAnalysisGenerator()

    record = await _engine(analyses, transcripts, generator, pronunciation=stage).ensure_analysis(
        transcript.id
    )

    assert assessor.calls == [(b"student-audio", "El ferrocarril llega tarde", "es")]
    assert generator.calls[0]["pronunciation"].overall_score == 78
    pronunciation = record.payload["pronunciationAnalysis"]
    assert pronunciation["overallScore"] == 78
    assert [m["word"] for m in pronunciation["mispronunciations"]] == ["ferrocarril"]
    assert pronunciation["segmentsAssessed"] == 1
    assert pronunciation["samplingRate"] == 1.0


@pytest.mark.asyncio
async def test_pronunciation_failure_does_not_fail_analysis(
    analyses, transcripts, aggregator, audio_store, start_transcript
):
    transcript = await _transcript_with_student_chunk(aggregator, audio_store, start_transcript)
    stage = PronunciationStage(
        FakeAssessor(error=TransientProviderError("pronunciation", "boom")),
        audio_store,
        sampling_rate=1.0,
        timeout_seconds=5,
    )

    record = await _engine(
        analyses, transcripts, FakeAnalysisGenerator(), pronunciation=stage
    ).ensure_analysis(transcript.id)

    assert record.status == AnalysisStatus.COMPLETED
    assert "pronunciationAnalysis" not in record.payload


def test_proficiency_of_reads_overall_assessment():
    assert proficiency_of(analysis_payload("C1")) == "C1"
    assert proficiency_of({}) is None
