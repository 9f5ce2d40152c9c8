"""HTTP surface exercised through the FastAPI test client with fake providers."""

from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from lessonflow.config.dependencies import build_pipeline, get_pipeline
from lessonflow.database import create_engine_for, create_session_factory, init_models
from lessonflow.main import app
from lessonflow.pipelines.lesson.errors import PermanentFailureError
from lessonflow.services.lessons import SqlLessonGateway

from conftest import FakeAnalysisGenerator, FakeAudioStore, FakeSpeechToText


@pytest.fixture
def generator() -> FakeAnalysisGenerator:
    return FakeAnalysisGenerator()


@pytest.fixture
def client(tmp_path, generator):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    asyncio.run(init_models(bind=engine))
    session_factory = create_session_factory(engine)
    services = build_pipeline(
        audio_store=FakeAudioStore(),
        speech_to_text=FakeSpeechToText(),
        generator=generator,
        lessons=SqlLessonGateway(session_factory),
        session_factory=session_factory,
    )
    app.dependency_overrides[get_pipeline] = lambda: services

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _start(client: TestClient, language: str = "Spanish lesson"):
    return client.post(
        "/transcripts",
        json={
            "lesson_id": str(uuid4()),
            "student_id": "student-1",
            "tutor_id": "tutor-1",
            "language": language,
            "start_time": "2026-03-02T15:00:00Z",
        },
    )


def _upload(client: TestClient, transcript_id: str, index: int = 0, data: bytes = b"audio-bytes"):
    return client.post(
        f"/transcripts/{transcript_id}/chunks",
        data={"chunk_index": str(index), "speaker": "student"},
        files={"audio_file": ("chunk.webm", data, "audio/webm")},
    )


def test_live_lesson_round_trip(client: TestClient) -> None:
    started = _start(client)
    assert started.status_code == 201
    transcript = started.json()
    assert transcript["status"] == "recording"

    uploaded = _upload(client, transcript["id"])
    assert uploaded.status_code == 201
    body = uploaded.json()
    assert body["backed_up"] is True
    assert body["transcribed"] is True
    assert body["segments_added"] == 1

    closed = client.post(
        f"/transcripts/{transcript['id']}/complete",
        json={"end_time": "2026-03-02T15:50:00Z"},
    )
    assert closed.status_code == 200
    assert closed.json()["analysis_scheduled"] is True
    assert closed.json()["transcript"]["status"] == "completed"

    analysis = client.get(f"/analysis/lessons/{transcript['lesson_id']}")
    assert analysis.status_code == 200
    assert analysis.json()["status"] == "completed"
    assert analysis.json()["analysis"]["topicsDiscussed"] == ["travel"]

    late = _upload(client, transcript["id"], index=1)
    assert late.status_code == 409


def test_permanently_failed_analysis_is_shown_as_unavailable(client, generator) -> None:
    generator.outcomes.append(PermanentFailureError("provider rejected transcript: secret detail"))
    transcript = _start(client).json()
    _upload(client, transcript["id"])
    client.post(f"/transcripts/{transcript['id']}/complete", json={})

    response = client.get(f"/analysis/lessons/{transcript['lesson_id']}")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "failed"
    assert body["message"] == "analysis unavailable"
    assert body["analysis"] is None
    assert "secret detail" not in response.text

    retried = client.post(f"/analysis/{body['id']}/retry")
    assert retried.json()["success"] is False
    assert retried.json()["message"] == "Analysis cannot be retried"


def test_closing_without_student_speech_fails_transcript(client: TestClient) -> None:
    transcript = _start(client).json()

    closed = client.post(f"/transcripts/{transcript['id']}/complete", json={})

    assert closed.status_code == 200
    assert closed.json()["analysis_scheduled"] is False
    assert closed.json()["transcript"]["status"] == "failed"
    assert client.get(f"/analysis/lessons/{transcript['lesson_id']}").status_code == 404
    assert client.post(f"/analysis/lessons/{transcript['lesson_id']}").status_code == 409


def test_validation_and_not_found(client: TestClient) -> None:
    assert _start(client, language="Klingon").status_code == 422
    assert client.get(f"/transcripts/{uuid4()}").status_code == 404
    assert client.post(f"/transcripts/{uuid4()}/retry").status_code == 404
    assert client.post(f"/analysis/{uuid4()}/retry").status_code == 404

    transcript = _start(client).json()
    assert _upload(client, transcript["id"], data=b"").status_code == 400


def test_operator_endpoints(client: TestClient) -> None:
    jobs = client.get("/jobs")
    assert jobs.status_code == 200
    assert {job["name"] for job in jobs.json()} == {
        "audio_sweep",
        "transcription_retry",
        "analysis_retry",
        "auto_complete",
    }
    assert all(job["active"] is False for job in jobs.json())

    assert client.get("/transcripts/retry-stats").json()["pending_retries"] == 0
    assert client.get("/analysis/stats").json()["total_failed"] == 0
    assert client.get("/audio/stats").json()["total_files"] == 0
    assert client.post("/audio/sweep").json() == {"deleted": 0, "errors": 0}


def test_health_and_metrics(client: TestClient) -> None:
    assert client.get("/health").json()["status"] == "healthy"

    client.get("/health")
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text
