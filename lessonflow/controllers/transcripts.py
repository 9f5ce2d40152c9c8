"""Transcript endpoints: live capture, close, manual retry and retry stats.

Domain errors propagate to the handlers registered in ``lessonflow.main``
(409 for invalid state, 404 for unknown ids, 422 for insufficient data).
"""

import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, UploadFile, status

from lessonflow.config.dependencies import PipelineServices
from lessonflow.controllers.dependencies import PipelineDep
from lessonflow.models import Speaker
from lessonflow.pipelines.lesson.errors import UnsupportedLanguageError
from lessonflow.services.language import normalize_language
from lessonflow.utils.time import utcnow
from lessonflow.views.transcripts import (
    ChunkRetryStatsResponse,
    ChunkUploadResponse,
    CompleteResponse,
    RetryReportResponse,
    TranscriptCompleteRequest,
    TranscriptCreateRequest,
    TranscriptResponse,
)

router = APIRouter(prefix="/transcripts", tags=["transcripts"])

logger = logging.getLogger(__name__)

MAX_CHUNK_BYTES = 25 * 1024 * 1024

_CHUNK_INDEX_FORM = Form(..., ge=0)
_SPEAKER_FORM = Form(...)
_TRANSCRIBE_FORM = Form(True)
_AUDIO_FILE_UPLOAD = File(...)


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_transcript(payload: TranscriptCreateRequest, pipeline: PipelineDep) -> TranscriptResponse:
    """Open a transcript in ``recording`` for a lesson that is starting."""

    try:
        normalize_language(payload.language)
    except UnsupportedLanguageError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from None

    record = await pipeline.aggregator.start(
        lesson_id=payload.lesson_id,
        student_id=payload.student_id,
        tutor_id=payload.tutor_id,
        language=payload.language,
        start_time=payload.start_time or utcnow(),
    )
    return TranscriptResponse.from_record(record)


@router.get("/retry-stats")
async def retry_stats(pipeline: PipelineDep) -> ChunkRetryStatsResponse:
    stats = await pipeline.transcription_retry.retry_stats()
    return ChunkRetryStatsResponse(
        pending_retries=stats.pending_retries,
        exhausted_chunks=stats.exhausted_chunks,
        expired_chunks=stats.expired_chunks,
        total_transcripts=stats.total_transcripts,
        closed_chunks=stats.closed_chunks,
    )


@router.get("/{transcript_id}")
async def get_transcript(transcript_id: UUID, pipeline: PipelineDep) -> TranscriptResponse:
    record = await pipeline.aggregator.repository.require(transcript_id)
    return TranscriptResponse.from_record(record)


@router.post("/{transcript_id}/chunks", status_code=status.HTTP_201_CREATED)
async def upload_chunk(
    transcript_id: UUID,
    pipeline: PipelineDep,
    chunk_index: int = _CHUNK_INDEX_FORM,
    speaker: Speaker = _SPEAKER_FORM,
    transcribe: bool = _TRANSCRIBE_FORM,
    audio_file: UploadFile = _AUDIO_FILE_UPLOAD,
) -> ChunkUploadResponse:
    """Back up an audio chunk and, unless disabled, transcribe it right away."""

    data = await audio_file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Audio chunk is empty")
    if len(data) > MAX_CHUNK_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="Audio chunk is too large",
        )

    result = await pipeline.capture.ingest_chunk(
        transcript_id,
        chunk_index=chunk_index,
        speaker=speaker,
        data=data,
        mime_type=audio_file.content_type,
        transcribe=transcribe,
    )
    return ChunkUploadResponse(
        transcript_id=transcript_id,
        chunk_index=chunk_index,
        backed_up=result.backed_up,
        transcribed=result.transcribed,
        segments_added=result.segments_added,
        error=result.error,
    )


@router.post("/{transcript_id}/retry")
async def retry_transcript(transcript_id: UUID, pipeline: PipelineDep) -> RetryReportResponse:
    report = await pipeline.transcription_retry.retry_transcript(transcript_id)
    return RetryReportResponse(
        retried=report.retried,
        succeeded=report.succeeded,
        failed=report.failed,
    )


@router.post("/{transcript_id}/complete")
async def complete_transcript(
    transcript_id: UUID,
    pipeline: PipelineDep,
    background_tasks: BackgroundTasks,
    payload: TranscriptCompleteRequest | None = None,
) -> CompleteResponse:
    """Live close path: freeze (or fail), finalize the lesson, then analyse in the background."""

    end_time = payload.end_time if payload and payload.end_time else utcnow()
    result = await pipeline.capture.close(transcript_id, end_time)

    scheduled = False
    if result.analysable:
        background_tasks.add_task(_ensure_analysis, pipeline, result.transcript.id)
        scheduled = True

    return CompleteResponse(
        transcript=TranscriptResponse.from_record(result.transcript),
        analysis_scheduled=scheduled,
        actual_duration_minutes=result.billing.actual_duration_minutes if result.billing else None,
        actual_price=result.billing.actual_price if result.billing else None,
    )


async def _ensure_analysis(pipeline: PipelineServices, transcript_id: UUID) -> None:
    try:
        await pipeline.analysis.ensure_analysis(transcript_id)
    except Exception as exc:  # noqa: BLE001 - background task after the response
        logger.error("Analysis after close failed for transcript %s: %s", transcript_id, exc)
