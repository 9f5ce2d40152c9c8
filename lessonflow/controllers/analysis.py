"""Analysis endpoints: trigger, user-facing read, manual retry and stats."""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from lessonflow.controllers.dependencies import PipelineDep
from lessonflow.views.analysis import (
    AnalysisResponse,
    AnalysisRetryResponse,
    AnalysisStatsResponse,
)

router = APIRouter(prefix="/analysis", tags=["analysis"])

logger = logging.getLogger(__name__)


@router.get("/stats")
async def analysis_stats(pipeline: PipelineDep) -> AnalysisStatsResponse:
    stats = await pipeline.analysis.analysis_stats()
    return AnalysisStatsResponse(
        pending_retries=stats.pending_retries,
        permanently_failed=stats.permanently_failed,
        total_failed=stats.total_failed,
    )


@router.post("/lessons/{lesson_id}")
async def ensure_lesson_analysis(lesson_id: UUID, pipeline: PipelineDep) -> AnalysisResponse:
    """Generate the lesson's analysis unless it already exists or is running."""

    record = await pipeline.analysis.ensure_analysis_for_lesson(lesson_id)
    return AnalysisResponse.from_record(record)


@router.get("/lessons/{lesson_id}")
async def get_lesson_analysis(lesson_id: UUID, pipeline: PipelineDep) -> AnalysisResponse:
    record = await pipeline.analysis.repository.get_by_lesson(lesson_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No analysis for lesson {lesson_id}",
        )
    return AnalysisResponse.from_record(record)


@router.post("/{analysis_id}/retry")
async def retry_analysis(analysis_id: UUID, pipeline: PipelineDep) -> AnalysisRetryResponse:
    outcome = await pipeline.analysis.retry_analysis(analysis_id)
    logger.info("Manual analysis retry %s: %s", analysis_id, outcome.message)
    return AnalysisRetryResponse(
        success=outcome.success,
        message=outcome.message,
        analysis=AnalysisResponse.from_record(outcome.analysis) if outcome.analysis else None,
    )
