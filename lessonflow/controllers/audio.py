"""Operator endpoints for the audio backup bucket."""

import logging

from fastapi import APIRouter

from lessonflow.controllers.dependencies import PipelineDep
from lessonflow.views.audio import LessonAudioDeleteResponse, StorageStatsResponse, SweepResponse

router = APIRouter(prefix="/audio", tags=["audio"])

logger = logging.getLogger(__name__)


@router.get("/stats")
async def storage_stats(pipeline: PipelineDep) -> StorageStatsResponse:
    stats = await pipeline.audio_store.stats()
    return StorageStatsResponse(
        total_files=stats.total_files,
        total_size_bytes=stats.total_size_bytes,
        total_size_mb=stats.total_size_mb,
        oldest=stats.oldest,
        newest=stats.newest,
    )


@router.post("/sweep")
async def sweep_expired(pipeline: PipelineDep) -> SweepResponse:
    """Run the expiry sweep now instead of waiting for the scheduled tick."""

    report = await pipeline.audio_store.sweep_expired()
    return SweepResponse(deleted=report.deleted, errors=report.errors)


@router.delete("/lessons/{lesson_id}")
async def delete_lesson_audio(lesson_id: str, pipeline: PipelineDep) -> LessonAudioDeleteResponse:
    deleted = await pipeline.audio_store.delete_all_for_lesson(lesson_id)
    logger.info("Deleted %s audio objects for lesson %s", deleted, lesson_id)
    return LessonAudioDeleteResponse(lesson_id=lesson_id, deleted=deleted)
