"""Scheduler introspection."""

from fastapi import APIRouter

from lessonflow.controllers.dependencies import PipelineDep
from lessonflow.views.audio import JobStatusResponse

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("")
async def list_jobs(pipeline: PipelineDep) -> list[JobStatusResponse]:
    return [
        JobStatusResponse(**status.as_dict()) for status in pipeline.scheduler.statuses()
    ]
