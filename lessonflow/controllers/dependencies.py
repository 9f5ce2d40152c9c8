"""Common FastAPI dependencies reused across controllers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from lessonflow.config.dependencies import PipelineServices, get_pipeline

PipelineDep = Annotated[PipelineServices, Depends(get_pipeline)]


__all__ = ["PipelineDep"]
