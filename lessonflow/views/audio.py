"""Pydantic schemas for audio storage and job endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class StorageStatsResponse(BaseModel):
    total_files: int
    total_size_bytes: int
    total_size_mb: float
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


class SweepResponse(BaseModel):
    deleted: int
    errors: int


class LessonAudioDeleteResponse(BaseModel):
    lesson_id: str
    deleted: int = Field(..., description="Number of stored objects removed")


class JobStatusResponse(BaseModel):
    name: str
    interval_seconds: float
    offset_seconds: float
    running: bool
    active: bool
    last_started: Optional[str] = None
    last_finished: Optional[str] = None
    last_result: Optional[str] = None
    last_error: Optional[str] = None
    runs: int
    skipped_ticks: int
