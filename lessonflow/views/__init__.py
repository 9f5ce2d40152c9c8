"""Pydantic schemas used as views in the MVC architecture."""

from .analysis import AnalysisResponse, AnalysisRetryResponse, AnalysisStatsResponse
from .audio import (
    JobStatusResponse,
    LessonAudioDeleteResponse,
    StorageStatsResponse,
    SweepResponse,
)
from .common import ErrorResponse
from .transcripts import (
    ChunkResponse,
    ChunkRetryStatsResponse,
    ChunkUploadResponse,
    CompleteResponse,
    RetryReportResponse,
    SegmentResponse,
    TranscriptCompleteRequest,
    TranscriptCreateRequest,
    TranscriptResponse,
)

__all__ = [
    "AnalysisResponse",
    "AnalysisRetryResponse",
    "AnalysisStatsResponse",
    "ChunkResponse",
    "ChunkRetryStatsResponse",
    "ChunkUploadResponse",
    "CompleteResponse",
    "ErrorResponse",
    "JobStatusResponse",
    "LessonAudioDeleteResponse",
    "RetryReportResponse",
    "SegmentResponse",
    "StorageStatsResponse",
    "SweepResponse",
    "TranscriptCompleteRequest",
    "TranscriptCreateRequest",
    "TranscriptResponse",
]
