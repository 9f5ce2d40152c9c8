"""Post-lesson audio-to-insight pipeline.

Modules follow the order in which a lesson's audio becomes an assessment:

1. `aggregator` - transcript state machine (recording -> processing -> terminal).
2. `transcription_retry` - re-transcribe backed-up chunks that failed live.
3. `auto_complete` - freeze transcripts whose scheduled lesson window elapsed.
4. `sampler` / `pronunciation` - pick complex student utterances and assess them.
5. `analysis` - generate, persist and retry the lesson analysis.
6. `flow` - human-readable description of the end-to-end stages.

Only the shared errors and types are re-exported here; stages are imported by
their module path so the service layer can depend on this package without
import cycles.
"""

from .errors import (
    AnalysisNotFoundError,
    EmptyTranscriptError,
    ExpiredResourceError,
    InsufficientDataError,
    InvalidStateError,
    MissingTranscriptError,
    PermanentFailureError,
    PipelineError,
    ProviderTimeoutError,
    TranscriptNotFoundError,
    TransientProviderError,
    UnsupportedLanguageError,
)
from .flow import LessonPipeline, PipelineStage

__all__ = [
    "AnalysisNotFoundError",
    "EmptyTranscriptError",
    "ExpiredResourceError",
    "InsufficientDataError",
    "InvalidStateError",
    "LessonPipeline",
    "MissingTranscriptError",
    "PermanentFailureError",
    "PipelineError",
    "PipelineStage",
    "ProviderTimeoutError",
    "TranscriptNotFoundError",
    "TransientProviderError",
    "UnsupportedLanguageError",
]
