"""Exception hierarchy shared by the post-lesson pipeline stages.

Sweeps catch these per item: a transient provider failure consumes one
attempt and leaves the item eligible for the next sweep, while permanent and
insufficient-data failures are recorded as final.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for every failure raised by the lesson pipeline."""


class TransientProviderError(PipelineError):
    """A speech, pronunciation or analysis provider failed; retry later."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderTimeoutError(TransientProviderError):
    """A provider call exceeded its configured timeout."""

    def __init__(self, provider: str, timeout_seconds: float) -> None:
        super().__init__(provider, f"timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class PermanentFailureError(PipelineError):
    """The item can never succeed; retrying is pointless."""


class InvalidStateError(PipelineError):
    """A transition was requested from a state that does not allow it."""


class InsufficientDataError(PipelineError):
    """There is not enough material to produce a result."""


class MissingTranscriptError(InsufficientDataError):
    """The analysis references a transcript that does not exist."""


class EmptyTranscriptError(InsufficientDataError):
    """The transcript exists but holds no usable student speech."""


class ExpiredResourceError(PipelineError):
    """The backing audio passed its retention window."""


class UnsupportedLanguageError(PipelineError):
    """The lesson language cannot be mapped to a supported language code."""

    def __init__(self, language: str) -> None:
        super().__init__(f"Unsupported language: {language!r}")
        self.language = language


class TranscriptNotFoundError(PipelineError):
    """No transcript exists for the requested identifier."""


class AnalysisNotFoundError(PipelineError):
    """No analysis exists for the requested identifier."""


__all__ = [
    "AnalysisNotFoundError",
    "EmptyTranscriptError",
    "ExpiredResourceError",
    "InsufficientDataError",
    "InvalidStateError",
    "MissingTranscriptError",
    "PermanentFailureError",
    "PipelineError",
    "ProviderTimeoutError",
    "TranscriptNotFoundError",
    "TransientProviderError",
    "UnsupportedLanguageError",
]
