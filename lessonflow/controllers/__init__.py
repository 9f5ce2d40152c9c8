"""FastAPI routers acting as controllers in the MVC architecture."""

from . import analysis, audio, jobs, transcripts

__all__ = ["analysis", "audio", "jobs", "transcripts"]
