"""Post-lesson audio-to-insight backend."""

__version__ = "1.0.0"
