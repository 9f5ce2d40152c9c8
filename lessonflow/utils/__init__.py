"""Utility helpers for the lessonflow backend."""

from .time import ensure_utc, isoformat_z, parse_iso, utcnow

__all__ = [
    "utcnow",
    "ensure_utc",
    "isoformat_z",
    "parse_iso",
]
