"""Pick the lexically hardest student utterances for pronunciation assessment.

Each segment is scored by averaging per-word points for length, syllable
count and language-specific phonetic patterns, relative to the learner's
CEFR level. The top-scoring pool is sampled with an even stride so the
picks are spread across it, then returned in chronological order.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Sequence, TypeVar

from lessonflow.pipelines.lesson.types import SegmentRecord


@dataclass(frozen=True)
class ComplexityThreshold:
    min_length: int
    min_syllables: int


COMPLEXITY_THRESHOLDS: dict[str, ComplexityThreshold] = {
    "A1": ComplexityThreshold(5, 2),
    "A2": ComplexityThreshold(6, 2),
    "B1": ComplexityThreshold(7, 3),
    "B2": ComplexityThreshold(8, 3),
    "C1": ComplexityThreshold(9, 4),
    "C2": ComplexityThreshold(10, 4),
}
DEFAULT_LEVEL = "B1"
POOL_FACTOR = 1.5

_VOWELS = re.compile(r"[aeiouáéíóúàèìòùâêîôûäëïöüāēīōūãõ]", re.IGNORECASE)
_NON_WORD = re.compile(r"[^\w]")

PHONETIC_PATTERNS: dict[str, re.Pattern[str]] = {
    "es": re.compile(r"rr|ñ|ll|[bcdfghjklmnpqrstvwxyz]{3,}", re.IGNORECASE),
    "fr": re.compile(r"[aeiouàâéèêëîïôùûü][nm]|gn|ill|oi|ou|eu", re.IGNORECASE),
    "de": re.compile(r"sch|ch|tz|pf|äu|öu|[äöü]|[bcdfgpqtvwxz]{3,}", re.IGNORECASE),
    "zh": re.compile(r"[āáǎàēéěèīíǐìōóǒòūúǔù]"),
    "ja": re.compile(r"[っゃゅょ]|[ん]|[ー]"),
    "ko": re.compile(r"[ㄲㄸㅃㅆㅉ]"),
    "pt": re.compile(r"nh|lh|[aeiouàáâãéêíóôõú][mn]|ção", re.IGNORECASE),
    "ru": re.compile(r"[жчшщ]|[ьъ]|[бвгджзклмнпрстфхцчшщ]{3,}", re.IGNORECASE),
    "ar": re.compile(r"[عحخغقصضطظ]"),
    "it": re.compile(r"gl|gn|sc|[bcdfglmnpqrstvz]{2}|cc|gg", re.IGNORECASE),
}

S = TypeVar("S", bound=SegmentRecord)


def threshold_for(level: str | None) -> ComplexityThreshold:
    return COMPLEXITY_THRESHOLDS.get((level or "").upper(), COMPLEXITY_THRESHOLDS[DEFAULT_LEVEL])


def count_syllables(word: str) -> int:
    """Vowel count as a language-agnostic syllable estimate (at least 1)."""

    return len(_VOWELS.findall(word)) or 1


def has_complex_phonetics(word: str, language: str) -> bool:
    pattern = PHONETIC_PATTERNS.get(language)
    return bool(pattern and pattern.search(word))


def _word_points(word: str, language: str, threshold: ComplexityThreshold) -> int:
    points = 0
    length = len(word)
    if length >= threshold.min_length + 3:
        points += 3
    elif length >= threshold.min_length:
        points += 2
    elif length >= threshold.min_length - 2:
        points += 1

    syllables = count_syllables(word)
    if syllables >= threshold.min_syllables + 2:
        points += 3
    elif syllables >= threshold.min_syllables:
        points += 2
    elif syllables >= threshold.min_syllables - 1:
        points += 1

    if has_complex_phonetics(word, language):
        points += 2
    return points


def complexity_score(text: str, language: str, level: str = DEFAULT_LEVEL) -> float:
    """Average word points over all whitespace-separated tokens.

    Tokens that are pure punctuation score nothing but still count in the
    divisor, so punctuation-heavy utterances rank lower.
    """

    words = text.split()
    if not words:
        return 0.0
    threshold = threshold_for(level)
    total = 0
    for word in words:
        clean = _NON_WORD.sub("", word)
        if clean:
            total += _word_points(clean, language, threshold)
    return total / len(words)


def sample_segments(
    segments: Sequence[S],
    language: str,
    student_level: str = DEFAULT_LEVEL,
    sampling_rate: float = 0.15,
) -> list[S]:
    """Return ``max(1, ceil(n * rate))`` segments spread across the hardest pool."""

    if not 0 < sampling_rate <= 1:
        raise ValueError(f"sampling_rate must be in (0, 1], got {sampling_rate}")
    if not segments:
        return []

    # sorted() is stable: equal scores keep chronological order.
    ranked = sorted(
        segments,
        key=lambda segment: complexity_score(segment.text, language, student_level),
        reverse=True,
    )
    target = max(1, math.ceil(len(segments) * sampling_rate))
    pool = ranked[: math.ceil(target * POOL_FACTOR)]
    target = min(target, len(pool))
    picks = [pool[(i * len(pool)) // target] for i in range(target)]
    return sorted(picks, key=lambda segment: (segment.timestamp, segment.id))


__all__ = [
    "COMPLEXITY_THRESHOLDS",
    "PHONETIC_PATTERNS",
    "complexity_score",
    "count_syllables",
    "has_complex_phonetics",
    "sample_segments",
    "threshold_for",
]
