"""Complexity scoring and pronunciation sampling."""

from __future__ import annotations

from datetime import timedelta

import pytest

from lessonflow.models import Speaker
from lessonflow.pipelines.lesson.sampler import (
    complexity_score,
    count_syllables,
    has_complex_phonetics,
    sample_segments,
    threshold_for,
)
from lessonflow.pipelines.lesson.types import SegmentRecord

from conftest import T0

HARD = "desafortunadamente el ferrocarril internacional"
EASY = "sí"


def _segment(index: int, text: str) -> SegmentRecord:
    return SegmentRecord(
        id=index,
        timestamp=T0 + timedelta(seconds=index * 10),
        speaker=Speaker.STUDENT,
        text=text,
        confidence=0.9,
        language="es",
    )


def test_hundred_segments_yield_fifteen_spread_across_top_pool():
    hard_ids = set(range(0, 92, 4))
    segments = [_segment(i, HARD if i in hard_ids else EASY) for i in range(100)]
    assert len(hard_ids) == 23

    picks = sample_segments(segments, "es", "B1", 0.15)

    assert len(picks) == 15
    assert {p.id for p in picks} <= hard_ids
    assert len({p.id for p in picks}) == 15
    # Spread: the first and one of the last pool members are both represented.
    ordered_pool = sorted(hard_ids)
    assert picks[0].id == ordered_pool[0]
    assert picks[-1].id >= ordered_pool[-3]
    assert [p.timestamp for p in picks] == sorted(p.timestamp for p in picks)


def test_small_inputs_return_at_least_one_segment():
    segments = [_segment(i, EASY) for i in range(3)]

    assert len(sample_segments(segments, "es", sampling_rate=0.01)) == 1
    assert sample_segments([], "es") == []


@pytest.mark.parametrize("rate", [0, -0.1, 1.5])
def test_sampling_rate_out_of_range_is_rejected(rate):
    with pytest.raises(ValueError):
        sample_segments([_segment(0, EASY)], "es", sampling_rate=rate)


def test_punctuation_tokens_count_in_divisor():
    assert complexity_score("hola", "es") == 1.0
    assert complexity_score("hola !!", "es") == 0.5
    assert complexity_score("", "es") == 0.0


def test_unicode_words_keep_accented_letters():
    assert count_syllables("¿qué") == 2
    assert count_syllables("brr") == 1
    assert complexity_score("¿qué?", "es") == complexity_score("qué", "es")


def test_language_specific_phonetics():
    assert has_complex_phonetics("perro", "es")
    assert has_complex_phonetics("schön", "de")
    assert not has_complex_phonetics("perro", "xx")


def test_unknown_level_falls_back_to_b1():
    assert threshold_for("Z9") == threshold_for("B1")
    assert threshold_for("c2").min_length == 10
