import pytest

from lessonflow.pipelines.lesson.errors import UnsupportedLanguageError
from lessonflow.services.language import language_name, normalize_language, transcribe_locale


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("es", "es"),
        ("Spanish", "es"),
        ("  spanish   LESSON ", "es"),
        ("FR", "fr"),
        ("Japanese lesson", "ja"),
    ],
)
def test_normalize_language(raw, expected):
    assert normalize_language(raw) == expected


@pytest.mark.parametrize("raw", ["", None, "Klingon", "xx"])
def test_unknown_languages_are_rejected(raw):
    with pytest.raises(UnsupportedLanguageError):
        normalize_language(raw)


def test_locale_and_display_name():
    assert transcribe_locale("pt") == "pt-BR"
    assert language_name("de") == "German"
    assert language_name("xx") == "the target language"
    with pytest.raises(UnsupportedLanguageError):
        transcribe_locale("xx")
