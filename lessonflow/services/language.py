"""Normalise free-form lesson language labels to ISO-639-1 codes."""

from __future__ import annotations

from lessonflow.pipelines.lesson.errors import UnsupportedLanguageError

LANGUAGE_NAMES: dict[str, str] = {
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "en": "English",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "ru": "Russian",
    "ar": "Arabic",
    "hi": "Hindi",
    "tr": "Turkish",
    "nl": "Dutch",
    "sv": "Swedish",
    "pl": "Polish",
}

SUPPORTED_CODES = frozenset(LANGUAGE_NAMES)

# Streaming transcription needs a locale, not a bare language code.
TRANSCRIBE_LOCALES: dict[str, str] = {
    "es": "es-US",
    "fr": "fr-FR",
    "de": "de-DE",
    "it": "it-IT",
    "pt": "pt-BR",
    "en": "en-US",
    "zh": "zh-CN",
    "ja": "ja-JP",
    "ko": "ko-KR",
    "ru": "ru-RU",
    "ar": "ar-SA",
    "hi": "hi-IN",
    "tr": "tr-TR",
    "nl": "nl-NL",
    "sv": "sv-SE",
    "pl": "pl-PL",
}

_BY_NAME = {name.lower(): code for code, name in LANGUAGE_NAMES.items()}


def normalize_language(raw: str | None) -> str:
    """Return the ISO-639-1 code for ``raw``.

    Accepts codes ("es"), English names ("Spanish") and the "<name> lesson"
    labels used when booking, case-insensitively.
    """

    value = " ".join((raw or "").split()).lower()
    if value in SUPPORTED_CODES:
        return value
    if value.endswith(" lesson"):
        value = value[: -len(" lesson")].strip()
    code = _BY_NAME.get(value)
    if code is None:
        raise UnsupportedLanguageError(raw or "")
    return code


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, "the target language")


def transcribe_locale(code: str) -> str:
    try:
        return TRANSCRIBE_LOCALES[code]
    except KeyError:
        raise UnsupportedLanguageError(code) from None


__all__ = [
    "LANGUAGE_NAMES",
    "SUPPORTED_CODES",
    "language_name",
    "normalize_language",
    "transcribe_locale",
]
