"""Pronunciation assessment through an OpenAI audio-capable chat model.

Audio is converted to 16 kHz mono WAV with ffmpeg (the audio models accept
WAV/MP3 only), sent alongside the reference transcript, and the JSON reply is
validated by ``analysis_contract``. Assessment is advisory: callers treat a
``None`` result or a raised provider error as "no pronunciation section".
"""

from __future__ import annotations

import asyncio
import base64
import logging
import subprocess
from typing import Any, Optional

from fastapi.concurrency import run_in_threadpool
from openai import OpenAI, OpenAIError

from lessonflow.config.settings import settings
from lessonflow.pipelines.lesson.errors import ProviderTimeoutError, TransientProviderError
from lessonflow.pipelines.lesson.types import PronunciationAssessment, WordIssue
from lessonflow.services.analysis_contract import ResponseContractError, parse_pronunciation
from lessonflow.services.language import language_name
from lessonflow.telemetry import record_provider_call

logger = logging.getLogger(__name__)

PROVIDER = "openai"

PRONUNCIATION_FOCUS = {
    "es": "Focus on: rolled r vs single r, vowel clarity, b/v distinction, ñ sound, consonant clusters.",
    "fr": "Focus on: nasal vowels (an, en, in, on, un), uvular r, liaisons, silent letters, vowel roundedness.",
    "de": "Focus on: umlauts (ä, ö, ü), ch sound (ich vs ach), sch sound, final devoicing, long vs short vowels.",
    "it": "Focus on: double consonants, open vs closed vowels, gl/gn sounds, clear vowel endings.",
    "pt": "Focus on: nasal vowels (ã, õ), lh/nh sounds, initial vs medial r, open vs closed vowels.",
    "zh": "Focus on: tones (especially 2nd/3rd distinction), retroflex initials (zh, ch, sh), aspiration.",
    "ja": "Focus on: pitch accent, r sound, vowel devoicing, long vs short vowels, geminate consonants.",
    "ko": "Focus on: tense vs aspirated vs plain consonants, final consonants, vowel distinctions.",
    "ru": "Focus on: soft vs hard consonants, vowel reduction, stress patterns, palatalization.",
    "ar": "Focus on: emphatic consonants, pharyngeal sounds, glottal stop, vowel length, sun/moon letters.",
}
DEFAULT_FOCUS = "Focus on: clear articulation, natural rhythm, and appropriate stress patterns."

SYSTEM_PROMPT = """You are an expert {language} pronunciation coach assessing a {level} level student.

Focus ONLY on complex, challenging words; ignore greetings, pronouns, articles and basic verbs.
{focus}

Respond ONLY with raw JSON (no markdown) in this exact shape:
{{
  "overallScore": <0-100>,
  "accuracyScore": <0-100>,
  "fluencyScore": <0-100>,
  "prosodyScore": <0-100>,
  "wordsToImprove": [{{"word": "<complex word>", "score": <0-100>, "reason": "<specific issue>"}}],
  "feedback": "<1-2 encouraging sentences>",
  "specificIssues": ["<issue>"]
}}
Include 3-5 entries in wordsToImprove at most."""


def convert_to_wav(audio: bytes, *, timeout_seconds: float) -> bytes:
    """Transcode any ffmpeg-readable input to 16 kHz mono PCM WAV."""

    try:
        process = subprocess.run(
            [
                "ffmpeg",
                "-hide_banner",
                "-loglevel", "error",
                "-i", "pipe:0",
                "-acodec", "pcm_s16le",
                "-ar", "16000",
                "-ac", "1",
                "-f", "wav",
                "pipe:1",
            ],
            input=audio,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        raise ProviderTimeoutError("ffmpeg", timeout_seconds) from exc
    except subprocess.CalledProcessError as exc:
        error_msg = exc.stderr.decode("utf-8", errors="replace") if exc.stderr else "No stderr"
        raise TransientProviderError("ffmpeg", f"WAV conversion failed: {error_msg}") from exc
    except FileNotFoundError as exc:
        raise TransientProviderError("ffmpeg", "ffmpeg is not installed") from exc
    return process.stdout


class OpenAIPronunciationAssessor:
    """``PronunciationAssessor`` backed by ``gpt-4o-audio-preview``."""

    def __init__(
        self,
        client: Any = None,
        *,
        model: str | None = None,
        student_level: str = "B1",
        threshold: float | None = None,
        timeout_seconds: float | None = None,
        conversion_timeout_seconds: float | None = None,
    ) -> None:
        self._client = client
        self._model = model or settings.openai.pronunciation_model
        self._student_level = student_level
        self._threshold = (
            threshold if threshold is not None else settings.pipeline.mispronunciation_threshold
        )
        self._timeout = timeout_seconds or settings.pipeline.pronunciation_timeout_seconds
        self._conversion_timeout = (
            conversion_timeout_seconds or settings.pipeline.conversion_timeout_seconds
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            api_key = settings.openai.api_key
            self._client = OpenAI(api_key=api_key.get_secret_value() if api_key else None)
        return self._client

    async def assess(
        self,
        audio: bytes,
        reference_text: str,
        language_code: str,
    ) -> Optional[PronunciationAssessment]:
        if not audio:
            return None

        wav = await run_in_threadpool(
            convert_to_wav, audio, timeout_seconds=self._conversion_timeout
        )
        system_prompt = SYSTEM_PROMPT.format(
            language=language_name(language_code),
            level=self._student_level,
            focus=PRONUNCIATION_FOCUS.get(language_code, DEFAULT_FOCUS),
        )
        user_text = (
            f"Assess the pronunciation of this {language_name(language_code)} speech. "
            f'Transcript for reference: "{reference_text}". '
            "Listen to the audio and assess the complex words only."
        )

        def _call() -> str:
            response = self.client.chat.completions.create(
                model=self._model,
                modalities=["text"],
                temperature=0.3,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": user_text},
                            {
                                "type": "input_audio",
                                "input_audio": {
                                    "data": base64.b64encode(wav).decode("ascii"),
                                    "format": "wav",
                                },
                            },
                        ],
                    },
                ],
            )
            return response.choices[0].message.content or ""

        try:
            raw = await asyncio.wait_for(run_in_threadpool(_call), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            record_provider_call(PROVIDER, "timeout")
            raise ProviderTimeoutError(PROVIDER, self._timeout) from exc
        except OpenAIError as exc:
            record_provider_call(PROVIDER, "error")
            raise TransientProviderError(PROVIDER, str(exc)) from exc

        try:
            parsed = parse_pronunciation(raw)
        except ResponseContractError as exc:
            record_provider_call(PROVIDER, "invalid")
            logger.warning("Discarding unparseable pronunciation response: %s", exc)
            return None

        record_provider_call(PROVIDER, "ok")
        return PronunciationAssessment(
            overall_score=parsed.overall_score,
            accuracy_score=parsed.accuracy_score,
            fluency_score=parsed.fluency_score,
            prosody_score=parsed.prosody_score,
            completeness_score=parsed.overall_score,
            mispronunciations=tuple(
                WordIssue(word=item.word, score=item.score, error_type=item.reason)
                for item in parsed.words_to_improve
                if item.score < self._threshold
            ),
            feedback=parsed.feedback,
            specific_issues=tuple(parsed.specific_issues),
        )


__all__ = ["OpenAIPronunciationAssessor", "convert_to_wav"]
