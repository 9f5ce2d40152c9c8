"""Amazon Transcribe integration helpers using the Streaming API."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import tempfile
from statistics import mean

from amazon_transcribe.client import TranscribeStreamingClient
from amazon_transcribe.handlers import TranscriptResultStreamHandler
from amazon_transcribe.model import TranscriptEvent
from fastapi.concurrency import run_in_threadpool

from lessonflow.config.settings import settings
from lessonflow.models import Speaker
from lessonflow.pipelines.lesson.errors import ProviderTimeoutError, TransientProviderError
from lessonflow.pipelines.lesson.types import SpeechResult, TimedText
from lessonflow.services.language import transcribe_locale
from lessonflow.telemetry import record_provider_call

logger = logging.getLogger(__name__)

PROVIDER = "transcribe"


class TranscriptionError(TransientProviderError):
    """Raised when Amazon Transcribe fails to process audio successfully."""

    def __init__(self, message: str) -> None:
        super().__init__(PROVIDER, message)


class TranscribeService:
    """``SpeechToText`` implementation streaming PCM audio to Amazon Transcribe."""

    def __init__(
        self,
        region: str | None = None,
        media_sample_rate_hz: int | None = None,
        media_encoding: str | None = None,
        *,
        timeout_seconds: float | None = None,
        conversion_timeout_seconds: float | None = None,
    ) -> None:
        config = settings.transcribe
        self._region = region or config.region
        self._media_sample_rate_hz = media_sample_rate_hz or config.sample_rate_hz
        self._media_encoding = media_encoding or config.media_encoding
        self._chunk_size = config.chunk_size_bytes
        self._realtime = config.stream_realtime
        self._timeout = timeout_seconds or settings.pipeline.speech_timeout_seconds
        self._conversion_timeout = (
            conversion_timeout_seconds or settings.pipeline.conversion_timeout_seconds
        )

        # Ensure credentials are available to the SDK
        if settings.s3.access_key:
            os.environ["AWS_ACCESS_KEY_ID"] = settings.s3.access_key
        if settings.s3.secret_key:
            os.environ["AWS_SECRET_ACCESS_KEY"] = settings.s3.secret_key

        self._client = TranscribeStreamingClient(region=self._region)

    async def transcribe(
        self,
        data: bytes,
        language_code: str,
        speaker_hint: Speaker,
    ) -> SpeechResult:
        """Stream audio to Transcribe and return final results with offsets."""

        if not data:
            raise TranscriptionError("The audio chunk is empty.")

        pcm_data = await self._convert_to_pcm(data)
        try:
            segments = await asyncio.wait_for(
                self._stream(pcm_data, transcribe_locale(language_code)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            record_provider_call(PROVIDER, "timeout")
            raise ProviderTimeoutError(PROVIDER, self._timeout) from exc
        except TranscriptionError:
            record_provider_call(PROVIDER, "error")
            raise

        record_provider_call(PROVIDER, "ok")
        logger.info(
            "Transcribed %s bytes (%s) for %s into %s segments",
            len(data),
            language_code,
            speaker_hint.value,
            len(segments),
        )
        return SpeechResult(segments=tuple(segments))

    async def _stream(self, pcm_data: bytes, locale: str) -> list[TimedText]:
        stream = await self._client.start_stream_transcription(
            language_code=locale,
            media_sample_rate_hz=self._media_sample_rate_hz,
            media_encoding=self._media_encoding,
        )
        handler = _TimedTranscriptHandler(stream.output_stream)

        async def write_chunks() -> None:
            chunk_size = self._chunk_size
            bytes_per_sec = self._media_sample_rate_hz * 2  # 16-bit = 2 bytes
            sleep_time = chunk_size / bytes_per_sec if self._realtime else 0
            for i in range(0, len(pcm_data), chunk_size):
                await stream.input_stream.send_audio_event(audio_chunk=pcm_data[i:i + chunk_size])
                if sleep_time:
                    await asyncio.sleep(sleep_time)
            await stream.input_stream.end_stream()

        try:
            await asyncio.gather(write_chunks(), handler.handle_events())
        except Exception as exc:
            logger.error("Streaming loop failed: %s", exc)
            raise TranscriptionError(f"Streaming transcription failed: {exc}") from exc
        return handler.segments

    async def _convert_to_pcm(self, audio_bytes: bytes) -> bytes:
        """Convert input audio to raw PCM s16le via ffmpeg using a thread."""

        return await run_in_threadpool(self._convert_to_pcm_sync, audio_bytes)

    def _convert_to_pcm_sync(self, audio_bytes: bytes) -> bytes:
        """Synchronous ffmpeg conversion using a temporary file to support seeking."""

        with tempfile.NamedTemporaryFile(delete=False, suffix=".tmp") as tmp_file:
            tmp_file.write(audio_bytes)
            tmp_path = tmp_file.name

        try:
            process = subprocess.run(
                [
                    "ffmpeg",
                    "-y",
                    "-i", tmp_path,
                    "-f", "s16le",
                    "-ac", "1",
                    "-ar", str(self._media_sample_rate_hz),
                    "pipe:1",
                ],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=True,
                timeout=self._conversion_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProviderTimeoutError("ffmpeg", self._conversion_timeout) from exc
        except subprocess.CalledProcessError as exc:
            error_msg = exc.stderr.decode("utf-8", errors="replace") if exc.stderr else "No stderr"
            logger.error("ffmpeg failed. stderr: %s", error_msg)
            raise TranscriptionError(f"ffmpeg failed to convert audio to PCM: {error_msg}") from exc
        except FileNotFoundError as exc:
            raise TranscriptionError("ffmpeg is not installed") from exc
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

        if not process.stdout:
            logger.warning(
                "ffmpeg produced empty output. stderr: %s",
                process.stderr.decode("utf-8", errors="replace"),
            )
        return process.stdout


class _TimedTranscriptHandler(TranscriptResultStreamHandler):
    def __init__(self, transcript_result_stream):
        super().__init__(transcript_result_stream)
        self.segments: list[TimedText] = []

    async def handle_transcript_event(self, transcript_event: TranscriptEvent):
        for result in transcript_event.transcript.results:
            if result.is_partial or not result.alternatives:
                continue
            alternative = result.alternatives[0]
            text = (alternative.transcript or "").strip()
            if not text:
                continue
            confidences = [
                item.confidence
                for item in (alternative.items or [])
                if getattr(item, "confidence", None) is not None
            ]
            self.segments.append(
                TimedText(
                    start=float(result.start_time or 0.0),
                    end=float(result.end_time or 0.0),
                    text=text,
                    confidence=mean(confidences) if confidences else None,
                )
            )


_DEFAULT_SERVICE: TranscribeService | None = None


def get_transcribe_service() -> TranscribeService:
    """Return a lazily-instantiated transcribe service singleton."""

    global _DEFAULT_SERVICE
    if _DEFAULT_SERVICE is None:
        _DEFAULT_SERVICE = TranscribeService()
    return _DEFAULT_SERVICE


__all__ = ["TranscribeService", "TranscriptionError", "get_transcribe_service"]
