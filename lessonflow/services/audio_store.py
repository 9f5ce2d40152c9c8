"""S3-backed durable store for lesson audio chunks.

Every chunk uploaded during a live lesson is written here before (or while)
it is transcribed, so a failed live transcription can be repaired later. Each
object carries its own ``deleteAt`` metadata; the expiry sweep trusts that
value rather than any database row.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, TypeVar
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from lessonflow.config.settings import settings
from lessonflow.models import Speaker
from lessonflow.pipelines.lesson.errors import ProviderTimeoutError
from lessonflow.services.aws import create_boto3_client
from lessonflow.telemetry import record_provider_call
from lessonflow.utils.time import ensure_utc, isoformat_z, parse_iso, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_PREFIX = "lessons/"
BACKUP_PURPOSE = "transcription-backup"
_DELETE_BATCH_SIZE = 1000

_MIME_EXTENSIONS = {
    "audio/webm": "webm",
    "video/webm": "webm",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/ogg": "ogg",
    "audio/mp4": "m4a",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
}


class AudioStoreError(RuntimeError):
    """Raised when the audio backup bucket cannot be read or written."""


class AudioNotFoundError(AudioStoreError):
    """Raised when a storage path is malformed or the object is gone."""


@dataclass(frozen=True)
class StoredAudio:
    path: str
    size_bytes: int
    uploaded_at: datetime
    delete_at: datetime


@dataclass(frozen=True)
class SweepReport:
    deleted: int = 0
    errors: int = 0


@dataclass(frozen=True)
class StorageStats:
    total_files: int
    total_size_bytes: int
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None

    @property
    def total_size_mb(self) -> float:
        return round(self.total_size_bytes / (1024 * 1024), 2)


def extension_for(mime_type: str | None) -> str:
    """Map a MIME type (parameters ignored) to the object key extension."""

    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return _MIME_EXTENSIONS.get(base, "audio")


def object_key(
    lesson_id: UUID | str,
    chunk_index: int,
    speaker: Speaker | str,
    uploaded_at: datetime,
    mime_type: str | None,
) -> str:
    speaker_value = speaker.value if isinstance(speaker, Speaker) else str(speaker)
    timestamp_ms = int(ensure_utc(uploaded_at).timestamp() * 1000)
    return (
        f"{KEY_PREFIX}{lesson_id}/chunk-{chunk_index}-{speaker_value}-"
        f"{timestamp_ms}.{extension_for(mime_type)}"
    )


def parse_storage_path(path: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into (bucket, key)."""

    if not path or not path.startswith("s3://"):
        raise AudioNotFoundError(f"Not an s3:// path: {path!r}")
    bucket, _, key = path[len("s3://"):].partition("/")
    if not bucket or not key:
        raise AudioNotFoundError(f"Malformed storage path: {path!r}")
    return bucket, key


def _is_missing(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in {"NoSuchKey", "404", "NotFound"}


class AudioStore:
    """Async facade over the S3 backup bucket."""

    def __init__(
        self,
        client: Any = None,
        *,
        bucket: str | None = None,
        retention_hours: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._client = client
        self._bucket = bucket or settings.s3.bucket_name
        self._retention = timedelta(
            hours=retention_hours or settings.pipeline.retention_hours
        )
        self._timeout = timeout_seconds or settings.pipeline.storage_timeout_seconds

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = create_boto3_client(
                "s3",
                region_name=settings.s3.region,
                endpoint_url=settings.s3.endpoint_url,
            )
        return self._client

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            result = await asyncio.wait_for(
                run_in_threadpool(func, *args, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            record_provider_call("s3", "timeout")
            raise ProviderTimeoutError("s3", self._timeout) from exc
        except (BotoCoreError, ClientError):
            record_provider_call("s3", "error")
            raise
        record_provider_call("s3", "ok")
        return result

    async def put(
        self,
        lesson_id: UUID | str,
        chunk_index: int,
        speaker: Speaker | str,
        data: bytes,
        mime_type: str | None,
        *,
        now: datetime | None = None,
    ) -> StoredAudio:
        """Upload a chunk and return where it lives and when it expires."""

        if not data:
            raise AudioStoreError("Audio payload for backup was empty.")
        if not self._bucket:
            raise AudioStoreError("S3 bucket name is not configured.")

        uploaded_at = ensure_utc(now) if now else utcnow()
        delete_at = uploaded_at + self._retention
        key = object_key(lesson_id, chunk_index, speaker, uploaded_at, mime_type)
        speaker_value = speaker.value if isinstance(speaker, Speaker) else str(speaker)
        metadata = {
            "lessonId": str(lesson_id),
            "chunkIndex": str(chunk_index),
            "speaker": speaker_value,
            "uploadedAt": isoformat_z(uploaded_at),
            "deleteAt": isoformat_z(delete_at),
            "purpose": BACKUP_PURPOSE,
        }
        try:
            await self._call(
                self.client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=mime_type or "application/octet-stream",
                Metadata=metadata,
            )
        except (BotoCoreError, ClientError) as exc:
            raise AudioStoreError(f"Failed to back up audio chunk: {exc}") from exc

        logger.info(
            "Backed up chunk lesson=%s index=%s speaker=%s bytes=%s",
            lesson_id,
            chunk_index,
            speaker_value,
            len(data),
        )
        return StoredAudio(
            path=f"s3://{self._bucket}/{key}",
            size_bytes=len(data),
            uploaded_at=uploaded_at,
            delete_at=delete_at,
        )

    async def backup(
        self,
        lesson_id: UUID | str,
        chunk_index: int,
        speaker: Speaker | str,
        data: bytes,
        mime_type: str | None,
        *,
        now: datetime | None = None,
    ) -> StoredAudio | None:
        """Best-effort ``put``: logs and returns None instead of raising."""

        try:
            return await self.put(lesson_id, chunk_index, speaker, data, mime_type, now=now)
        except Exception as exc:  # noqa: BLE001 - backup must never abort capture
            logger.warning(
                "Audio backup failed lesson=%s index=%s: %s",
                lesson_id,
                chunk_index,
                exc,
            )
            return None

    async def get(self, path: str) -> bytes:
        bucket, key = parse_storage_path(path)

        def _download() -> bytes:
            response = self.client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()

        try:
            return await self._call(_download)
        except ClientError as exc:
            if _is_missing(exc):
                raise AudioNotFoundError(f"Audio not found: {path}") from exc
            raise AudioStoreError(f"Failed to download {path}: {exc}") from exc
        except BotoCoreError as exc:
            raise AudioStoreError(f"Failed to download {path}: {exc}") from exc

    async def delete(self, path: str) -> bool:
        """Delete one object; an already-absent object counts as deleted."""

        try:
            bucket, key = parse_storage_path(path)
        except AudioNotFoundError:
            logger.warning("Skipping delete for malformed path %s", path)
            return False

        try:
            await self._call(self.client.delete_object, Bucket=bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return True
            raise AudioStoreError(f"Failed to delete {path}: {exc}") from exc
        except BotoCoreError as exc:
            raise AudioStoreError(f"Failed to delete {path}: {exc}") from exc
        return True

    def _list_objects(self, prefix: str) -> list[dict[str, Any]]:
        paginator = self.client.get_paginator("list_objects_v2")
        objects: list[dict[str, Any]] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            objects.extend(page.get("Contents", []))
        return objects

    async def delete_all_for_lesson(self, lesson_id: UUID | str) -> int:
        prefix = f"{KEY_PREFIX}{lesson_id}/"

        def _delete_all() -> int:
            keys = [obj["Key"] for obj in self._list_objects(prefix)]
            deleted = 0
            for start in range(0, len(keys), _DELETE_BATCH_SIZE):
                batch = keys[start:start + _DELETE_BATCH_SIZE]
                response = self.client.delete_objects(
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
                # Quiet mode only reports the keys that could not be deleted.
                errors = response.get("Errors") or []
                for error in errors:
                    logger.warning(
                        "Could not delete %s: %s %s",
                        error.get("Key"),
                        error.get("Code"),
                        error.get("Message"),
                    )
                deleted += len(batch) - len(errors)
            return deleted

        try:
            deleted = await self._call(_delete_all)
        except (BotoCoreError, ClientError) as exc:
            raise AudioStoreError(f"Failed to delete audio for lesson {lesson_id}: {exc}") from exc

        logger.info("Deleted %s audio objects for lesson=%s", deleted, lesson_id)
        return deleted

    def _delete_at(self, obj: dict[str, Any], metadata: dict[str, str]) -> datetime:
        # S3 returns user metadata keys lower-cased.
        raw = metadata.get("deleteat") or metadata.get("deleteAt")
        if raw:
            return parse_iso(raw)
        return ensure_utc(obj["LastModified"]) + self._retention

    async def sweep_expired(self, now: datetime | None = None) -> SweepReport:
        """Delete every object whose ``deleteAt`` is in the past."""

        cutoff = ensure_utc(now) if now else utcnow()
        try:
            objects = await self._call(self._list_objects, KEY_PREFIX)
        except (BotoCoreError, ClientError) as exc:
            raise AudioStoreError(f"Failed to list audio backups: {exc}") from exc

        deleted = 0
        errors = 0
        for obj in objects:
            key = obj["Key"]
            try:
                head = await self._call(self.client.head_object, Bucket=self._bucket, Key=key)
                delete_at = self._delete_at(obj, head.get("Metadata") or {})
                if delete_at <= cutoff:
                    await self._call(self.client.delete_object, Bucket=self._bucket, Key=key)
                    deleted += 1
            except Exception as exc:  # noqa: BLE001 - one bad object must not stop the sweep
                errors += 1
                logger.warning("Failed to expire audio object %s: %s", key, exc)

        logger.info("Audio expiry sweep: deleted=%s errors=%s", deleted, errors)
        return SweepReport(deleted=deleted, errors=errors)

    async def stats(self) -> StorageStats:
        try:
            objects = await self._call(self._list_objects, KEY_PREFIX)
        except (BotoCoreError, ClientError) as exc:
            raise AudioStoreError(f"Failed to list audio backups: {exc}") from exc

        if not objects:
            return StorageStats(total_files=0, total_size_bytes=0)
        modified = [ensure_utc(obj["LastModified"]) for obj in objects]
        return StorageStats(
            total_files=len(objects),
            total_size_bytes=sum(int(obj.get("Size", 0)) for obj in objects),
            oldest=min(modified),
            newest=max(modified),
        )


_DEFAULT_STORE: AudioStore | None = None


def get_audio_store() -> AudioStore:
    """Return a lazily-instantiated audio store singleton."""

    global _DEFAULT_STORE
    if _DEFAULT_STORE is None:
        _DEFAULT_STORE = AudioStore()
    return _DEFAULT_STORE


__all__ = [
    "AudioNotFoundError",
    "AudioStore",
    "AudioStoreError",
    "StorageStats",
    "StoredAudio",
    "SweepReport",
    "extension_for",
    "get_audio_store",
    "object_key",
    "parse_storage_path",
]
