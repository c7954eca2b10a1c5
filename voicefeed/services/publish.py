"""
Publish pipeline: upload a finished recording, then write its memo row.

The two steps are sequential awaits with no transaction between them. A
failed row insert after a successful upload leaves the stored object
without a record; deleting it is opt-in (``compensate_orphaned_uploads``).
"""

import asyncio
import logging
import mimetypes
import time

from voicefeed.core.config import Settings
from voicefeed.core.exceptions import (
    ClipTooLongError,
    DatabaseWriteFailedError,
    EmptyArtifactError,
    UnauthenticatedError,
    UploadFailedError,
    VoiceFeedError,
)
from voicefeed.core.models import VoiceMemoRecord
from voicefeed.services.audio.capture import MAX_RECORDING_SECONDS, AudioArtifact
from voicefeed.services.audio.processor import probe_duration_seconds
from voicefeed.services.backend import Backend
from voicefeed.services.notifications import Notifier

logger = logging.getLogger(__name__)

MEMO_TABLE = "voice_memos"


class PublishPipeline:
    """Turns an :class:`AudioArtifact` into a feed-visible voice memo.

    Args:
        backend: Capability object (storage + relational store).
        bucket: Object storage bucket for memo audio.
        default_title: Title used when the caller leaves it blank.
        max_duration_seconds: Longest clip accepted by :meth:`publish_file`.
        compensate_orphans: Delete the uploaded object when the insert fails.
        notifier: Receives the success / failure toast of each attempt.
    """

    def __init__(
        self,
        backend: Backend,
        bucket: str = "voice-memos",
        default_title: str = "Voice memo",
        max_duration_seconds: int = MAX_RECORDING_SECONDS,
        compensate_orphans: bool = False,
        notifier: Notifier | None = None,
    ) -> None:
        self._backend = backend
        self._bucket = bucket
        self._default_title = default_title
        self._max_duration = max_duration_seconds
        self._compensate = compensate_orphans
        self._notifier = notifier

    @classmethod
    def from_settings(
        cls,
        backend: Backend,
        settings: Settings,
        notifier: Notifier | None = None,
    ) -> "PublishPipeline":
        return cls(
            backend,
            bucket=settings.memo_bucket,
            default_title=settings.default_memo_title,
            max_duration_seconds=settings.max_recording_seconds,
            compensate_orphans=settings.compensate_orphaned_uploads,
            notifier=notifier,
        )

    @staticmethod
    def object_key(author_id: str, extension: str) -> str:
        """Storage key for a new memo: ``{author}/voice-memo-{ns timestamp}.{ext}``."""
        return f"{author_id}/voice-memo-{time.time_ns()}.{extension}"

    async def publish(
        self,
        artifact: AudioArtifact | None,
        title: str | None,
        author_id: str | None,
        duration_seconds: int | None = None,
    ) -> VoiceMemoRecord:
        """Upload *artifact* and insert its ``voice_memos`` row.

        Raises:
            EmptyArtifactError: If the artifact is missing or has zero bytes.
            UnauthenticatedError: If there is no author.
            UploadFailedError: If storage rejected the upload (no row written).
            DatabaseWriteFailedError: If the row insert failed after upload.
        """
        if artifact is None or artifact.size == 0:
            raise self._report(EmptyArtifactError())
        if not author_id:
            raise self._report(UnauthenticatedError("Sign in to publish a voice memo"))

        key = self.object_key(author_id, artifact.extension)
        try:
            await self._backend.storage.upload(
                self._bucket,
                key,
                artifact.data,
                content_type=artifact.mime_type,
                overwrite=True,
            )
        except Exception as exc:
            logger.exception("Upload of %s/%s failed", self._bucket, key)
            raise self._report(UploadFailedError()) from exc

        audio_url = self._backend.storage.get_public_url(self._bucket, key)
        duration = artifact.duration_seconds if duration_seconds is None else duration_seconds
        row = {
            "user_id": author_id,
            "title": (title or "").strip() or self._default_title,
            "audio_url": audio_url,
            "duration": int(duration),
            "is_published": True,
            "likes_count": 0,
            "comments_count": 0,
        }

        try:
            created = await self._backend.db.insert(MEMO_TABLE, row)
        except Exception as exc:
            logger.error("Memo insert failed; object %s/%s has no record", self._bucket, key)
            if self._compensate:
                await self._remove_orphan(key)
            raise self._report(DatabaseWriteFailedError(orphaned_key=key)) from exc

        record = VoiceMemoRecord.model_validate(created)
        logger.info("Published memo %s (%ss) for user %s", record.id, record.duration, author_id)
        if self._notifier is not None:
            self._notifier.success("Voice memo published!")
        return record

    async def publish_file(
        self,
        data: bytes,
        filename: str,
        content_type: str | None,
        title: str | None,
        author_id: str | None,
    ) -> VoiceMemoRecord:
        """Publish an existing audio file.

        The duration is read from the file itself.

        Raises:
            EmptyArtifactError: If the file is empty.
            InvalidAudioError: If the file cannot be decoded.
            ClipTooLongError: If it is longer than the maximum memo duration.
        """
        if not data:
            raise self._report(EmptyArtifactError())

        try:
            duration = await asyncio.to_thread(probe_duration_seconds, data, filename)
        except VoiceFeedError as exc:
            self._report(exc)
            raise
        if duration > self._max_duration:
            raise self._report(ClipTooLongError(duration, self._max_duration))

        mime_type = content_type
        if not mime_type or mime_type == "application/octet-stream":
            mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        artifact = AudioArtifact(data=data, mime_type=mime_type, duration_seconds=duration)
        return await self.publish(artifact, title, author_id, duration)

    async def _remove_orphan(self, key: str) -> None:
        try:
            await self._backend.storage.remove(self._bucket, [key])
            logger.info("Removed orphaned object %s/%s", self._bucket, key)
        except Exception:
            logger.warning("Could not remove orphaned object %s/%s", self._bucket, key, exc_info=True)

    def _report(self, error: VoiceFeedError) -> VoiceFeedError:
        if self._notifier is not None:
            self._notifier.error_from(error)
        return error
