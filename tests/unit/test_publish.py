"""Tests for PublishPipeline (upload, then memo row insert)."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from voicefeed.core.exceptions import (
    BackendError,
    ClipTooLongError,
    DatabaseWriteFailedError,
    EmptyArtifactError,
    InvalidAudioError,
    UnauthenticatedError,
    UploadFailedError,
)
from voicefeed.core.models import ToastLevel
from voicefeed.services.audio.capture import AudioArtifact, CaptureController
from voicefeed.services.audio.device import PushAudioDevice
from voicefeed.services.feed import FeedReader
from voicefeed.services.publish import PublishPipeline

BUCKET = "voice-memos"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _artifact(data: bytes = b"webm-audio", duration: int = 5) -> AudioArtifact:
    return AudioArtifact(data=data, mime_type="audio/webm", duration_seconds=duration)


def _object_key(audio_url: str) -> str:
    return audio_url.split(f"/{BUCKET}/", 1)[1]


@pytest.fixture
def pipeline(backend, notifier):
    """Pipeline over the local backend with orphan compensation off."""
    return PublishPipeline(backend, bucket=BUCKET, notifier=notifier)


@pytest.fixture
def recorded_calls():
    """Mock backend recording the order of storage and row calls."""
    calls: list[str] = []
    mock = MagicMock()

    async def _upload(*args, **kwargs):
        calls.append("upload")
        return "voice-memos/key"

    async def _insert(table, row):
        calls.append("insert")
        return {**row, "id": "memo-1", "created_at": datetime.now(UTC)}

    mock.storage.upload = AsyncMock(side_effect=_upload)
    mock.storage.get_public_url.return_value = "http://test/voice-memos/key.webm"
    mock.db.insert = AsyncMock(side_effect=_insert)
    return mock, calls


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestPublish:
    """Successful publication."""

    async def test_recorded_memo_appears_in_feed(self, backend, signed_in, notifier):
        """Record for five seconds, publish, and find the memo at the top of the feed."""
        device = PushAudioDevice()
        controller = CaptureController(device, tick_interval=None, notifier=notifier)
        pipeline = PublishPipeline(backend, bucket=BUCKET, notifier=notifier)

        await controller.start()
        device.stream.push(b"webm-audio")
        for _ in range(5):
            controller.tick()
        await controller.stop()
        record = await controller.publish(pipeline, author_id=signed_in.user.id, title="Test")

        assert record.duration == 5
        assert record.title == "Test"
        assert record.is_published is True
        assert record.likes_count == 0
        assert record.comments_count == 0

        snapshot = await FeedReader(backend).refresh()
        assert [item.id for item in snapshot.items] == [record.id]
        assert await backend.storage.exists(BUCKET, _object_key(record.audio_url))
        assert notifier.active()[-1].message == "Voice memo published!"

    async def test_upload_precedes_insert(self, recorded_calls):
        mock, calls = recorded_calls
        pipeline = PublishPipeline(mock, bucket=BUCKET)
        await pipeline.publish(_artifact(), title="Hi", author_id="user-1")
        assert calls == ["upload", "insert"]

    async def test_row_shape(self, recorded_calls):
        mock, _ = recorded_calls
        pipeline = PublishPipeline(mock, bucket=BUCKET)
        await pipeline.publish(_artifact(duration=7), title=" Hi ", author_id="user-1")

        table, row = mock.db.insert.await_args.args
        assert table == "voice_memos"
        assert row == {
            "user_id": "user-1",
            "title": "Hi",
            "audio_url": "http://test/voice-memos/key.webm",
            "duration": 7,
            "is_published": True,
            "likes_count": 0,
            "comments_count": 0,
        }

    async def test_object_key_layout(self, recorded_calls):
        mock, _ = recorded_calls
        pipeline = PublishPipeline(mock, bucket=BUCKET)
        await pipeline.publish(_artifact(), title=None, author_id="user-1")

        bucket, key, data = mock.storage.upload.await_args.args
        assert bucket == BUCKET
        assert key.startswith("user-1/voice-memo-")
        assert key.endswith(".webm")
        assert mock.storage.upload.await_args.kwargs["overwrite"] is True

    async def test_blank_title_uses_default(self, pipeline, signed_in):
        record = await pipeline.publish(_artifact(), title="   ", author_id=signed_in.user.id)
        assert record.title == "Voice memo"

    async def test_explicit_duration_wins(self, pipeline, signed_in):
        record = await pipeline.publish(
            _artifact(duration=5), title="x", author_id=signed_in.user.id, duration_seconds=9
        )
        assert record.duration == 9


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class TestPreconditions:
    """Nothing is uploaded when the input is unusable."""

    @pytest.mark.parametrize("artifact", [None, AudioArtifact(b"", "audio/webm", 3)])
    async def test_empty_artifact_never_uploads(self, pipeline, backend, notifier, artifact):
        with patch.object(backend.storage, "upload", new_callable=AsyncMock) as upload:
            with pytest.raises(EmptyArtifactError):
                await pipeline.publish(artifact, title="x", author_id="user-1")
        upload.assert_not_awaited()
        assert notifier.active()[0].code == "CAPTURE_EMPTY"

    async def test_missing_author(self, pipeline, backend):
        with patch.object(backend.storage, "upload", new_callable=AsyncMock) as upload:
            with pytest.raises(UnauthenticatedError):
                await pipeline.publish(_artifact(), title="x", author_id=None)
        upload.assert_not_awaited()


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    """Upload and insert failures."""

    async def test_upload_failure_writes_no_row(self, pipeline, backend, notifier, signed_in):
        with patch.object(
            backend.storage, "upload", new=AsyncMock(side_effect=BackendError("disk full"))
        ):
            with pytest.raises(UploadFailedError):
                await pipeline.publish(_artifact(), title="x", author_id=signed_in.user.id)

        assert await backend.db.select("voice_memos") == []
        toasts = notifier.active()
        assert len(toasts) == 1
        assert toasts[0].level == ToastLevel.error
        assert toasts[0].message == "Failed to upload recording"

    async def test_insert_failure_leaves_orphan(self, pipeline, backend, notifier, signed_in):
        """Upload succeeded, insert failed: the object stays, no memo is visible."""
        with patch.object(
            backend.db, "insert", new=AsyncMock(side_effect=BackendError("constraint"))
        ):
            with pytest.raises(DatabaseWriteFailedError) as exc_info:
                await pipeline.publish(_artifact(), title="x", author_id=signed_in.user.id)

        key = exc_info.value.orphaned_key
        assert key.startswith(f"{signed_in.user.id}/voice-memo-")
        assert await backend.storage.exists(BUCKET, key)
        assert (await FeedReader(backend).refresh()).items == []
        assert [t.code for t in notifier.active()] == ["DATABASE_WRITE_FAILED"]

    async def test_insert_failure_compensation_removes_object(self, backend, signed_in):
        pipeline = PublishPipeline(backend, bucket=BUCKET, compensate_orphans=True)
        with patch.object(
            backend.db, "insert", new=AsyncMock(side_effect=BackendError("constraint"))
        ):
            with pytest.raises(DatabaseWriteFailedError) as exc_info:
                await pipeline.publish(_artifact(), title="x", author_id=signed_in.user.id)

        assert not await backend.storage.exists(BUCKET, exc_info.value.orphaned_key)


# ---------------------------------------------------------------------------
# File upload
# ---------------------------------------------------------------------------


class TestPublishFile:
    """Publishing an existing audio file."""

    async def test_duration_read_from_file(self, pipeline, signed_in, wav_2s):
        record = await pipeline.publish_file(
            wav_2s,
            filename="clip.wav",
            content_type=None,
            title="Uploaded",
            author_id=signed_in.user.id,
        )
        assert record.duration == 2
        assert record.audio_url.endswith(".wav")

    async def test_too_long_rejected(self, backend, signed_in, wav_2s):
        pipeline = PublishPipeline(backend, bucket=BUCKET, max_duration_seconds=1)
        with pytest.raises(ClipTooLongError):
            await pipeline.publish_file(
                wav_2s, "clip.wav", "audio/wav", title=None, author_id=signed_in.user.id
            )
        assert await backend.db.select("voice_memos") == []

    async def test_undecodable_file(self, pipeline, signed_in):
        with pytest.raises(InvalidAudioError):
            await pipeline.publish_file(
                b"definitely not audio", "clip.wav", "audio/wav", None, signed_in.user.id
            )

    async def test_empty_file(self, pipeline, signed_in):
        with pytest.raises(EmptyArtifactError):
            await pipeline.publish_file(b"", "clip.wav", "audio/wav", None, signed_in.user.id)
