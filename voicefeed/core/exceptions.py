"""
VoiceFeed exception hierarchy.

All application-specific exceptions inherit from VoiceFeedError,
enabling centralized error handling in the API middleware layer and
uniform conversion into toast notifications.
"""

from datetime import UTC, datetime


class VoiceFeedError(Exception):
    """Base exception for all VoiceFeed errors."""

    def __init__(
        self,
        detail: str = "An unexpected error occurred",
        code: str = "VOICEFEED_ERROR",
        status_code: int = 500,
    ) -> None:
        self.detail = detail
        self.code = code
        self.status_code = status_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)


class BackendError(VoiceFeedError):
    """Raised by a backend capability (store, storage, auth, realtime) on failure."""

    def __init__(self, detail: str = "Backend request failed") -> None:
        super().__init__(detail=detail, code="BACKEND_ERROR", status_code=502)


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


class PermissionDeniedError(VoiceFeedError):
    """Raised when microphone access is refused."""

    def __init__(self, detail: str = "Microphone permission denied") -> None:
        super().__init__(detail=detail, code="PERMISSION_DENIED", status_code=403)


class DeviceUnavailableError(VoiceFeedError):
    """Raised when no capture device or codec is available."""

    def __init__(self, detail: str = "Audio capture is not available") -> None:
        super().__init__(detail=detail, code="DEVICE_UNAVAILABLE", status_code=503)


class CaptureEmptyError(VoiceFeedError):
    """Raised when a capture finished with zero recorded bytes."""

    def __init__(self, detail: str = "No audio data recorded") -> None:
        super().__init__(detail=detail, code="CAPTURE_EMPTY", status_code=422)


class EmptyArtifactError(CaptureEmptyError):
    """Raised when publish() receives a missing or zero-size artifact."""

    def __init__(self) -> None:
        super().__init__(detail="Cannot publish an empty recording")


class CaptureAlreadyActiveError(VoiceFeedError):
    """Raised when starting a capture while another session is in progress."""

    def __init__(self) -> None:
        super().__init__(
            detail="A recording is already in progress",
            code="CAPTURE_ALREADY_ACTIVE",
            status_code=409,
        )


class InvalidCaptureStateError(VoiceFeedError):
    """Raised when a capture operation is not allowed in the current state."""

    def __init__(self, operation: str, state: str) -> None:
        super().__init__(
            detail=f"Cannot {operation} while capture is {state}",
            code="INVALID_CAPTURE_STATE",
            status_code=409,
        )


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------


class UploadFailedError(VoiceFeedError):
    """Raised when the audio object could not be stored."""

    def __init__(self, detail: str = "Failed to upload recording") -> None:
        super().__init__(detail=detail, code="UPLOAD_FAILED", status_code=502)


class DatabaseWriteFailedError(VoiceFeedError):
    """Raised when the memo row could not be written after a successful upload.

    ``orphaned_key`` names the storage object left without a record.
    """

    def __init__(self, orphaned_key: str | None = None, detail: str = "Failed to save recording") -> None:
        self.orphaned_key = orphaned_key
        super().__init__(detail=detail, code="DATABASE_WRITE_FAILED", status_code=502)


class ClipTooLongError(VoiceFeedError):
    """Raised when an uploaded clip exceeds the maximum memo duration."""

    def __init__(self, duration_seconds: int, max_seconds: int) -> None:
        super().__init__(
            detail=f"Audio is {duration_seconds}s long; the limit is {max_seconds}s",
            code="CLIP_TOO_LONG",
            status_code=422,
        )


class InvalidAudioError(VoiceFeedError):
    """Raised when an uploaded file cannot be decoded as audio."""

    def __init__(self, detail: str = "Uploaded file is not readable audio") -> None:
        super().__init__(detail=detail, code="INVALID_AUDIO", status_code=422)


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------


class FeedFetchFailedError(VoiceFeedError):
    """Raised when the published memo query fails."""

    def __init__(self, detail: str = "Failed to load voice memos") -> None:
        super().__init__(detail=detail, code="FEED_FETCH_FAILED", status_code=502)


class LikeFailedError(VoiceFeedError):
    """Raised when a like counter increment fails."""

    def __init__(self, detail: str = "Failed to like voice memo") -> None:
        super().__init__(detail=detail, code="LIKE_FAILED", status_code=502)


class ObjectNotFoundError(VoiceFeedError):
    """Raised when a stored object does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(
            detail=f"Object not found: {path}",
            code="OBJECT_NOT_FOUND",
            status_code=404,
        )


class MemoNotFoundError(VoiceFeedError):
    """Raised when a voice memo ID does not exist."""

    def __init__(self, memo_id: str) -> None:
        super().__init__(
            detail=f"Voice memo not found: {memo_id}",
            code="MEMO_NOT_FOUND",
            status_code=404,
        )


# ---------------------------------------------------------------------------
# Profiles & auth
# ---------------------------------------------------------------------------


class ProfileFetchFailedError(VoiceFeedError):
    """Raised when author / user profile data cannot be loaded."""

    def __init__(self, detail: str = "Failed to load profile") -> None:
        super().__init__(detail=detail, code="PROFILE_FETCH_FAILED", status_code=502)


class ProfileSaveFailedError(VoiceFeedError):
    """Raised when a profile write (onboarding, edit, avatar) fails."""

    def __init__(self, detail: str = "Failed to update profile") -> None:
        super().__init__(detail=detail, code="PROFILE_SAVE_FAILED", status_code=502)


class ProfileNotFoundError(VoiceFeedError):
    """Raised when the signed-in user has not completed onboarding."""

    def __init__(self, user_id: str) -> None:
        super().__init__(
            detail=f"No profile found for user {user_id}",
            code="PROFILE_NOT_FOUND",
            status_code=404,
        )


class ProfileValidationError(VoiceFeedError):
    """Raised when onboarding data fails validation."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail=detail, code="PROFILE_INVALID", status_code=422)


class UnauthenticatedError(VoiceFeedError):
    """Raised when an operation requires a signed-in user."""

    def __init__(self, detail: str = "Not authenticated") -> None:
        super().__init__(detail=detail, code="UNAUTHENTICATED", status_code=401)
