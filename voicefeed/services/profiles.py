"""
User profiles: onboarding, lookup, and profile card edits.
"""

import logging
from typing import Any

from pydantic import ValidationError

from voicefeed.core.exceptions import (
    ProfileFetchFailedError,
    ProfileNotFoundError,
    ProfileSaveFailedError,
    ProfileValidationError,
    UnauthenticatedError,
    VoiceFeedError,
)
from voicefeed.core.models import ProfileCreate, ProfileUpdate, UserProfile
from voicefeed.services.backend import AuthUser, Backend
from voicefeed.services.notifications import Notifier

logger = logging.getLogger(__name__)

PROFILE_TABLE = "user_profiles"


def validation_message(exc: ValidationError) -> str:
    """First human-readable message of a pydantic ValidationError."""
    first = exc.errors()[0]
    error = (first.get("ctx") or {}).get("error")
    return str(error) if error else first["msg"]


class ProfileService:
    """Reads and writes ``user_profiles`` rows and avatar objects.

    Args:
        backend: Capability object.
        avatar_bucket: Object storage bucket for profile photos.
        notifier: Receives success / failure toasts.
    """

    def __init__(
        self,
        backend: Backend,
        avatar_bucket: str = "avatars",
        notifier: Notifier | None = None,
    ) -> None:
        self._backend = backend
        self._bucket = avatar_bucket
        self._notifier = notifier

    async def get_profile(self, user_id: str) -> UserProfile | None:
        try:
            rows = await self._backend.db.select(PROFILE_TABLE, filters={"user_id": user_id}, limit=1)
        except Exception as exc:
            logger.exception("Failed to fetch profile for %s", user_id)
            raise self._report(ProfileFetchFailedError()) from exc
        return UserProfile.model_validate(rows[0]) if rows else None

    async def require_profile(self, user_id: str) -> UserProfile:
        """Like :meth:`get_profile` but a missing profile means onboarding is due."""
        profile = await self.get_profile(user_id)
        if profile is None:
            if self._notifier is not None:
                self._notifier.info("No profile found, redirecting to onboarding")
            raise ProfileNotFoundError(user_id)
        return profile

    @staticmethod
    def validate_onboarding(data: ProfileCreate | dict[str, Any]) -> ProfileCreate:
        """Coerce raw form data into a :class:`ProfileCreate`.

        Raises:
            ProfileValidationError: With the first failing field's message.
        """
        if isinstance(data, ProfileCreate):
            return data
        try:
            return ProfileCreate.model_validate(data)
        except ValidationError as exc:
            raise ProfileValidationError(validation_message(exc)) from exc

    async def complete_onboarding(
        self,
        user: AuthUser,
        data: ProfileCreate | dict[str, Any],
    ) -> UserProfile:
        """Create or replace the user's profile from the onboarding form."""
        try:
            form = self.validate_onboarding(data)
        except ProfileValidationError as exc:
            self._report(exc)
            raise
        if not user.email:
            raise self._report(UnauthenticatedError("User email not found"))

        row = {
            "user_id": user.id,
            "email": user.email,
            "display_name": form.display_name,
            "age": form.age,
            "photo_url": form.photo_url,
            "interests": form.interests,
        }
        try:
            stored = await self._backend.db.upsert(PROFILE_TABLE, row, conflict_key="user_id")
        except Exception as exc:
            logger.exception("Onboarding upsert failed for %s", user.id)
            raise self._report(ProfileSaveFailedError()) from exc

        logger.info("Profile saved for user %s", user.id)
        if self._notifier is not None:
            self._notifier.success("Profile saved!")
        return UserProfile.model_validate(stored)

    async def update_profile(self, user_id: str, update: ProfileUpdate) -> UserProfile:
        """Apply a profile card edit (display name / bio)."""
        patch = update.model_dump(exclude_none=True)
        if not patch:
            return await self.require_profile(user_id)
        try:
            rows = await self._backend.db.update(PROFILE_TABLE, patch, {"user_id": user_id})
        except Exception as exc:
            logger.exception("Profile update failed for %s", user_id)
            raise self._report(ProfileSaveFailedError()) from exc
        if not rows:
            raise ProfileNotFoundError(user_id)

        if self._notifier is not None:
            self._notifier.success("Profile updated successfully!")
        return UserProfile.model_validate(rows[0])

    async def replace_photo(self, user_id: str, data: bytes, content_type: str) -> UserProfile:
        """Swap the user's avatar and point ``photo_url`` at the new object."""
        if not data:
            raise self._report(ProfileValidationError("Photo file is empty"))
        if not content_type.startswith("image/"):
            raise self._report(ProfileValidationError("Photo must be an image"))

        profile = await self.require_profile(user_id)
        storage = self._backend.storage
        key = f"{user_id}/avatar"

        if profile.photo_url:
            old_key = f"{user_id}/{profile.photo_url.rsplit('/', 1)[-1]}"
            try:
                await storage.remove(self._bucket, [old_key])
            except Exception:
                logger.warning("Could not remove previous avatar %s", old_key, exc_info=True)

        try:
            await storage.upload(self._bucket, key, data, content_type=content_type, overwrite=True)
            photo_url = storage.get_public_url(self._bucket, key)
            rows = await self._backend.db.update(
                PROFILE_TABLE, {"photo_url": photo_url}, {"user_id": user_id}
            )
        except Exception as exc:
            logger.exception("Avatar replacement failed for %s", user_id)
            raise self._report(ProfileSaveFailedError()) from exc

        if self._notifier is not None:
            self._notifier.success("Profile updated successfully!")
        return UserProfile.model_validate(rows[0])

    def _report(self, error: VoiceFeedError) -> VoiceFeedError:
        if self._notifier is not None:
            self._notifier.error_from(error)
        return error
