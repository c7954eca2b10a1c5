"""Tests for ProfileService (onboarding, lookups, edits, avatar replacement)."""

from unittest.mock import AsyncMock, patch

import pytest

from voicefeed.core.exceptions import (
    BackendError,
    ProfileNotFoundError,
    ProfileSaveFailedError,
    ProfileValidationError,
    UnauthenticatedError,
)
from voicefeed.core.models import ProfileCreate, ProfileUpdate, ToastLevel
from voicefeed.services.backend import AuthUser
from voicefeed.services.profiles import ProfileService


@pytest.fixture
def service(backend, notifier):
    """ProfileService over the local backend."""
    return ProfileService(backend, avatar_bucket="avatars", notifier=notifier)


def _form(**overrides) -> dict:
    form = {"display_name": "Alice", "age": 30, "interests": ["music", "tech"]}
    form.update(overrides)
    return form


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    """Onboarding form rules."""

    @pytest.mark.parametrize(
        ("overrides", "message"),
        [
            ({"display_name": " A "}, "Display name must be at least 2 characters"),
            ({"age": 15}, "Must be at least 16 years old"),
            ({"age": 101}, "Age cannot exceed 100"),
            ({"interests": []}, "Please select at least one interest"),
            ({"interests": ["  "]}, "Please select at least one interest"),
            ({"photo_url": "ftp://x/y.png"}, "Invalid photo URL"),
        ],
    )
    def test_rejects_invalid_form(self, overrides, message):
        with pytest.raises(ProfileValidationError) as exc_info:
            ProfileService.validate_onboarding(_form(**overrides))
        assert exc_info.value.detail == message

    def test_normalizes_form(self):
        form = ProfileService.validate_onboarding(
            _form(display_name="  Alice ", interests=["music", " music", "art"], photo_url="")
        )
        assert form.display_name == "Alice"
        assert form.interests == ["music", "art"]
        assert form.photo_url is None

    def test_model_passes_through(self):
        form = ProfileCreate(**_form())
        assert ProfileService.validate_onboarding(form) is form


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


class TestOnboarding:
    """complete_onboarding writes one row per user."""

    async def test_creates_profile(self, service, signed_in, notifier):
        profile = await service.complete_onboarding(signed_in.user, _form())
        assert profile.user_id == signed_in.user.id
        assert profile.email == "alice@example.com"
        assert profile.interests == ["music", "tech"]
        assert notifier.active()[-1].message == "Profile saved!"

    async def test_repeat_onboarding_updates_same_row(self, service, backend, signed_in):
        first = await service.complete_onboarding(signed_in.user, _form())
        second = await service.complete_onboarding(signed_in.user, _form(display_name="Alicia"))

        assert second.id == first.id
        assert second.display_name == "Alicia"
        assert len(await backend.db.select("user_profiles")) == 1

    async def test_invalid_form_posts_toast(self, service, signed_in, notifier):
        with pytest.raises(ProfileValidationError):
            await service.complete_onboarding(signed_in.user, _form(age=10))
        assert notifier.active()[0].level == ToastLevel.error

    async def test_requires_email(self, service):
        with pytest.raises(UnauthenticatedError, match="User email not found"):
            await service.complete_onboarding(AuthUser(id="u1"), _form())

    async def test_store_failure(self, service, backend, signed_in, notifier):
        with patch.object(backend.db, "upsert", new=AsyncMock(side_effect=BackendError("down"))):
            with pytest.raises(ProfileSaveFailedError):
                await service.complete_onboarding(signed_in.user, _form())
        assert notifier.active()[0].message == "Failed to update profile"


# ---------------------------------------------------------------------------
# Lookup and edits
# ---------------------------------------------------------------------------


class TestLookupAndEdit:
    """Reading and editing an existing profile."""

    async def test_get_missing_profile(self, service):
        assert await service.get_profile("nobody") is None

    async def test_require_missing_profile_redirects(self, service, notifier):
        with pytest.raises(ProfileNotFoundError):
            await service.require_profile("nobody")
        toast = notifier.active()[0]
        assert toast.level == ToastLevel.info
        assert toast.message == "No profile found, redirecting to onboarding"

    async def test_update_bio(self, service, signed_in):
        await service.complete_onboarding(signed_in.user, _form())
        profile = await service.update_profile(signed_in.user.id, ProfileUpdate(bio="Hi there"))
        assert profile.bio == "Hi there"
        assert profile.display_name == "Alice"

    async def test_empty_update_returns_profile(self, service, signed_in):
        await service.complete_onboarding(signed_in.user, _form())
        profile = await service.update_profile(signed_in.user.id, ProfileUpdate())
        assert profile.display_name == "Alice"

    async def test_update_missing_profile(self, service):
        with pytest.raises(ProfileNotFoundError):
            await service.update_profile("nobody", ProfileUpdate(bio="x"))


# ---------------------------------------------------------------------------
# Avatar
# ---------------------------------------------------------------------------


class TestReplacePhoto:
    """Swapping the avatar object and photo_url."""

    async def test_replace_photo(self, service, backend, signed_in):
        await service.complete_onboarding(signed_in.user, _form())
        profile = await service.replace_photo(signed_in.user.id, b"\x89PNG...", "image/png")

        key = f"{signed_in.user.id}/avatar"
        assert profile.photo_url == backend.storage.get_public_url("avatars", key)
        assert await backend.storage.exists("avatars", key)

    async def test_replace_photo_twice_overwrites(self, service, backend, signed_in):
        await service.complete_onboarding(signed_in.user, _form())
        await service.replace_photo(signed_in.user.id, b"first", "image/png")
        await service.replace_photo(signed_in.user.id, b"second", "image/png")

        path = backend.storage.resolve("avatars", f"{signed_in.user.id}/avatar")
        assert path.read_bytes() == b"second"

    async def test_rejects_non_image(self, service, signed_in):
        with pytest.raises(ProfileValidationError, match="Photo must be an image"):
            await service.replace_photo(signed_in.user.id, b"data", "audio/webm")

    async def test_rejects_empty_photo(self, service, signed_in):
        with pytest.raises(ProfileValidationError, match="Photo file is empty"):
            await service.replace_photo(signed_in.user.id, b"", "image/png")

    async def test_upload_failure(self, service, backend, signed_in):
        await service.complete_onboarding(signed_in.user, _form())
        with patch.object(backend.storage, "upload", new=AsyncMock(side_effect=BackendError("x"))):
            with pytest.raises(ProfileSaveFailedError):
                await service.replace_photo(signed_in.user.id, b"img", "image/png")
