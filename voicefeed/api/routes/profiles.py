"""
Profile endpoints for the signed-in user (onboarding and profile card).
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, File, UploadFile

from voicefeed.api.dependencies import get_app_settings, get_current_user, get_user_backend
from voicefeed.core.config import Settings
from voicefeed.core.models import ProfileUpdate, UserProfile
from voicefeed.services.backend import AuthUser, Backend
from voicefeed.services.profiles import ProfileService

router = APIRouter(prefix="/profiles", tags=["profiles"])


def get_profile_service(
    backend: Backend = Depends(get_user_backend),
    settings: Settings = Depends(get_app_settings),
) -> ProfileService:
    return ProfileService(backend, avatar_bucket=settings.avatar_bucket)


@router.get("/me", response_model=UserProfile)
async def get_my_profile(
    user: AuthUser = Depends(get_current_user),
    service: ProfileService = Depends(get_profile_service),
):
    """Return the caller's profile (404 until onboarding is complete)."""
    return await service.require_profile(user.id)


@router.put("/me", response_model=UserProfile)
async def complete_onboarding(
    body: dict[str, Any] = Body(...),
    user: AuthUser = Depends(get_current_user),
    service: ProfileService = Depends(get_profile_service),
):
    """Create or replace the caller's profile from the onboarding form."""
    return await service.complete_onboarding(user, body)


@router.patch("/me", response_model=UserProfile)
async def update_my_profile(
    body: ProfileUpdate,
    user: AuthUser = Depends(get_current_user),
    service: ProfileService = Depends(get_profile_service),
):
    return await service.update_profile(user.id, body)


@router.post("/me/photo", response_model=UserProfile)
async def replace_my_photo(
    file: UploadFile = File(...),
    user: AuthUser = Depends(get_current_user),
    service: ProfileService = Depends(get_profile_service),
):
    data = await file.read()
    return await service.replace_photo(user.id, data, file.content_type or "")
