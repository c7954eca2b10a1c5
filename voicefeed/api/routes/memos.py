"""
Voice memo endpoints: feed snapshot, file upload publish, and likes.
"""

from fastapi import APIRouter, Depends, File, Form, UploadFile

from voicefeed.api.dependencies import get_app_settings, get_current_user, get_user_backend
from voicefeed.core.config import Settings
from voicefeed.core.models import FeedSnapshot, LikeResponse, VoiceMemoRecord
from voicefeed.services.backend import AuthUser, Backend
from voicefeed.services.feed import FeedReader
from voicefeed.services.publish import PublishPipeline

router = APIRouter(prefix="/memos", tags=["memos"])


@router.get("", response_model=FeedSnapshot)
async def get_feed(
    _user: AuthUser = Depends(get_current_user),
    backend: Backend = Depends(get_user_backend),
):
    """Published memos, newest first, with author projections."""
    return await FeedReader(backend).refresh()


@router.post("", response_model=VoiceMemoRecord, status_code=201)
async def upload_memo(
    file: UploadFile = File(...),
    title: str | None = Form(None),
    user: AuthUser = Depends(get_current_user),
    backend: Backend = Depends(get_user_backend),
    settings: Settings = Depends(get_app_settings),
):
    """Publish an uploaded audio file as a new memo."""
    data = await file.read()
    pipeline = PublishPipeline.from_settings(backend, settings)
    return await pipeline.publish_file(
        data,
        filename=file.filename or "upload",
        content_type=file.content_type,
        title=title,
        author_id=user.id,
    )


@router.post("/{memo_id}/like", response_model=LikeResponse)
async def like_memo(
    memo_id: str,
    _user: AuthUser = Depends(get_current_user),
    backend: Backend = Depends(get_user_backend),
):
    return await FeedReader(backend).like(memo_id)
