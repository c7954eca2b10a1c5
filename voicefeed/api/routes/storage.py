"""
Public object route for the local backend.

Serves files written by ``FilesystemObjectStorage`` at the same URL layout
the hosted storage uses, so ``audio_url`` / ``photo_url`` resolve locally.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from voicefeed.api.dependencies import get_backend
from voicefeed.core.exceptions import BackendError, ObjectNotFoundError
from voicefeed.services.backend import Backend
from voicefeed.services.backend.local import FilesystemObjectStorage

router = APIRouter(prefix="/storage/v1/object/public", tags=["storage"])


@router.get("/{bucket}/{key:path}")
async def get_public_object(bucket: str, key: str, backend: Backend = Depends(get_backend)):
    storage = backend.storage
    if not isinstance(storage, FilesystemObjectStorage):
        raise ObjectNotFoundError(f"{bucket}/{key}")
    try:
        path = storage.resolve(bucket, key)
    except BackendError:
        raise ObjectNotFoundError(f"{bucket}/{key}") from None
    if not path.is_file():
        raise ObjectNotFoundError(f"{bucket}/{key}")
    return FileResponse(path, media_type=storage.media_type(key))
