"""WebSocket endpoints for browser recording and the live feed.

Each connection owns its own controller / reader and notifier; the
process-wide backend is shared through a view acting as the connecting
user (``Backend.with_token``). Outgoing messages go through a
per-connection queue drained by one sender task, so device, timer, and
change-feed events never write to the socket directly.

``/ws/record`` protocol (client -> server):
    - ``{"action": "start", "mime_type": "audio/webm"}``
      (``"permission": "denied"`` or ``"supported": false`` report a
      refused / missing microphone)
    - binary frames: recorded chunks
    - ``{"action": "stop"}``, ``{"action": "discard"}``
    - ``{"action": "publish", "title": "..."}``
    - ``{"action": "error", "detail": "..."}``: the recorder crashed

``/ws/feed`` protocol (client -> server):
    - ``{"action": "refresh"}``, ``{"action": "like", "memo_id": "..."}``

Server -> client: JSON ``WebSocketMessage`` objects (connected, state,
stopped, published, feed, toast, error).
"""

import asyncio
import contextlib
import json
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from voicefeed.core.config import Settings
from voicefeed.core.exceptions import (
    CaptureAlreadyActiveError,
    InvalidCaptureStateError,
    VoiceFeedError,
)
from voicefeed.core.models import FeedSnapshot, Toast, WebSocketMessage, WebSocketMessageType
from voicefeed.services.audio.capture import CaptureController, CaptureSession, CaptureState
from voicefeed.services.audio.device import PushAudioDevice
from voicefeed.services.backend import AuthUser, Backend
from voicefeed.services.feed import FeedReader
from voicefeed.services.notifications import Notifier
from voicefeed.services.publish import PublishPipeline

logger = logging.getLogger(__name__)

router = APIRouter()

_UNAUTHORIZED_CLOSE_CODE = 4401


class _Outbox:
    """Ordered server -> client message queue for one connection."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._queue: asyncio.Queue[WebSocketMessage] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def put(self, type_: WebSocketMessageType, data: dict | None = None) -> None:
        self._queue.put_nowait(WebSocketMessage(type=type_, data=data or {}))

    def toast(self, toast: Toast) -> None:
        self.put(WebSocketMessageType.toast, toast.model_dump(mode="json"))

    def error(self, exc: VoiceFeedError) -> None:
        self.put(WebSocketMessageType.error, {"detail": exc.detail, "code": exc.code})

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump())

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def _pump(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._websocket.send_json(message.model_dump(mode="json"))
            except (WebSocketDisconnect, RuntimeError):
                logger.debug("WebSocket closed; dropping %s message", message.type)
                return


async def _authenticate(websocket: WebSocket, backend: Backend, token: str | None) -> AuthUser | None:
    user = await backend.auth.get_current_user(token) if token else None
    if user is None:
        message = WebSocketMessage(
            type=WebSocketMessageType.error,
            data={"detail": "Not authenticated", "code": "UNAUTHENTICATED"},
        )
        await websocket.send_json(message.model_dump(mode="json"))
        await websocket.close(code=_UNAUTHORIZED_CLOSE_CODE)
    return user


def _parse(raw: str | None) -> dict:
    try:
        payload = json.loads(raw or "")
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


# ---------------------------------------------------------------------------
# /ws/record
# ---------------------------------------------------------------------------


@router.websocket("/ws/record")
async def record_ws(websocket: WebSocket, token: str | None = Query(None)) -> None:
    """Record in the browser, stream chunks here, then publish."""
    await websocket.accept()
    backend: Backend = websocket.app.state.backend
    settings: Settings = websocket.app.state.settings
    user = await _authenticate(websocket, backend, token)
    if user is None:
        return
    backend = backend.with_token(token)

    outbox = _Outbox(websocket)
    notifier = Notifier(ttl_seconds=settings.toast_ttl_seconds)
    notifier.subscribe(outbox.toast)

    def _on_state(state: CaptureState, session: CaptureSession) -> None:
        outbox.put(WebSocketMessageType.state, session.to_dict())

    device = PushAudioDevice()
    controller = CaptureController(
        device,
        max_duration_seconds=settings.max_recording_seconds,
        timeslice_seconds=settings.capture_timeslice_seconds,
        tick_interval=settings.capture_tick_seconds,
        notifier=notifier,
        on_state_change=_on_state,
    )
    pipeline = PublishPipeline.from_settings(backend, settings, notifier=notifier)
    watcher: asyncio.Task | None = None

    async def _watch_stop() -> None:
        try:
            artifact = await controller.wait_stopped()
        except VoiceFeedError:
            return  # already reported as a toast
        if artifact is None:
            return
        outbox.put(
            WebSocketMessageType.stopped,
            {
                "duration_seconds": artifact.duration_seconds,
                "size": artifact.size,
                "mime_type": artifact.mime_type,
                "stop_reason": controller.session.stop_reason,
            },
        )

    outbox.put(WebSocketMessageType.connected, {"user_id": user.id, "max_seconds": settings.max_recording_seconds})
    outbox.start()
    logger.info("Record WebSocket connected for user %s", user.id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                if device.stream is not None:
                    device.stream.push(message["bytes"])
                continue

            payload = _parse(message.get("text"))
            action = payload.get("action")
            try:
                if action == "start":
                    device.mime_type = payload.get("mime_type") or "audio/webm"
                    device.available = payload.get("supported", True) is not False
                    if payload.get("permission") == "denied":
                        device.deny()
                    await controller.start()
                    watcher = asyncio.create_task(_watch_stop())
                elif action == "stop":
                    await controller.stop()
                elif action == "discard":
                    await controller.discard()
                elif action == "publish":
                    record = await controller.publish(pipeline, author_id=user.id, title=payload.get("title"))
                    outbox.put(WebSocketMessageType.published, record.model_dump(mode="json"))
                elif action == "error":
                    if device.stream is not None:
                        device.stream.fail(RuntimeError(payload.get("detail") or "Recorder error"))
                else:
                    outbox.put(WebSocketMessageType.error, {"detail": f"Unknown action: {action}"})
            except (CaptureAlreadyActiveError, InvalidCaptureStateError) as exc:
                outbox.error(exc)
            except VoiceFeedError as exc:
                logger.debug("Record action %s failed: %s", action, exc.detail)
    except WebSocketDisconnect:
        pass
    finally:
        logger.info("Record WebSocket disconnected for user %s", user.id)
        await controller.close()
        if watcher is not None:
            watcher.cancel()
        await outbox.close()


# ---------------------------------------------------------------------------
# /ws/feed
# ---------------------------------------------------------------------------


@router.websocket("/ws/feed")
async def feed_ws(websocket: WebSocket, token: str | None = Query(None)) -> None:
    """Push a new feed snapshot whenever published memos change."""
    await websocket.accept()
    backend: Backend = websocket.app.state.backend
    settings: Settings = websocket.app.state.settings
    user = await _authenticate(websocket, backend, token)
    if user is None:
        return
    backend = backend.with_token(token)

    outbox = _Outbox(websocket)
    notifier = Notifier(ttl_seconds=settings.toast_ttl_seconds)
    notifier.subscribe(outbox.toast)

    def _on_snapshot(snapshot: FeedSnapshot) -> None:
        outbox.put(WebSocketMessageType.feed, snapshot.model_dump(mode="json"))

    reader = FeedReader(
        backend,
        include_updates=settings.feed_include_updates,
        notifier=notifier,
        on_snapshot=_on_snapshot,
    )

    outbox.put(WebSocketMessageType.connected, {"user_id": user.id})
    outbox.start()
    logger.info("Feed WebSocket connected for user %s", user.id)

    try:
        await reader.mount()
        while True:
            payload = _parse(await websocket.receive_text())
            action = payload.get("action")
            try:
                if action == "refresh":
                    await reader.refresh()
                elif action == "like":
                    await reader.like(str(payload.get("memo_id", "")))
                else:
                    outbox.put(WebSocketMessageType.error, {"detail": f"Unknown action: {action}"})
            except VoiceFeedError as exc:
                logger.debug("Feed action %s failed: %s", action, exc.detail)
    except WebSocketDisconnect:
        pass
    finally:
        logger.info("Feed WebSocket disconnected for user %s", user.id)
        await reader.unmount()
        await outbox.close()
