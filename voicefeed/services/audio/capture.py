"""Recording state machine for one capture attempt at a time.

Device callbacks never touch session state directly: they enqueue events
that a single worker task consumes in order (chunk, tick, stop, device
error). Completion of a stop, manual or automatic, resolves one future
that callers await through :meth:`CaptureController.wait_stopped`.

Usage::

    controller = CaptureController(SoundDeviceMicrophone(), notifier=notifier)
    await controller.start()
    artifact = await controller.stop()
    record = await controller.publish(pipeline, author_id=user.id, title="Hello")
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from voicefeed.core.exceptions import (
    CaptureAlreadyActiveError,
    CaptureEmptyError,
    DeviceUnavailableError,
    InvalidCaptureStateError,
    VoiceFeedError,
)
from voicefeed.core.models import VoiceMemoRecord
from voicefeed.services.audio.device import AudioStream, BaseAudioDevice

if TYPE_CHECKING:
    from voicefeed.services.notifications import Notifier
    from voicefeed.services.publish import PublishPipeline

logger = logging.getLogger(__name__)

MAX_RECORDING_SECONDS = 180

_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/x-m4a": "m4a",
    "audio/aac": "aac",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
}


class CaptureState(StrEnum):
    idle = "idle"
    requesting = "requesting"
    recording = "recording"
    stopped = "stopped"
    uploading = "uploading"
    failed = "failed"


class StopReason(StrEnum):
    manual = "manual"
    max_duration = "max_duration"


@dataclass(frozen=True)
class AudioArtifact:
    """The finished, immutable recording."""

    data: bytes
    mime_type: str
    duration_seconds: int

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        base = self.mime_type.split(";", 1)[0].strip().lower()
        return _EXTENSIONS.get(base, "bin")


@dataclass
class CaptureSession:
    """State of the current recording attempt."""

    state: CaptureState = CaptureState.idle
    elapsed_seconds: int = 0
    chunks: list[bytes] = field(default_factory=list)
    artifact: AudioArtifact | None = None
    stop_reason: StopReason | None = None

    @property
    def recorded_bytes(self) -> int:
        return sum(len(c) for c in self.chunks)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "elapsed_seconds": self.elapsed_seconds,
            "recorded_bytes": self.recorded_bytes,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
        }


# Worker events
@dataclass(frozen=True)
class _Chunk:
    data: bytes


@dataclass(frozen=True)
class _Tick:
    pass


@dataclass(frozen=True)
class _Stop:
    reason: StopReason


@dataclass(frozen=True)
class _DeviceError:
    error: Exception


StateListener = Callable[[CaptureState, CaptureSession], None]


class CaptureController:
    """Owns one :class:`CaptureSession` and the device stream behind it.

    Args:
        device: Source of microphone streams.
        max_duration_seconds: Hard cap; reaching it stops the recording.
        timeslice_seconds: Chunk interval requested from the stream.
        tick_interval: Seconds between duration ticks. ``None`` disables the
            internal timer; call :meth:`tick` instead.
        notifier: Receives one toast per user-facing failure.
        on_state_change: Called synchronously after every transition.
    """

    def __init__(
        self,
        device: BaseAudioDevice,
        max_duration_seconds: int = MAX_RECORDING_SECONDS,
        timeslice_seconds: float = 1.0,
        tick_interval: float | None = 1.0,
        notifier: "Notifier | None" = None,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._device = device
        self._max_duration = max_duration_seconds
        self._timeslice = timeslice_seconds
        self._tick_interval = tick_interval
        self._notifier = notifier
        self._on_state_change = on_state_change

        self.session = CaptureSession()
        self._stream: AudioStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None
        self._stopped: asyncio.Future | None = None
        self._stream_format: tuple = ("application/octet-stream", bytes)

    @property
    def state(self) -> CaptureState:
        return self.session.state

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Acquire the microphone and begin recording.

        Raises:
            CaptureAlreadyActiveError: If a session is not idle.
            PermissionDeniedError: If microphone access is refused.
            DeviceUnavailableError: If no capture device is available.
        """
        if self.session.state != CaptureState.idle:
            raise CaptureAlreadyActiveError()

        self.session = CaptureSession()
        self._set_state(CaptureState.requesting)
        try:
            stream = await self._device.request_microphone()
        except VoiceFeedError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            error = DeviceUnavailableError(f"Audio capture failed: {exc}")
            self._fail(error)
            raise error from exc

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stopped = self._loop.create_future()
        self._stopped.add_done_callback(_consume_exception)
        self._stream = stream
        self._stream_format = (stream.mime_type, stream.encode)

        try:
            stream.start(self._on_chunk, self._timeslice, self._on_device_error)
        except Exception as exc:
            self._release_stream()
            error = exc if isinstance(exc, VoiceFeedError) else DeviceUnavailableError(str(exc))
            self._resolve(error=error)
            self._fail(error)
            if error is exc:
                raise
            raise error from exc

        self._set_state(CaptureState.recording)
        self._worker = asyncio.create_task(self._run())
        if self._tick_interval is not None:
            self._ticker = asyncio.create_task(self._tick_loop())
        logger.info("Recording started (max %ss)", self._max_duration)

    def tick(self) -> None:
        """Advance the duration timer by one second."""
        if self.session.state == CaptureState.recording:
            self._post(_Tick())

    async def stop(self) -> AudioArtifact | None:
        """Stop recording and return the artifact.

        A no-op returning the existing artifact when already stopped.

        Raises:
            CaptureEmptyError: If nothing was recorded.
            InvalidCaptureStateError: If no recording is in progress.
        """
        state = self.session.state
        if state in (CaptureState.stopped, CaptureState.uploading):
            return self.session.artifact
        if state != CaptureState.recording:
            raise InvalidCaptureStateError("stop", state.value)
        self._post(_Stop(StopReason.manual))
        return await self.wait_stopped()

    async def wait_stopped(self) -> AudioArtifact | None:
        """Wait until the current recording stops (manually or at the cap).

        Returns None if the recording was discarded instead.
        """
        if self._stopped is None:
            raise InvalidCaptureStateError("wait for a stop", self.session.state.value)
        return await asyncio.shield(self._stopped)

    async def publish(
        self,
        pipeline: "PublishPipeline",
        author_id: str | None,
        title: str | None = None,
    ) -> VoiceMemoRecord:
        """Hand the stopped artifact to *pipeline*.

        On success the session resets to idle; on any failure it returns to
        stopped with the artifact retained for another attempt.
        """
        artifact = self.session.artifact
        if self.session.state != CaptureState.stopped or artifact is None:
            raise InvalidCaptureStateError("publish", self.session.state.value)

        self._set_state(CaptureState.uploading)
        try:
            record = await pipeline.publish(
                artifact,
                title=title,
                author_id=author_id,
                duration_seconds=artifact.duration_seconds,
            )
        except Exception:
            self._set_state(CaptureState.stopped)
            raise

        self._reset()
        return record

    async def discard(self) -> None:
        """Drop the current recording or artifact and return to idle."""
        state = self.session.state
        if state == CaptureState.idle:
            return
        if state in (CaptureState.requesting, CaptureState.uploading):
            raise InvalidCaptureStateError("discard", state.value)
        await self._cancel_tasks()
        self._release_stream()
        self._resolve(result=None)
        self._reset()
        logger.info("Recording discarded")

    async def close(self) -> None:
        """Release the device and drop any unpublished recording."""
        if self.session.state in (CaptureState.recording, CaptureState.stopped, CaptureState.failed):
            await self.discard()
        else:
            await self._cancel_tasks()
            self._release_stream()

    # ------------------------------------------------------------------
    # Device callbacks (may run on a foreign thread)
    # ------------------------------------------------------------------

    def _on_chunk(self, data: bytes) -> None:
        self._post(_Chunk(data))

    def _on_device_error(self, error: Exception) -> None:
        self._post(_DeviceError(error))

    def _post(self, event) -> None:
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(queue.put_nowait, event)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            self._post(_Tick())

    async def _run(self) -> None:
        queue = self._queue
        try:
            while True:
                event = await queue.get()
                if isinstance(event, _Chunk):
                    if event.data:
                        self.session.chunks.append(event.data)
                elif isinstance(event, _Tick):
                    self.session.elapsed_seconds = min(
                        self.session.elapsed_seconds + 1, self._max_duration
                    )
                    if self.session.elapsed_seconds >= self._max_duration:
                        await self._finish(StopReason.max_duration)
                        return
                elif isinstance(event, _Stop):
                    await self._finish(event.reason)
                    return
                elif isinstance(event, _DeviceError):
                    logger.warning("Capture device error: %s", event.error)
                    self._abort(DeviceUnavailableError(f"Recording failed: {event.error}"))
                    return
        except asyncio.CancelledError:
            self._release_stream()
            raise
        except Exception as exc:
            logger.exception("Capture worker crashed")
            self._abort(DeviceUnavailableError(f"Recording failed: {exc}"))

    async def _finish(self, reason: StopReason) -> None:
        self._stop_ticker()
        self._release_stream()
        # Let chunks already marshalled from the device thread land first
        await asyncio.sleep(0)
        self._drain_chunks()

        if not self.session.chunks:
            error = CaptureEmptyError()
            self._resolve(error=error)
            self._fail(error)
            return

        stream_mime, encode = self._stream_format
        try:
            data = encode(b"".join(self.session.chunks))
        except Exception as exc:
            logger.exception("Failed to encode recording")
            self._abort(DeviceUnavailableError(f"Could not encode recording: {exc}"))
            return

        artifact = AudioArtifact(
            data=data,
            mime_type=stream_mime,
            duration_seconds=self.session.elapsed_seconds,
        )
        self.session.artifact = artifact
        self.session.stop_reason = reason
        self._set_state(CaptureState.stopped)
        logger.info(
            "Recording stopped (%s) after %ss, %d bytes",
            reason,
            artifact.duration_seconds,
            artifact.size,
        )
        if reason == StopReason.max_duration and self._notifier is not None:
            self._notifier.info(f"Maximum recording length of {self._max_duration}s reached")
        self._resolve(result=artifact)

    def _drain_chunks(self) -> None:
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if isinstance(event, _Chunk) and event.data:
                self.session.chunks.append(event.data)

    def _abort(self, error: VoiceFeedError) -> None:
        self._stop_ticker()
        self._release_stream()
        self._resolve(error=error)
        self._fail(error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: CaptureState) -> None:
        previous = self.session.state
        self.session.state = state
        logger.debug("Capture state %s -> %s", previous, state)
        if self._on_state_change is not None:
            try:
                self._on_state_change(state, self.session)
            except Exception:
                logger.exception("Capture state listener failed")

    def _fail(self, error: VoiceFeedError) -> None:
        self._set_state(CaptureState.failed)
        logger.warning("Capture failed: %s", error.detail)
        if self._notifier is not None:
            self._notifier.error_from(error)
        self._reset()

    def _reset(self) -> None:
        self._stream = None
        self._worker = None
        self._ticker = None
        self._stopped = None
        self.session = CaptureSession()
        self._set_state(CaptureState.idle)

    def _release_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception:
            logger.warning("Failed to release capture stream", exc_info=True)

    def _stop_ticker(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.cancel()

    async def _cancel_tasks(self) -> None:
        self._stop_ticker()
        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    def _resolve(self, result: AudioArtifact | None = None, error: Exception | None = None) -> None:
        future = self._stopped
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)


def _consume_exception(future: asyncio.Future) -> None:
    # Mark stop failures as retrieved when nobody awaits wait_stopped()
    if not future.cancelled():
        future.exception()
