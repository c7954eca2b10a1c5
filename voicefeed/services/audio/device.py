"""Capture devices and their streams.

A device grants (or refuses) microphone access and hands back an
``AudioStream``. The stream delivers encoded chunks at a fixed timeslice
until ``stop()`` releases it. Callbacks may fire on a foreign thread
(PortAudio); consumers must marshal them onto their own loop.

Usage::

    device = SoundDeviceMicrophone(sample_rate=16000)
    stream = await device.request_microphone()
    stream.start(on_chunk, timeslice_seconds=1.0, on_error=on_error)
    ...
    stream.stop()
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable

from voicefeed.core.exceptions import DeviceUnavailableError, PermissionDeniedError
from voicefeed.services.audio.processor import AudioProcessor

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[bytes], None]
ErrorCallback = Callable[[Exception], None]


class AudioStream(ABC):
    """An open capture stream holding the microphone."""

    mime_type: str = "application/octet-stream"

    @abstractmethod
    def start(
        self,
        on_chunk: ChunkCallback,
        timeslice_seconds: float,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Begin delivering chunks every *timeslice_seconds*."""

    @abstractmethod
    def stop(self) -> None:
        """Release every track of the stream. Safe to call more than once."""

    def encode(self, data: bytes) -> bytes:
        """Wrap the concatenated chunks in the stream's container format."""
        return data


class BaseAudioDevice(ABC):
    """A source of microphone streams."""

    @abstractmethod
    async def request_microphone(self) -> AudioStream:
        """Acquire the microphone.

        Raises:
            PermissionDeniedError: If access is refused.
            DeviceUnavailableError: If no capture device / codec exists.
        """


# ---------------------------------------------------------------------------
# Local microphone (sounddevice / PortAudio)
# ---------------------------------------------------------------------------


class SoundDeviceStream(AudioStream):
    """16-bit PCM capture through ``sounddevice.RawInputStream``.

    Chunks are raw PCM; :meth:`encode` wraps the whole recording as WAV.
    """

    mime_type = "audio/wav"

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        device: int | None = None,
    ) -> None:
        self._sample_rate = sample_rate
        self._channels = channels
        self._device = device
        self._processor = AudioProcessor(sample_rate=sample_rate, channels=channels)
        self._stream = None
        self._lock = threading.Lock()
        self._on_chunk: ChunkCallback | None = None
        self._on_error: ErrorCallback | None = None

    def start(
        self,
        on_chunk: ChunkCallback,
        timeslice_seconds: float,
        on_error: ErrorCallback | None = None,
    ) -> None:
        import sounddevice as sd

        self._on_chunk = on_chunk
        self._on_error = on_error
        try:
            stream = sd.RawInputStream(
                samplerate=self._sample_rate,
                channels=self._channels,
                dtype="int16",
                blocksize=max(1, int(self._sample_rate * timeslice_seconds)),
                device=self._device,
                callback=self._callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceUnavailableError(f"Could not open microphone: {exc}") from exc
        with self._lock:
            self._stream = stream
        logger.info("Input stream started (%d Hz, %d ch)", self._sample_rate, self._channels)

    def _callback(self, indata, frames, time_info, status) -> None:  # noqa: ANN001
        if status:
            logger.warning("Input stream status: %s", status)
        if self._on_chunk is not None:
            self._on_chunk(bytes(indata))

    def stop(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            logger.debug("Stream close error: %s", exc)
        logger.info("Input stream stopped")

    def encode(self, data: bytes) -> bytes:
        return self._processor.pcm_to_wav_bytes(data)


class SoundDeviceMicrophone(BaseAudioDevice):
    """The host's input device via PortAudio.

    Args:
        sample_rate: Capture rate in Hz.
        channels: Number of input channels.
        device: sounddevice device index (None = system default).
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        device: int | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device

    async def request_microphone(self) -> AudioStream:
        try:
            import sounddevice as sd
        except OSError as exc:
            # Raised when the PortAudio shared library is missing
            raise DeviceUnavailableError("PortAudio is not installed") from exc

        try:
            sd.check_input_settings(
                device=self.device,
                channels=self.channels,
                dtype="int16",
                samplerate=self.sample_rate,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceUnavailableError(f"No usable input device: {exc}") from exc

        return SoundDeviceStream(self.sample_rate, self.channels, self.device)


# ---------------------------------------------------------------------------
# Externally fed device (browser over WebSocket)
# ---------------------------------------------------------------------------


class PushAudioStream(AudioStream):
    """A stream whose chunks are pushed in by a producer.

    Chunks pushed before :meth:`start` or after :meth:`stop` are dropped.
    """

    def __init__(self, mime_type: str = "audio/webm") -> None:
        self.mime_type = mime_type
        self._on_chunk: ChunkCallback | None = None
        self._on_error: ErrorCallback | None = None
        self.started = False
        self.stopped = False
        self.stop_calls = 0

    def start(
        self,
        on_chunk: ChunkCallback,
        timeslice_seconds: float,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._on_chunk = on_chunk
        self._on_error = on_error
        self.started = True

    def push(self, data: bytes) -> None:
        """Deliver one chunk from the producer."""
        if self.started and not self.stopped and self._on_chunk is not None:
            self._on_chunk(data)

    def fail(self, exc: Exception) -> None:
        """Report a producer-side error (e.g. the recorder crashed)."""
        if self.started and not self.stopped and self._on_error is not None:
            self._on_error(exc)

    def stop(self) -> None:
        self.stop_calls += 1
        if self.stopped:
            return
        self.stopped = True
        self._on_chunk = None
        self._on_error = None


class PushAudioDevice(BaseAudioDevice):
    """Device backed by a remote producer that reports its own permission result.

    Args:
        mime_type: Container type of the pushed chunks.
        available: False when the producer has no recorder / codec.
    """

    def __init__(self, mime_type: str = "audio/webm", available: bool = True) -> None:
        self.mime_type = mime_type
        self.available = available
        self._denied = False
        self.stream: PushAudioStream | None = None

    def deny(self) -> None:
        """Mark the next microphone request as refused."""
        self._denied = True

    async def request_microphone(self) -> AudioStream:
        if not self.available:
            raise DeviceUnavailableError()
        if self._denied:
            self._denied = False
            raise PermissionDeniedError()
        self.stream = PushAudioStream(self.mime_type)
        return self.stream
