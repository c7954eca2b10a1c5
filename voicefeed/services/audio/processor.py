"""Audio processing utilities for recorded and uploaded clips.

Wraps raw PCM from the local microphone as WAV and probes the duration
of uploaded files.
"""

import io
import logging
import math

import numpy as np
import soundfile as sf
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from voicefeed.core.exceptions import InvalidAudioError

logger = logging.getLogger(__name__)


class AudioProcessor:
    """Handles PCM conversion and container encoding.

    Args:
        sample_rate: Audio sample rate in Hz (default: 16 kHz).
        sample_width: Bytes per sample (2 = 16-bit signed PCM).
        channels: Number of audio channels (1 = mono).
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        sample_width: int = 2,
        channels: int = 1,
    ) -> None:
        self.sample_rate = sample_rate
        self.sample_width = sample_width
        self.channels = channels

    @property
    def frame_size(self) -> int:
        return self.sample_width * self.channels

    def pcm_to_ndarray(self, pcm_data: bytes) -> np.ndarray:
        """Convert raw PCM bytes (16-bit signed) to an int16 array shaped (frames, channels).

        A trailing partial frame is dropped.
        """
        usable = len(pcm_data) - (len(pcm_data) % self.frame_size)
        samples = np.frombuffer(pcm_data[:usable], dtype=np.int16)
        return samples.reshape(-1, self.channels)

    def pcm_duration_seconds(self, pcm_data: bytes) -> float:
        """Duration of raw PCM bytes in seconds."""
        return len(pcm_data) / (self.sample_rate * self.frame_size)

    def pcm_to_wav_bytes(self, pcm_data: bytes) -> bytes:
        """Wrap raw PCM bytes in a WAV container.

        Raises:
            ValueError: If pcm_data is empty.
        """
        if not pcm_data:
            raise ValueError("Cannot encode empty PCM data to WAV")
        buffer = io.BytesIO()
        sf.write(
            buffer,
            self.pcm_to_ndarray(pcm_data),
            self.sample_rate,
            format="WAV",
            subtype="PCM_16",
        )
        return buffer.getvalue()


def probe_duration_seconds(data: bytes, filename: str | None = None) -> int:
    """Return the duration of an encoded audio file, rounded up to whole seconds.

    Args:
        data: Encoded file contents (wav, webm, mp3, ...).
        filename: Original name, used as a format hint.

    Raises:
        InvalidAudioError: If the data cannot be decoded.
    """
    if not data:
        raise InvalidAudioError("Uploaded file is empty")
    fmt = None
    if filename and "." in filename:
        fmt = filename.rsplit(".", 1)[-1].lower()
    try:
        segment = AudioSegment.from_file(io.BytesIO(data), format=fmt)
    except (CouldntDecodeError, OSError, IndexError, ValueError) as exc:
        logger.warning("Could not decode uploaded audio %s: %s", filename, exc)
        raise InvalidAudioError() from exc
    return math.ceil(len(segment) / 1000)
