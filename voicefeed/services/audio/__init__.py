"""
Audio module - Capture devices, recording state machine, and clip processing.
"""

from .capture import AudioArtifact, CaptureController, CaptureSession, CaptureState, StopReason
from .device import (
    AudioStream,
    BaseAudioDevice,
    PushAudioDevice,
    PushAudioStream,
    SoundDeviceMicrophone,
)
from .processor import AudioProcessor, probe_duration_seconds

__all__ = [
    "AudioArtifact",
    "AudioProcessor",
    "AudioStream",
    "BaseAudioDevice",
    "CaptureController",
    "CaptureSession",
    "CaptureState",
    "PushAudioDevice",
    "PushAudioStream",
    "SoundDeviceMicrophone",
    "StopReason",
    "probe_duration_seconds",
]
