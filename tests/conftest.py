"""Shared pytest fixtures for the VoiceFeed test suite.

Provides settings pointed at a temporary directory, a started local
backend, a notifier, and small audio samples.
"""

import io

import numpy as np
import pytest
import soundfile as sf

from voicefeed.core.config import Settings
from voicefeed.services.backend.local import create_local_backend
from voicefeed.services.notifications import Notifier

# ---------------------------------------------------------------------------
# Configuration / backend
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from any .env file, storing everything under tmp_path."""
    return Settings(
        _env_file=None,
        backend_provider="local",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'voicefeed.db'}",
        storage_dir=str(tmp_path / "storage"),
        public_base_url="http://test",
        auth_echo_codes=True,
        access_token="",
    )


@pytest.fixture
async def backend(settings):
    """A started local backend; closed after the test."""
    backend = create_local_backend(settings)
    await backend.start()
    yield backend
    await backend.close()


@pytest.fixture
async def signed_in(backend):
    """A verified session for alice@example.com."""
    code = await backend.auth.request_sign_in("alice@example.com")
    return await backend.auth.verify_sign_in("alice@example.com", code)


@pytest.fixture
def notifier():
    """A notifier with the default toast lifetime."""
    return Notifier()


# ---------------------------------------------------------------------------
# Audio Fixtures
# ---------------------------------------------------------------------------


def make_wav_bytes(seconds: float, sample_rate: int = 16000) -> bytes:
    """Encode *seconds* of a 440 Hz tone as 16-bit mono WAV."""
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    samples = (0.3 * np.sin(2 * np.pi * 440 * t) * 32767).astype(np.int16)
    buffer = io.BytesIO()
    sf.write(buffer, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


@pytest.fixture
def sample_pcm_bytes():
    """One second of silence as raw 16-bit mono PCM at 16 kHz."""
    return b"\x00\x00" * 16000


@pytest.fixture
def make_wav():
    """Factory producing WAV bytes of a given length in seconds."""
    return make_wav_bytes


@pytest.fixture
def wav_2s():
    """Two seconds of WAV audio."""
    return make_wav_bytes(2.0)
