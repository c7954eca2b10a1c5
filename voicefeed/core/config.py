"""
Application configuration via pydantic-settings.

Loads values from .env file with sensible defaults for local development.
Use ``get_settings()`` to obtain the cached singleton instance.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """VoiceFeed settings loaded from environment / .env file.

    All settings can be overridden via environment variables or a `.env` file.
    Field names map directly to env var names (case-insensitive).

    Attributes:
        backend_provider: Which backend implements the capability surface
            ("local" or "supabase").
        database_url: Async SQLAlchemy connection string used by the local backend.
        max_recording_seconds: Hard cap on a single capture session.
        feed_include_updates: Subscribe the feed to UPDATE events as well as INSERT,
            so like counters refresh without a manual reload.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Silently ignore unrecognized env vars
    )

    # --- Backend ---
    # "local" = SQLite + filesystem + in-process change feed, "supabase" = hosted
    backend_provider: str = "local"

    # Local backend
    database_url: str = "sqlite+aiosqlite:///data/voicefeed.db"
    storage_dir: str = "data/storage"  # Object storage root (one subfolder per bucket)
    public_base_url: str = "http://localhost:8000"  # Prefix for public object URLs
    auth_code_ttl_seconds: int = 600  # Lifetime of an e-mailed sign-in code
    auth_echo_codes: bool = True  # Return sign-in codes in API responses (dev only)

    # Supabase backend
    supabase_url: str = ""
    supabase_key: str = ""  # anon or service-role key
    realtime_heartbeat_seconds: float = 30.0

    # --- Buckets ---
    memo_bucket: str = "voice-memos"
    avatar_bucket: str = "avatars"

    # --- Capture ---
    max_recording_seconds: int = 180
    capture_timeslice_seconds: float = 1.0  # Interval between delivered chunks
    capture_tick_seconds: float = 1.0  # Duration timer period (one tick = one second of recording)
    capture_sample_rate: int = 16000
    capture_channels: int = 1
    capture_input_device: int | None = None  # sounddevice index; None = system default

    # --- Publish / Feed ---
    default_memo_title: str = "Voice memo"
    compensate_orphaned_uploads: bool = False  # Delete the object when the insert fails
    feed_include_updates: bool = True

    # --- Notifications ---
    toast_ttl_seconds: float = 4.0

    # --- Application ---
    app_host: str = "0.0.0.0"  # Bind address for the FastAPI server
    app_port: int = 8000
    log_level: str = "INFO"  # Python logging level
    access_token: str = ""  # CLI session token (set after `voicefeed sign-in`)


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings singleton.

    Uses ``functools.lru_cache`` so the .env file is read only once.
    Subsequent calls return the same ``Settings`` instance.

    Returns:
        Settings: The application-wide configuration object.
    """
    return Settings()
