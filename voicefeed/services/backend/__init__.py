"""
Backend module - Capability surface (auth, rows, objects, change feed).

Factory function for creating a Backend based on provider configuration.
"""

from voicefeed.core.config import Settings

from .base import (
    AuthSession,
    AuthUser,
    Backend,
    BaseAuth,
    BaseChangeFeed,
    BaseObjectStorage,
    BaseRelationalStore,
    ChangeEvent,
    ChangeEventType,
    Increment,
    Subscription,
)

__all__ = [
    "AuthSession",
    "AuthUser",
    "Backend",
    "BaseAuth",
    "BaseChangeFeed",
    "BaseObjectStorage",
    "BaseRelationalStore",
    "ChangeEvent",
    "ChangeEventType",
    "Increment",
    "Subscription",
    "create_backend",
]


def create_backend(settings: Settings, **kwargs) -> Backend:
    """
    Factory function to create the Backend for the configured provider.

    Args:
        settings: Application settings (``backend_provider`` selects the provider)
        **kwargs: Provider-specific options (``engine``, ``access_token``, ``transport``)

    Returns:
        Backend capability object (not yet started)

    Raises:
        ValueError: If provider is unknown
    """
    provider = settings.backend_provider.lower()
    if provider == "local":
        from .local import create_local_backend
        return create_local_backend(settings, **kwargs)
    elif provider == "supabase":
        from .supabase import create_supabase_backend
        return create_supabase_backend(settings, **kwargs)
    else:
        raise ValueError(f"Unknown backend provider: {settings.backend_provider}")
