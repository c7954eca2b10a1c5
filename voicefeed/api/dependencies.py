"""
FastAPI dependencies: the process-wide backend, settings, and the
signed-in user resolved from ``Authorization: Bearer <token>``.
"""

from fastapi import Depends, Header, Request

from voicefeed.core.config import Settings
from voicefeed.core.exceptions import UnauthenticatedError
from voicefeed.services.backend import AuthUser, Backend


def get_backend(request: Request) -> Backend:
    """The Backend created by the application lifespan."""
    return request.app.state.backend


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_access_token(authorization: str | None = Header(None)) -> str:
    token = bearer_token(authorization)
    if token is None:
        raise UnauthenticatedError()
    return token


async def get_current_user(
    token: str = Depends(get_access_token),
    backend: Backend = Depends(get_backend),
) -> AuthUser:
    """Resolve the session token to a user or fail with 401."""
    user = await backend.auth.get_current_user(token)
    if user is None:
        raise UnauthenticatedError("Invalid or expired session")
    return user


def get_user_backend(
    token: str = Depends(get_access_token),
    backend: Backend = Depends(get_backend),
) -> Backend:
    """The backend acting as the caller for row, object, and realtime calls."""
    return backend.with_token(token)
