"""
Authentication endpoints: e-mail code sign-in, session lookup, sign-out.
"""

import logging

from fastapi import APIRouter, Depends

from voicefeed.api.dependencies import get_access_token, get_backend, get_current_user
from voicefeed.core.models import (
    SessionResponse,
    SignInRequest,
    SignInResponse,
    UserResponse,
    VerifyRequest,
)
from voicefeed.services.backend import AuthUser, Backend

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/sign-in", response_model=SignInResponse)
async def sign_in(body: SignInRequest, backend: Backend = Depends(get_backend)):
    """Send a one-time sign-in code to the given e-mail address."""
    code = await backend.auth.request_sign_in(body.email)
    return SignInResponse(dev_code=code)


@router.post("/verify", response_model=SessionResponse)
async def verify(body: VerifyRequest, backend: Backend = Depends(get_backend)):
    """Exchange an e-mailed code for a session token."""
    session = await backend.auth.verify_sign_in(body.email, body.code)
    return SessionResponse(
        access_token=session.access_token,
        user=UserResponse(id=session.user.id, email=session.user.email),
    )


@router.get("/me", response_model=UserResponse)
async def me(user: AuthUser = Depends(get_current_user)):
    return UserResponse(id=user.id, email=user.email)


@router.post("/sign-out")
async def sign_out(
    token: str = Depends(get_access_token),
    backend: Backend = Depends(get_backend),
):
    await backend.auth.sign_out(token)
    return {"detail": "Signed out"}
