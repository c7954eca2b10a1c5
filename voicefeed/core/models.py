"""
Pydantic v2 models shared by the services and the API layer.

Records mirror the persisted row shapes (``voice_memos``, ``user_profiles``);
request models carry validation for user input.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str = "ok"
    version: str = "0.1.0"
    backend: str = "local"
    timestamp: datetime


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class SignInRequest(BaseModel):
    """POST /auth/sign-in request body."""

    email: str = Field(min_length=3, max_length=320)


class SignInResponse(BaseModel):
    """Acknowledgement that a sign-in code was issued."""

    detail: str = "Check your email for a sign-in code"
    dev_code: str | None = None


class VerifyRequest(BaseModel):
    """POST /auth/verify request body."""

    email: str
    code: str


class UserResponse(BaseModel):
    """The authenticated user."""

    id: str
    email: str | None = None


class SessionResponse(BaseModel):
    """A verified session."""

    access_token: str
    user: UserResponse


# ---------------------------------------------------------------------------
# Voice memos
# ---------------------------------------------------------------------------


class VoiceMemoRecord(BaseModel):
    """A persisted ``voice_memos`` row."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    title: str
    audio_url: str
    duration: int = 0
    created_at: datetime
    is_published: bool = True
    likes_count: int = 0
    comments_count: int = 0

    @field_validator("likes_count", "comments_count", mode="before")
    @classmethod
    def _null_counter(cls, value):
        return value or 0


class AuthorProfile(BaseModel):
    """Denormalized author projection joined into feed items."""

    display_name: str = "Unknown User"
    photo_url: str | None = None


class FeedItem(VoiceMemoRecord):
    """A published memo with its author projection."""

    user: AuthorProfile = Field(default_factory=AuthorProfile)


class FeedSnapshot(BaseModel):
    """The feed as of one refresh, newest first."""

    items: list[FeedItem] = Field(default_factory=list)
    fetched_at: datetime


class LikeResponse(BaseModel):
    """POST /memos/{id}/like response."""

    id: str
    likes_count: int


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class UserProfile(BaseModel):
    """A persisted ``user_profiles`` row."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    email: str | None = None
    display_name: str
    age: int
    photo_url: str | None = None
    interests: list[str] = Field(default_factory=list)
    bio: str | None = None
    created_at: datetime | None = None


class ProfileCreate(BaseModel):
    """Onboarding form data (PUT /profiles/me)."""

    display_name: str
    age: int
    photo_url: str | None = None
    interests: list[str] = Field(default_factory=list)

    @field_validator("display_name")
    @classmethod
    def _check_display_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Display name must be at least 2 characters")
        return value

    @field_validator("age")
    @classmethod
    def _check_age(cls, value: int) -> int:
        if value < 16:
            raise ValueError("Must be at least 16 years old")
        if value > 100:
            raise ValueError("Age cannot exceed 100")
        return value

    @field_validator("photo_url")
    @classmethod
    def _check_photo_url(cls, value: str | None) -> str | None:
        if not value:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError("Invalid photo URL")
        return value

    @field_validator("interests")
    @classmethod
    def _check_interests(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for tag in value:
            tag = tag.strip()
            if tag and tag not in cleaned:
                cleaned.append(tag)
        if not cleaned:
            raise ValueError("Please select at least one interest")
        return cleaned


class ProfileUpdate(BaseModel):
    """PATCH /profiles/me request body."""

    display_name: str | None = None
    bio: str | None = Field(default=None, max_length=500)

    @field_validator("display_name")
    @classmethod
    def _check_display_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Display name must be at least 2 characters")
        return value


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class ToastLevel(StrEnum):
    """Severity of a toast notification."""

    success = "success"
    info = "info"
    error = "error"


class Toast(BaseModel):
    """A short-lived user-visible notification."""

    level: ToastLevel
    message: str
    code: str | None = None
    created_at: datetime
    ttl_seconds: float = 4.0


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class WebSocketMessageType(StrEnum):
    """Discriminator for messages sent over the record / feed WebSockets."""

    connected = "connected"
    state = "state"
    stopped = "stopped"
    published = "published"
    feed = "feed"
    toast = "toast"
    error = "error"


class WebSocketMessage(BaseModel):
    """JSON message sent from server to client over WebSocket."""

    type: WebSocketMessageType
    data: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Error
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Standard error envelope returned by the API."""

    detail: str
    code: str
    timestamp: str
