"""
SQLAlchemy ORM models for the local backend.

Tables: ``voice_memos``, ``user_profiles`` (shared shape with the hosted
backend) and ``auth_users``, ``auth_sessions`` (local sign-in only).
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from voicefeed.services.backend.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class AuthUser(Base):
    """A locally registered account."""

    __tablename__ = "auth_users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(320), unique=True)
    created_at: Mapped[datetime] = mapped_column(default=_now)

    def __repr__(self) -> str:
        return f"<AuthUser id={self.id} email={self.email!r}>"


class AuthSession(Base):
    """A bearer token issued after a verified sign-in."""

    __tablename__ = "auth_sessions"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("auth_users.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(default=_now)


class UserProfile(Base):
    """Onboarding profile, one per user."""

    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), unique=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    display_name: Mapped[str] = mapped_column(String(100))
    age: Mapped[int] = mapped_column()
    photo_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    interests: Mapped[list] = mapped_column(JSON, default=list)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=_now)

    def __repr__(self) -> str:
        return f"<UserProfile user={self.user_id} name={self.display_name!r}>"


class VoiceMemo(Base):
    """A published voice memo."""

    __tablename__ = "voice_memos"
    __table_args__ = (Index("ix_voice_memos_published_created", "is_published", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    title: Mapped[str] = mapped_column(String(255))
    audio_url: Mapped[str] = mapped_column(String(1024))
    duration: Mapped[int] = mapped_column(default=0)
    created_at: Mapped[datetime] = mapped_column(default=_now)
    is_published: Mapped[bool] = mapped_column(default=False)
    likes_count: Mapped[int] = mapped_column(default=0)
    comments_count: Mapped[int] = mapped_column(default=0)

    def __repr__(self) -> str:
        return f"<VoiceMemo id={self.id} user={self.user_id} published={self.is_published}>"
