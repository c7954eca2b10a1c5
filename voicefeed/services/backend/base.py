"""
Abstract capability surface for the hosted backend.

Every backend (local SQLite/filesystem, Supabase, ...) implements these
interfaces, so capture, publish, and feed logic never depend on a specific
provider. A :class:`Backend` bundles the four capabilities and is built once
per process, then passed explicitly to every component that needs it.
"""

import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any


@dataclass(frozen=True)
class AuthUser:
    """The signed-in user as reported by the auth capability."""

    id: str
    email: str | None = None


@dataclass(frozen=True)
class AuthSession:
    """A verified sign-in: bearer token plus its user."""

    access_token: str
    user: AuthUser


@dataclass(frozen=True)
class Increment:
    """Patch value meaning ``column = column + by`` in :meth:`update`."""

    by: int = 1


class ChangeEventType(StrEnum):
    """Row mutation kinds delivered by the change feed."""

    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """A single row change on a watched table."""

    table: str
    type: ChangeEventType
    new: dict = field(default_factory=dict)
    old: dict = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], Awaitable[None] | None]


@dataclass
class Subscription:
    """Handle returned by :meth:`BaseChangeFeed.subscribe`."""

    table: str
    events: frozenset[ChangeEventType]
    callback: ChangeCallback
    filters: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def matches(self, event: ChangeEvent) -> bool:
        """Return True if *event* falls inside this subscription's scope."""
        if event.table != self.table or event.type not in self.events:
            return False
        row = event.new if event.type != ChangeEventType.delete else event.old
        return all(row.get(column) == value for column, value in self.filters.items())


class BaseAuth(ABC):
    """Authentication capability."""

    @abstractmethod
    async def get_current_user(self, access_token: str | None = None) -> AuthUser | None:
        """Return the user owning *access_token* (or the stored session), or None."""

    @abstractmethod
    async def request_sign_in(self, email: str) -> str | None:
        """Send a one-time sign-in code to *email*.

        Returns:
            The code itself when the backend exposes it (local development),
            otherwise None.
        """

    @abstractmethod
    async def verify_sign_in(self, email: str, code: str) -> AuthSession:
        """Exchange an e-mailed code for a session.

        Raises:
            UnauthenticatedError: If the code is wrong or expired.
        """

    @abstractmethod
    async def sign_out(self, access_token: str | None = None) -> None:
        """Invalidate a session token."""


class BaseRelationalStore(ABC):
    """Relational row store capability.

    Filters are ``{column: value}`` equality matches; a list, tuple, or set
    value means ``column IN (...)``.
    """

    @abstractmethod
    async def insert(self, table: str, row: Mapping[str, Any]) -> dict:
        """Insert one row and return it as stored (defaults filled in)."""

    @abstractmethod
    async def upsert(self, table: str, row: Mapping[str, Any], conflict_key: str) -> dict:
        """Insert *row*, or update the existing row sharing *conflict_key*."""

    @abstractmethod
    async def update(
        self,
        table: str,
        patch: Mapping[str, Any],
        filters: Mapping[str, Any],
    ) -> list[dict]:
        """Apply *patch* to every row matching *filters*; return updated rows."""

    @abstractmethod
    async def select(
        self,
        table: str,
        columns: Iterable[str] | None = None,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        """Return rows matching *filters*, optionally ordered and limited."""


class BaseObjectStorage(ABC):
    """Object storage capability."""

    @abstractmethod
    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        overwrite: bool = False,
    ) -> str:
        """Store *data* under *bucket*/*key* and return the stored path."""

    @abstractmethod
    def get_public_url(self, bucket: str, key: str) -> str:
        """Return a publicly resolvable URL for an object (no network call)."""

    @abstractmethod
    async def remove(self, bucket: str, keys: list[str]) -> None:
        """Delete objects; missing keys are ignored."""

    @abstractmethod
    async def exists(self, bucket: str, key: str) -> bool:
        """Return True if the object is present."""


class BaseChangeFeed(ABC):
    """Push-based change notification capability."""

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        events: Iterable[ChangeEventType],
        callback: ChangeCallback,
        filters: Mapping[str, Any] | None = None,
    ) -> Subscription:
        """Start delivering matching row changes to *callback*."""

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Stop delivery and release the channel (idempotent)."""


@dataclass
class Backend:
    """The capability object passed to every component.

    Args:
        name: Provider name ("local", "supabase").
        auth: Authentication capability.
        db: Relational store capability.
        storage: Object storage capability.
        realtime: Change notification capability.
    """

    name: str
    auth: BaseAuth
    db: BaseRelationalStore
    storage: BaseObjectStorage
    realtime: BaseChangeFeed
    _on_start: Callable[[], Awaitable[None]] | None = None
    _on_close: Callable[[], Awaitable[None]] | None = None
    _scope: Callable[[str], dict[str, Any]] | None = None

    def with_token(self, access_token: str | None) -> "Backend":
        """Return a view acting as the owner of *access_token*.

        The view shares connections with this backend; only its
        capabilities' credentials differ. Closing the backend closes every
        view, and ``close()`` on a view does nothing.
        """
        if not access_token or self._scope is None:
            return self
        return replace(
            self,
            **self._scope(access_token),
            _on_start=None,
            _on_close=None,
        )

    async def start(self) -> None:
        """Prepare connections / schema. Safe to call once at process start."""
        if self._on_start is not None:
            await self._on_start()

    async def close(self) -> None:
        """Release connections and channels."""
        if self._on_close is not None:
            await self._on_close()
