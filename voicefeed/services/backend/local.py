"""
Self-contained backend: async SQLAlchemy rows, filesystem objects,
in-process change feed, and e-mail code sign-in.

Implements the same capability surface as the hosted backend so the whole
workflow runs on a laptop (and in tests) without external services.
"""

import asyncio
import inspect
import logging
import mimetypes
import secrets
import time
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any
from urllib.parse import quote

from sqlalchemy import Table, func, select
from sqlalchemy import insert as sa_insert
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from voicefeed.core.config import Settings
from voicefeed.core.exceptions import BackendError, UnauthenticatedError
from voicefeed.services.backend import models_db as orm
from voicefeed.services.backend.base import (
    AuthSession,
    AuthUser,
    Backend,
    BaseAuth,
    BaseChangeFeed,
    BaseObjectStorage,
    BaseRelationalStore,
    ChangeCallback,
    ChangeEvent,
    ChangeEventType,
    Increment,
    Subscription,
)
from voicefeed.services.backend.database import Base, Database

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Change feed
# ---------------------------------------------------------------------------


class InProcessChangeFeed(BaseChangeFeed):
    """Delivers row changes to subscribers within the same event loop.

    Async callbacks are scheduled as tasks so a slow subscriber never blocks
    the write that produced the event.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._tasks: set[asyncio.Task] = set()

    async def subscribe(
        self,
        table: str,
        events: Iterable[ChangeEventType],
        callback: ChangeCallback,
        filters: Mapping[str, Any] | None = None,
    ) -> Subscription:
        subscription = Subscription(
            table=table,
            events=frozenset(ChangeEventType(e) for e in events),
            callback=callback,
            filters=dict(filters or {}),
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug("Subscribed %s to %s %s", subscription.id, table, sorted(subscription.events))
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is not None:
            logger.debug("Unsubscribed %s from %s", subscription.id, subscription.table)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: ChangeEvent) -> None:
        """Fan *event* out to every matching subscription."""
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.callback(event)
            except Exception:
                logger.exception("Change callback failed for subscription %s", subscription.id)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Change callback task failed", exc_info=task.exception())

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._subscriptions.clear()


# ---------------------------------------------------------------------------
# Relational store
# ---------------------------------------------------------------------------


class SqlRelationalStore(BaseRelationalStore):
    """Generic row operations over the mapped tables.

    Each call runs in its own transaction; change events are published only
    after the transaction commits.

    Args:
        database: The owning :class:`Database`.
        changes: Change feed to notify after each committed write.
    """

    def __init__(self, database: Database, changes: InProcessChangeFeed | None = None) -> None:
        self._db = database
        self._changes = changes

    # -- helpers --

    @staticmethod
    def _table(name: str) -> Table:
        table = Base.metadata.tables.get(name)
        if table is None:
            raise BackendError(f"Unknown table: {name}")
        return table

    @staticmethod
    def _column(table: Table, name: str):
        column = table.c.get(name)
        if column is None:
            raise BackendError(f"Unknown column: {table.name}.{name}")
        return column

    def _where(self, table: Table, filters: Mapping[str, Any] | None) -> list:
        clauses = []
        for name, value in (filters or {}).items():
            column = self._column(table, name)
            if isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(column.in_(list(value)))
            elif value is None:
                clauses.append(column.is_(None))
            else:
                clauses.append(column == value)
        return clauses

    def _dialect_insert(self):
        if self._db.dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        return insert

    async def _notify(self, events: list[ChangeEvent]) -> None:
        if self._changes is None:
            return
        for event in events:
            await self._changes.publish(event)

    # -- capability --

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict:
        t = self._table(table)
        stmt = sa_insert(t).values(**row).returning(*t.c)
        try:
            async with self._db.session() as session:
                result = await session.execute(stmt)
                created = dict(result.mappings().one())
        except SQLAlchemyError as exc:
            logger.warning("Insert into %s failed: %s", table, exc)
            raise BackendError(f"Insert into {table} failed") from exc

        await self._notify([ChangeEvent(table=table, type=ChangeEventType.insert, new=created)])
        return created

    async def upsert(self, table: str, row: Mapping[str, Any], conflict_key: str) -> dict:
        t = self._table(table)
        key_column = self._column(t, conflict_key)
        if conflict_key not in row:
            raise BackendError(f"Upsert row is missing conflict key {conflict_key!r}")

        insert = self._dialect_insert()
        stmt = insert(t).values(**row)
        set_ = {name: stmt.excluded[name] for name in row if name not in (conflict_key, "id")}
        if not set_:
            set_ = {conflict_key: stmt.excluded[conflict_key]}
        stmt = stmt.on_conflict_do_update(index_elements=[conflict_key], set_=set_).returning(*t.c)

        try:
            async with self._db.session() as session:
                previous = await session.execute(
                    select(*t.c).where(key_column == row[conflict_key])
                )
                old = previous.mappings().one_or_none()
                result = await session.execute(stmt)
                stored = dict(result.mappings().one())
        except SQLAlchemyError as exc:
            logger.warning("Upsert into %s failed: %s", table, exc)
            raise BackendError(f"Upsert into {table} failed") from exc

        event_type = ChangeEventType.update if old is not None else ChangeEventType.insert
        await self._notify(
            [ChangeEvent(table=table, type=event_type, new=stored, old=dict(old or {}))]
        )
        return stored

    async def update(
        self,
        table: str,
        patch: Mapping[str, Any],
        filters: Mapping[str, Any],
    ) -> list[dict]:
        t = self._table(table)
        if not filters:
            raise BackendError("Refusing to update without filters")
        if not patch:
            return []

        values = {}
        for name, value in patch.items():
            column = self._column(t, name)
            values[name] = column + value.by if isinstance(value, Increment) else value

        stmt = sa_update(t).where(*self._where(t, filters)).values(**values).returning(*t.c)
        try:
            async with self._db.session() as session:
                result = await session.execute(stmt)
                rows = [dict(r) for r in result.mappings().all()]
        except SQLAlchemyError as exc:
            logger.warning("Update of %s failed: %s", table, exc)
            raise BackendError(f"Update of {table} failed") from exc

        await self._notify(
            [ChangeEvent(table=table, type=ChangeEventType.update, new=r) for r in rows]
        )
        return rows

    async def select(
        self,
        table: str,
        columns: Iterable[str] | None = None,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        t = self._table(table)
        cols = [self._column(t, c) for c in columns] if columns else list(t.c)
        stmt = select(*cols).where(*self._where(t, filters))
        if order_by:
            column = self._column(t, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self._db.session() as session:
                result = await session.execute(stmt)
                return [dict(r) for r in result.mappings().all()]
        except SQLAlchemyError as exc:
            logger.warning("Select from %s failed: %s", table, exc)
            raise BackendError(f"Select from {table} failed") from exc

    async def count(self, table: str, filters: Mapping[str, Any] | None = None) -> int:
        """Return the number of rows matching *filters*."""
        t = self._table(table)
        stmt = select(func.count()).select_from(t).where(*self._where(t, filters))
        async with self._db.session() as session:
            return int(await session.scalar(stmt) or 0)


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------


class FilesystemObjectStorage(BaseObjectStorage):
    """Stores objects as files under ``root/<bucket>/<key>``.

    Public URLs point at the API's ``/storage/v1/object/public`` route,
    mirroring the hosted storage URL layout.
    """

    def __init__(self, root: str | Path, public_base_url: str) -> None:
        self._root = Path(root)
        self._public_base_url = public_base_url.rstrip("/")

    def resolve(self, bucket: str, key: str) -> Path:
        """Map *bucket*/*key* to a path, rejecting keys that escape the bucket."""
        base = (self._root / bucket).resolve()
        path = (base / key).resolve()
        if base not in path.parents:
            raise BackendError(f"Invalid object key: {key}")
        return path

    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        overwrite: bool = False,
    ) -> str:
        path = self.resolve(bucket, key)
        if path.exists() and not overwrite:
            raise BackendError(f"Object already exists: {bucket}/{key}")
        try:
            await asyncio.to_thread(_write_file, path, data)
        except OSError as exc:
            logger.warning("Upload to %s/%s failed: %s", bucket, key, exc)
            raise BackendError(f"Upload to {bucket} failed") from exc
        logger.debug("Stored %s/%s (%d bytes, %s)", bucket, key, len(data), content_type)
        return f"{bucket}/{key}"

    def get_public_url(self, bucket: str, key: str) -> str:
        return f"{self._public_base_url}/storage/v1/object/public/{bucket}/{quote(key)}"

    async def remove(self, bucket: str, keys: list[str]) -> None:
        for key in keys:
            try:
                self.resolve(bucket, key).unlink(missing_ok=True)
            except OSError as exc:
                raise BackendError(f"Failed to remove {bucket}/{key}") from exc

    async def exists(self, bucket: str, key: str) -> bool:
        return self.resolve(bucket, key).is_file()

    def media_type(self, key: str) -> str:
        """Guess a Content-Type from the object key's extension."""
        return mimetypes.guess_type(key)[0] or "application/octet-stream"


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LocalAuth(BaseAuth):
    """E-mail one-time-code sign-in backed by ``auth_users`` / ``auth_sessions``.

    There is no mail transport: issued codes are logged, and returned to the
    caller when ``echo_codes`` is set. ``session_token`` is the default for
    calls that pass no token; sign-in and sign-out leave it unchanged.
    """

    def __init__(
        self,
        database: Database,
        code_ttl_seconds: int = 600,
        echo_codes: bool = True,
        session_token: str | None = None,
    ) -> None:
        self._db = database
        self._code_ttl = code_ttl_seconds
        self._echo_codes = echo_codes
        self._pending: dict[str, tuple[str, float]] = {}
        self.session_token = session_token or None

    def with_token(self, access_token: str) -> "LocalAuth":
        """A view defaulting to *access_token*; pending codes stay shared."""
        view = LocalAuth(
            self._db,
            code_ttl_seconds=self._code_ttl,
            echo_codes=self._echo_codes,
            session_token=access_token,
        )
        view._pending = self._pending
        return view

    async def get_current_user(self, access_token: str | None = None) -> AuthUser | None:
        token = access_token or self.session_token
        if not token:
            return None
        stmt = (
            select(orm.AuthUser)
            .join(orm.AuthSession, orm.AuthSession.user_id == orm.AuthUser.id)
            .where(orm.AuthSession.token == token)
        )
        try:
            async with self._db.session() as session:
                user = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise BackendError("Session lookup failed") from exc
        if user is None:
            return None
        return AuthUser(id=user.id, email=user.email)

    async def request_sign_in(self, email: str) -> str | None:
        email = _normalize_email(email)
        code = f"{secrets.randbelow(10**6):06d}"
        self._pending[email] = (code, time.monotonic() + self._code_ttl)
        logger.info("Sign-in code for %s: %s", email, code)
        return code if self._echo_codes else None

    async def verify_sign_in(self, email: str, code: str) -> AuthSession:
        email = _normalize_email(email)
        pending = self._pending.get(email)
        if (
            pending is None
            or pending[1] < time.monotonic()
            or not secrets.compare_digest(pending[0], code.strip())
        ):
            raise UnauthenticatedError("Invalid or expired sign-in code")
        del self._pending[email]

        token = secrets.token_urlsafe(32)
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(orm.AuthUser).where(orm.AuthUser.email == email)
                )
                user = result.scalar_one_or_none()
                if user is None:
                    user = orm.AuthUser(email=email)
                    session.add(user)
                    await session.flush()
                session.add(orm.AuthSession(token=token, user_id=user.id))
                user_id, user_email = user.id, user.email
        except SQLAlchemyError as exc:
            raise BackendError("Failed to create session") from exc

        logger.info("User %s signed in", user_id)
        return AuthSession(access_token=token, user=AuthUser(id=user_id, email=user_email))

    async def sign_out(self, access_token: str | None = None) -> None:
        token = access_token or self.session_token
        if not token:
            return
        try:
            async with self._db.session() as session:
                row = await session.get(orm.AuthSession, token)
                if row is not None:
                    await session.delete(row)
        except SQLAlchemyError as exc:
            raise BackendError("Failed to sign out") from exc


def _normalize_email(email: str) -> str:
    email = email.strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise UnauthenticatedError("Invalid email address")
    return email


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_local_backend(
    settings: Settings,
    engine: AsyncEngine | None = None,
    access_token: str | None = None,
) -> Backend:
    """Assemble the local backend from settings.

    Args:
        settings: Application settings (database URL, storage dir, ...).
        engine: Optional pre-built engine (tests use in-memory SQLite).
        access_token: Session token to use when no per-call token is given.
    """
    database = Database(url=settings.database_url, engine=engine)
    changes = InProcessChangeFeed()
    storage = FilesystemObjectStorage(settings.storage_dir, settings.public_base_url)
    auth = LocalAuth(
        database,
        code_ttl_seconds=settings.auth_code_ttl_seconds,
        echo_codes=settings.auth_echo_codes,
        session_token=access_token or settings.access_token,
    )

    async def _close() -> None:
        await changes.close()
        await database.close()

    return Backend(
        name="local",
        auth=auth,
        db=SqlRelationalStore(database, changes),
        storage=storage,
        realtime=changes,
        _on_start=database.init,
        _on_close=_close,
        _scope=lambda token: {"auth": auth.with_token(token)},
    )
