"""
Supabase implementation of the backend capability surface.

REST (PostgREST), storage, and auth calls go through one shared
``httpx.AsyncClient``. Change notifications use the realtime Phoenix
channel protocol over ``websockets``; dropped connections are re-joined
with exponential backoff.

Counter increments are routed to a Postgres function that must exist in
the project::

    create function increment_counter(table_name text, column_name text,
                                      row_id uuid, amount int default 1)
    returns setof json ...
"""

import asyncio
import contextlib
import copy
import inspect
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any
from urllib.parse import quote

import httpx
import websockets
from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential
from websockets.exceptions import ConnectionClosed

from voicefeed.core.config import Settings
from voicefeed.core.exceptions import BackendError, UnauthenticatedError
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

logger = logging.getLogger(__name__)


class SupabaseClient:
    """Thin async wrapper around httpx for the Supabase HTTP APIs.

    Holds the project key and, optionally, one user's access token.
    :meth:`with_token` gives per-user views over the same connection pool.
    All methods raise :class:`BackendError` with a readable message on
    HTTP or network failures.
    """

    def __init__(
        self,
        url: str,
        key: str,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        if not url or not key:
            raise BackendError("supabase_url and supabase_key must be configured")
        self.url = url.rstrip("/")
        self.key = key
        self.access_token = access_token or None
        self._owns_http = http is None
        self._client = http or httpx.AsyncClient(
            base_url=self.url,
            headers={"apikey": key},
            timeout=30.0,
            transport=transport,
        )

    def with_token(self, access_token: str) -> "SupabaseClient":
        """A client sharing this connection pool but authenticating as *access_token*."""
        return SupabaseClient(self.url, self.key, access_token=access_token, http=self._client)

    def auth_headers(self, access_token: str | None = None) -> dict[str, str]:
        token = access_token or self.access_token or self.key
        return {"Authorization": f"Bearer {token}"}

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Execute a request and translate failures into ``BackendError``."""
        headers = {**self.auth_headers(kwargs.pop("access_token", None)), **kwargs.pop("headers", {})}
        try:
            resp = await self._client.request(method, path, headers=headers, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as exc:
            raise BackendError(_error_detail(exc.response)) from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"Network error: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_http:
            await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for field in ("message", "msg", "error_description", "error"):
            if body.get(field):
                return str(body[field])
    return f"HTTP {response.status_code}"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _filter_params(filters: Mapping[str, Any] | None) -> dict[str, str]:
    """Translate equality / IN filters into PostgREST query parameters."""
    params: dict[str, str] = {}
    for column, value in (filters or {}).items():
        if isinstance(value, (list, tuple, set, frozenset)):
            quoted = ",".join(f'"{_format_value(v)}"' for v in value)
            params[column] = f"in.({quoted})"
        elif value is None:
            params[column] = "is.null"
        else:
            params[column] = f"eq.{_format_value(value)}"
    return params


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class SupabaseAuth(BaseAuth):
    """GoTrue e-mail OTP sign-in."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_current_user(self, access_token: str | None = None) -> AuthUser | None:
        token = access_token or self._client.access_token
        if not token:
            return None
        try:
            resp = await self._client.request("GET", "/auth/v1/user", access_token=token)
        except BackendError as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code in (401, 403):
                return None
            raise
        body = resp.json()
        return AuthUser(id=body["id"], email=body.get("email"))

    async def request_sign_in(self, email: str) -> str | None:
        await self._client.request(
            "POST", "/auth/v1/otp", json={"email": email.strip(), "create_user": True}
        )
        return None

    async def verify_sign_in(self, email: str, code: str) -> AuthSession:
        try:
            resp = await self._client.request(
                "POST",
                "/auth/v1/verify",
                json={"type": "email", "email": email.strip(), "token": code.strip()},
            )
        except BackendError as exc:
            raise UnauthenticatedError(exc.detail) from exc
        body = resp.json()
        user = body.get("user") or {}
        return AuthSession(
            access_token=body["access_token"],
            user=AuthUser(id=user["id"], email=user.get("email")),
        )

    async def sign_out(self, access_token: str | None = None) -> None:
        token = access_token or self._client.access_token
        if not token:
            return
        await self._client.request("POST", "/auth/v1/logout", access_token=token)


# ---------------------------------------------------------------------------
# Relational store
# ---------------------------------------------------------------------------


class SupabaseRelationalStore(BaseRelationalStore):
    """PostgREST row operations."""

    _RETURN = {"Prefer": "return=representation"}

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict:
        resp = await self._client.request(
            "POST", f"/rest/v1/{table}", json=dict(row), headers=self._RETURN
        )
        return resp.json()[0]

    async def upsert(self, table: str, row: Mapping[str, Any], conflict_key: str) -> dict:
        resp = await self._client.request(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": conflict_key},
            json=dict(row),
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return resp.json()[0]

    async def update(
        self,
        table: str,
        patch: Mapping[str, Any],
        filters: Mapping[str, Any],
    ) -> list[dict]:
        if not filters:
            raise BackendError("Refusing to update without filters")

        increments = {k: v for k, v in patch.items() if isinstance(v, Increment)}
        plain = {k: v for k, v in patch.items() if not isinstance(v, Increment)}
        if increments and (set(filters) != {"id"} or isinstance(filters["id"], (list, tuple, set))):
            raise BackendError("Counter increments require a single id filter")

        rows: list[dict] = []
        if plain:
            resp = await self._client.request(
                "PATCH",
                f"/rest/v1/{table}",
                params=_filter_params(filters),
                json=plain,
                headers=self._RETURN,
            )
            rows = resp.json()

        for column, increment in increments.items():
            resp = await self._client.request(
                "POST",
                "/rest/v1/rpc/increment_counter",
                json={
                    "table_name": table,
                    "column_name": column,
                    "row_id": filters["id"],
                    "amount": increment.by,
                },
            )
            rows = _merge_rows(rows, resp.json() or [])
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
        params = {"select": ",".join(columns) if columns else "*", **_filter_params(filters)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        resp = await self._client.request("GET", f"/rest/v1/{table}", params=params)
        return resp.json()


def _merge_rows(rows: list[dict], updates: list[dict]) -> list[dict]:
    """Overlay *updates* onto *rows* by ``id``, keeping columns only *rows* returned."""
    merged = {row.get("id"): row for row in rows}
    for update in updates:
        key = update.get("id")
        merged[key] = {**merged.get(key, {}), **update}
    return list(merged.values())


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------


class SupabaseObjectStorage(BaseObjectStorage):
    """Supabase storage buckets."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        overwrite: bool = False,
    ) -> str:
        await self._client.request(
            "POST",
            f"/storage/v1/object/{bucket}/{quote(key)}",
            content=data,
            headers={
                "Content-Type": content_type,
                "x-upsert": "true" if overwrite else "false",
            },
        )
        return f"{bucket}/{key}"

    def get_public_url(self, bucket: str, key: str) -> str:
        return f"{self._client.url}/storage/v1/object/public/{bucket}/{quote(key)}"

    async def remove(self, bucket: str, keys: list[str]) -> None:
        if not keys:
            return
        await self._client.request(
            "DELETE", f"/storage/v1/object/{bucket}", json={"prefixes": list(keys)}
        )

    async def exists(self, bucket: str, key: str) -> bool:
        try:
            await self._client.request("GET", f"/storage/v1/object/info/{bucket}/{quote(key)}")
        except BackendError as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code in (400, 404):
                return False
            raise
        return True


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


def parse_change_message(message: dict) -> ChangeEvent | None:
    """Convert a realtime ``postgres_changes`` frame into a :class:`ChangeEvent`.

    Returns None for replies, heartbeats, presence, and other frames.
    """
    if message.get("event") != "postgres_changes":
        return None
    data = (message.get("payload") or {}).get("data") or {}
    try:
        event_type = ChangeEventType(data.get("type"))
    except ValueError:
        return None
    return ChangeEvent(
        table=data.get("table", ""),
        type=event_type,
        new=data.get("record") or {},
        old=data.get("old_record") or {},
    )


def build_join_message(subscription: Subscription, access_token: str | None) -> dict:
    """Build the ``phx_join`` frame for one subscription."""
    pg_filter = None
    if subscription.filters:
        column, value = next(iter(subscription.filters.items()))
        pg_filter = f"{column}=eq.{_format_value(value)}"

    changes = []
    for event_type in sorted(subscription.events):
        binding = {"event": event_type.value, "schema": "public", "table": subscription.table}
        if pg_filter:
            binding["filter"] = pg_filter
        changes.append(binding)

    payload: dict[str, Any] = {"config": {"postgres_changes": changes}}
    if access_token:
        payload["access_token"] = access_token
    return {
        "topic": f"realtime:{subscription.table}-{subscription.id[:8]}",
        "event": "phx_join",
        "payload": payload,
        "ref": "1",
    }


class SupabaseRealtime(BaseChangeFeed):
    """One realtime channel (WebSocket) per subscription.

    Views from :meth:`with_token` join channels with their own token but
    register them here, so :meth:`close` releases every view's channels.
    """

    def __init__(
        self,
        url: str,
        key: str,
        token_provider: Callable[[], str | None],
        heartbeat_seconds: float = 30.0,
    ) -> None:
        ws_base = url.rstrip("/").replace("https://", "wss://").replace("http://", "ws://")
        self._ws_url = f"{ws_base}/realtime/v1/websocket?apikey={key}&vsn=1.0.0"
        self._token_provider = token_provider
        self._heartbeat = heartbeat_seconds
        self._tasks: dict[str, asyncio.Task] = {}

    def with_token(self, access_token: str) -> "SupabaseRealtime":
        view = copy.copy(self)
        view._token_provider = lambda: access_token
        return view

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
        self._tasks[subscription.id] = asyncio.create_task(self._run_channel(subscription))
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        task = self._tasks.pop(subscription.id, None)
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Realtime channel for %s closed", subscription.table)

    async def close(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        for task in list(self._tasks.values()):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def _run_channel(self, subscription: Subscription) -> None:
        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(multiplier=1, min=1, max=30),
                retry=retry_if_exception_type((OSError, ConnectionClosed, TimeoutError)),
                reraise=True,
            ):
                with attempt:
                    await self._listen(subscription)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Realtime channel for %s failed", subscription.table)

    async def _listen(self, subscription: Subscription) -> None:
        async with websockets.connect(self._ws_url) as ws:
            await ws.send(json.dumps(build_join_message(subscription, self._token_provider())))
            logger.info("Realtime channel joined for %s", subscription.table)
            heartbeat = asyncio.create_task(self._send_heartbeats(ws))
            try:
                async for raw in ws:
                    try:
                        message = json.loads(raw)
                    except (json.JSONDecodeError, TypeError):
                        continue
                    event = parse_change_message(message)
                    if event is None or not subscription.matches(event):
                        continue
                    await self._dispatch(subscription, event)
            finally:
                heartbeat.cancel()
        # A clean close still means the channel is gone; let the retry loop rejoin.
        raise ConnectionError(f"Realtime channel for {subscription.table} closed")

    async def _send_heartbeats(self, ws) -> None:  # noqa: ANN001
        ref = 0
        while True:
            await asyncio.sleep(self._heartbeat)
            ref += 1
            frame = {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": f"hb-{ref}"}
            await ws.send(json.dumps(frame))

    @staticmethod
    async def _dispatch(subscription: Subscription, event: ChangeEvent) -> None:
        try:
            result = subscription.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Change callback failed for %s", subscription.table)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_supabase_backend(
    settings: Settings,
    access_token: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Backend:
    """Assemble the Supabase backend from settings."""
    client = SupabaseClient(
        settings.supabase_url,
        settings.supabase_key,
        access_token=access_token or settings.access_token,
        transport=transport,
    )
    realtime = SupabaseRealtime(
        settings.supabase_url,
        settings.supabase_key,
        token_provider=lambda: client.access_token,
        heartbeat_seconds=settings.realtime_heartbeat_seconds,
    )

    async def _close() -> None:
        await realtime.close()
        await client.aclose()

    def _scope(access_token: str) -> dict:
        scoped = client.with_token(access_token)
        return {
            "auth": SupabaseAuth(scoped),
            "db": SupabaseRelationalStore(scoped),
            "storage": SupabaseObjectStorage(scoped),
            "realtime": realtime.with_token(access_token),
        }

    return Backend(
        name="supabase",
        auth=SupabaseAuth(client),
        db=SupabaseRelationalStore(client),
        storage=SupabaseObjectStorage(client),
        realtime=realtime,
        _on_close=_close,
        _scope=_scope,
    )
