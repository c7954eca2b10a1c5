"""
Feed reader: a live, newest-first view of published voice memos.

Every refresh rebuilds the snapshot wholesale: one query for published
memos, one for the distinct authors' profiles, joined in memory. While
mounted, change notifications on ``voice_memos`` mark the reader dirty and
a single background task keeps refreshing until no new notification
arrived during the last refresh, so bursts of events collapse into as few
queries as possible.
"""

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from voicefeed.core.exceptions import (
    FeedFetchFailedError,
    LikeFailedError,
    MemoNotFoundError,
    ProfileFetchFailedError,
    VoiceFeedError,
)
from voicefeed.core.models import AuthorProfile, FeedItem, FeedSnapshot, LikeResponse
from voicefeed.services.backend import Backend, ChangeEvent, ChangeEventType, Increment, Subscription
from voicefeed.services.notifications import Notifier

logger = logging.getLogger(__name__)

MEMO_TABLE = "voice_memos"
PROFILE_TABLE = "user_profiles"

SnapshotListener = Callable[[FeedSnapshot], Awaitable[None] | None]


class FeedReader:
    """Maintains the current :class:`FeedSnapshot`.

    Args:
        backend: Capability object (relational store + change feed).
        include_updates: Also refresh on UPDATE events (likes, edits), not
            only on INSERT.
        notifier: Receives failure toasts.
        on_snapshot: Called with every new snapshot.
    """

    def __init__(
        self,
        backend: Backend,
        include_updates: bool = True,
        notifier: Notifier | None = None,
        on_snapshot: SnapshotListener | None = None,
    ) -> None:
        self._backend = backend
        self._include_updates = include_updates
        self._notifier = notifier
        self._on_snapshot = on_snapshot
        self.snapshot: FeedSnapshot | None = None
        self.refresh_count = 0
        self._subscription: Subscription | None = None
        self._dirty = False
        self._refresher: asyncio.Task | None = None

    @property
    def mounted(self) -> bool:
        return self._subscription is not None

    async def refresh(self) -> FeedSnapshot:
        """Re-query the feed and replace the snapshot.

        On failure the previous snapshot is kept.

        Raises:
            FeedFetchFailedError: If the memo query fails.
            ProfileFetchFailedError: If the author profile query fails.
        """
        db = self._backend.db
        try:
            rows = await db.select(
                MEMO_TABLE,
                filters={"is_published": True},
                order_by="created_at",
                descending=True,
            )
        except Exception as exc:
            logger.exception("Failed to fetch voice memos")
            raise self._report(FeedFetchFailedError()) from exc

        author_ids = list(dict.fromkeys(row["user_id"] for row in rows))
        authors: dict[str, AuthorProfile] = {}
        if author_ids:
            try:
                profiles = await db.select(
                    PROFILE_TABLE,
                    columns=("user_id", "display_name", "photo_url"),
                    filters={"user_id": author_ids},
                )
            except Exception as exc:
                logger.exception("Failed to fetch author profiles")
                raise self._report(
                    ProfileFetchFailedError("Failed to load voice memos")
                ) from exc
            authors = {
                p["user_id"]: AuthorProfile(display_name=p["display_name"], photo_url=p.get("photo_url"))
                for p in profiles
            }

        items = [
            FeedItem.model_validate({**row, "user": authors.get(row["user_id"], AuthorProfile())})
            for row in rows
        ]
        snapshot = FeedSnapshot(items=items, fetched_at=datetime.now(UTC))
        self.snapshot = snapshot
        self.refresh_count += 1
        logger.debug("Feed refreshed: %d memos from %d authors", len(items), len(author_ids))

        if self._on_snapshot is not None:
            result = self._on_snapshot(snapshot)
            if inspect.isawaitable(result):
                await result
        return snapshot

    async def mount(self) -> FeedSnapshot | None:
        """Subscribe to memo changes and load the first snapshot.

        A failed initial load is reported through the notifier; the reader
        stays mounted and retries on the next change notification.
        """
        if self._subscription is not None:
            return self.snapshot

        events = [ChangeEventType.insert]
        if self._include_updates:
            events.append(ChangeEventType.update)
        self._subscription = await self._backend.realtime.subscribe(
            MEMO_TABLE,
            events,
            self._on_change,
            filters={"is_published": True},
        )
        logger.info("Feed mounted (%s)", ", ".join(e.value for e in events))

        try:
            await self.refresh()
        except VoiceFeedError as exc:
            logger.warning("Initial feed load failed: %s", exc.detail)
        return self.snapshot

    async def unmount(self) -> None:
        """Release the change subscription and stop background refreshes."""
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._backend.realtime.unsubscribe(subscription)
            logger.info("Feed unmounted")

        refresher, self._refresher = self._refresher, None
        self._dirty = False
        if refresher is not None and not refresher.done():
            refresher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await refresher

    async def wait_idle(self) -> None:
        """Wait for any pending background refresh to finish."""
        while self._refresher is not None and not self._refresher.done():
            await asyncio.shield(self._refresher)

    async def like(self, memo_id: str) -> LikeResponse:
        """Increment a memo's like counter by one.

        The local snapshot is not modified; the new count shows up on the
        next refresh.

        Raises:
            MemoNotFoundError: If no memo has *memo_id*.
            LikeFailedError: If the backend rejected the update.
        """
        try:
            rows = await self._backend.db.update(
                MEMO_TABLE,
                {"likes_count": Increment(1)},
                {"id": memo_id},
            )
        except Exception as exc:
            logger.exception("Failed to like memo %s", memo_id)
            raise self._report(LikeFailedError()) from exc

        if not rows:
            raise self._report(MemoNotFoundError(memo_id))
        return LikeResponse(id=memo_id, likes_count=rows[0]["likes_count"])

    # ------------------------------------------------------------------

    def _on_change(self, event: ChangeEvent) -> None:
        if self._subscription is None:
            return
        logger.debug("Feed change: %s %s", event.type, event.new.get("id"))
        self._dirty = True
        if self._refresher is None or self._refresher.done():
            self._refresher = asyncio.create_task(self._refresh_while_dirty())

    async def _refresh_while_dirty(self) -> None:
        while self._dirty:
            self._dirty = False
            try:
                await self.refresh()
            except VoiceFeedError as exc:
                logger.warning("Background feed refresh failed: %s", exc.detail)

    def _report(self, error: VoiceFeedError) -> VoiceFeedError:
        if self._notifier is not None:
            self._notifier.error_from(error)
        return error
