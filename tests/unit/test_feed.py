"""Tests for FeedReader (snapshot queries, change coalescing, likes)."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from voicefeed.core.exceptions import (
    BackendError,
    FeedFetchFailedError,
    LikeFailedError,
    MemoNotFoundError,
    ProfileFetchFailedError,
)
from voicefeed.services.backend import ChangeEvent, ChangeEventType
from voicefeed.services.feed import FeedReader

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


async def _insert_memo(backend, user_id: str, title: str, minutes: int = 0, published: bool = True) -> dict:
    return await backend.db.insert(
        "voice_memos",
        {
            "user_id": user_id,
            "title": title,
            "audio_url": f"http://test/{title}.webm",
            "duration": 10,
            "created_at": _BASE_TIME + timedelta(minutes=minutes),
            "is_published": published,
            "likes_count": 0,
            "comments_count": 0,
        },
    )


async def _insert_profile(backend, user_id: str, name: str, photo_url: str | None = None) -> dict:
    return await backend.db.insert(
        "user_profiles",
        {
            "user_id": user_id,
            "display_name": name,
            "age": 30,
            "photo_url": photo_url,
            "interests": ["music"],
        },
    )


def _memo_event(memo_id: str = "m1") -> ChangeEvent:
    return ChangeEvent(
        table="voice_memos",
        type=ChangeEventType.insert,
        new={"id": memo_id, "is_published": True},
    )


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    """Snapshot contents."""

    async def test_newest_first(self, backend):
        await _insert_memo(backend, "u1", "old", minutes=0)
        await _insert_memo(backend, "u1", "newest", minutes=20)
        await _insert_memo(backend, "u1", "middle", minutes=10)

        snapshot = await FeedReader(backend).refresh()
        assert [item.title for item in snapshot.items] == ["newest", "middle", "old"]

    async def test_unpublished_excluded(self, backend):
        await _insert_memo(backend, "u1", "draft", published=False)
        await _insert_memo(backend, "u1", "live")
        snapshot = await FeedReader(backend).refresh()
        assert [item.title for item in snapshot.items] == ["live"]

    async def test_author_projection(self, backend):
        await _insert_profile(backend, "u1", "Alice", photo_url="http://test/a.png")
        await _insert_memo(backend, "u1", "hello")
        item = (await FeedReader(backend).refresh()).items[0]
        assert item.user.display_name == "Alice"
        assert item.user.photo_url == "http://test/a.png"

    async def test_missing_profile_is_unknown_user(self, backend):
        await _insert_memo(backend, "ghost", "boo")
        item = (await FeedReader(backend).refresh()).items[0]
        assert item.user.display_name == "Unknown User"
        assert item.user.photo_url is None

    async def test_profiles_fetched_once_per_author(self, backend):
        await _insert_profile(backend, "u1", "Alice")
        await _insert_profile(backend, "u2", "Bob")
        for i in range(3):
            await _insert_memo(backend, "u1", f"a{i}", minutes=i)
        await _insert_memo(backend, "u2", "b0", minutes=5)

        with patch.object(backend.db, "select", wraps=backend.db.select) as spy:
            await FeedReader(backend).refresh()

        assert spy.await_count == 2
        profile_call = spy.await_args_list[1]
        assert profile_call.args[0] == "user_profiles"
        assert sorted(profile_call.kwargs["filters"]["user_id"]) == ["u1", "u2"]

    async def test_empty_feed_skips_profile_query(self, backend):
        with patch.object(backend.db, "select", wraps=backend.db.select) as spy:
            snapshot = await FeedReader(backend).refresh()
        assert snapshot.items == []
        assert spy.await_count == 1

    async def test_on_snapshot_receives_each_snapshot(self, backend):
        received = []
        reader = FeedReader(backend, on_snapshot=received.append)
        await reader.refresh()
        await reader.refresh()
        assert len(received) == 2
        assert reader.snapshot is received[-1]

    async def test_async_on_snapshot_awaited(self, backend):
        listener = AsyncMock()
        reader = FeedReader(backend, on_snapshot=listener)
        snapshot = await reader.refresh()
        listener.assert_awaited_once_with(snapshot)


class TestRefreshFailures:
    """Failed queries keep the previous snapshot and post one toast."""

    async def test_memo_query_failure_keeps_snapshot(self, backend, notifier):
        await _insert_memo(backend, "u1", "hello")
        reader = FeedReader(backend, notifier=notifier)
        first = await reader.refresh()

        with patch.object(backend.db, "select", new=AsyncMock(side_effect=BackendError("down"))):
            with pytest.raises(FeedFetchFailedError):
                await reader.refresh()

        assert reader.snapshot is first
        toasts = notifier.active()
        assert len(toasts) == 1
        assert toasts[0].message == "Failed to load voice memos"

    async def test_profile_query_failure(self, backend, notifier):
        await _insert_memo(backend, "u1", "hello")
        real_select = backend.db.select

        async def _select(table, **kwargs):
            if table == "user_profiles":
                raise BackendError("down")
            return await real_select(table, **kwargs)

        reader = FeedReader(backend, notifier=notifier)
        with patch.object(backend.db, "select", new=AsyncMock(side_effect=_select)):
            with pytest.raises(ProfileFetchFailedError):
                await reader.refresh()

        assert reader.snapshot is None
        assert notifier.active()[0].message == "Failed to load voice memos"


# ---------------------------------------------------------------------------
# Live updates
# ---------------------------------------------------------------------------


class TestLiveUpdates:
    """Mounting, change notifications, and coalescing."""

    async def test_mount_loads_and_subscribes(self, backend):
        await _insert_memo(backend, "u1", "hello")
        reader = FeedReader(backend)
        snapshot = await reader.mount()

        assert reader.mounted
        assert len(snapshot.items) == 1
        assert backend.realtime.subscription_count == 1
        await reader.unmount()

    async def test_insert_refreshes_feed(self, backend):
        reader = FeedReader(backend)
        await reader.mount()

        await _insert_memo(backend, "u1", "first", minutes=1)
        await _insert_memo(backend, "u1", "second", minutes=2)
        await reader.wait_idle()

        assert [item.title for item in reader.snapshot.items] == ["second", "first"]
        assert reader.refresh_count <= 3
        await reader.unmount()

    async def test_burst_of_changes_coalesces(self, backend):
        """Several notifications before the refresher runs cause one refresh."""
        reader = FeedReader(backend)
        await reader.mount()
        assert reader.refresh_count == 1

        for i in range(5):
            await backend.realtime.publish(_memo_event(f"m{i}"))
        await reader.wait_idle()

        assert reader.refresh_count == 2
        await reader.unmount()

    async def test_change_during_refresh_triggers_another(self, backend):
        reader = None

        async def _on_snapshot(snapshot):
            if reader.refresh_count == 2:
                await backend.realtime.publish(_memo_event("late"))

        reader = FeedReader(backend, on_snapshot=_on_snapshot)
        await reader.mount()
        await backend.realtime.publish(_memo_event())
        await reader.wait_idle()

        assert reader.refresh_count == 3
        await reader.unmount()

    async def test_unpublished_insert_ignored(self, backend):
        reader = FeedReader(backend)
        await reader.mount()
        await _insert_memo(backend, "u1", "draft", published=False)
        await reader.wait_idle()
        assert reader.refresh_count == 1
        await reader.unmount()

    async def test_unmount_stops_updates(self, backend):
        reader = FeedReader(backend)
        await reader.mount()
        await reader.unmount()

        assert not reader.mounted
        assert backend.realtime.subscription_count == 0
        await _insert_memo(backend, "u1", "after")
        await reader.wait_idle()
        assert reader.refresh_count == 1

    async def test_mount_survives_failed_initial_load(self, backend, notifier):
        reader = FeedReader(backend, notifier=notifier)
        with patch.object(backend.db, "select", new=AsyncMock(side_effect=BackendError("down"))):
            snapshot = await reader.mount()

        assert snapshot is None
        assert reader.mounted
        assert notifier.active()[0].code == "FEED_FETCH_FAILED"

        await _insert_memo(backend, "u1", "recovered")
        await reader.wait_idle()
        assert [item.title for item in reader.snapshot.items] == ["recovered"]
        await reader.unmount()


# ---------------------------------------------------------------------------
# Likes
# ---------------------------------------------------------------------------


class TestLike:
    """Like counter increments."""

    async def test_like_increments_counter(self, backend):
        memo = await _insert_memo(backend, "u1", "hello")
        reader = FeedReader(backend)
        first = await reader.like(memo["id"])
        second = await reader.like(memo["id"])
        assert (first.likes_count, second.likes_count) == (1, 2)

    async def test_like_shows_up_after_update_notification(self, backend):
        memo = await _insert_memo(backend, "u1", "hello")
        reader = FeedReader(backend)
        await reader.mount()

        await reader.like(memo["id"])
        await reader.wait_idle()

        assert reader.snapshot.items[0].likes_count == 1
        await reader.unmount()

    async def test_insert_only_subscription_keeps_stale_count(self, backend):
        """Without UPDATE events the snapshot keeps the old count until the next refresh."""
        memo = await _insert_memo(backend, "u1", "hello")
        reader = FeedReader(backend, include_updates=False)
        await reader.mount()

        await reader.like(memo["id"])
        await reader.wait_idle()
        assert reader.snapshot.items[0].likes_count == 0

        await reader.refresh()
        assert reader.snapshot.items[0].likes_count == 1
        await reader.unmount()

    async def test_like_unknown_memo(self, backend, notifier):
        with pytest.raises(MemoNotFoundError):
            await FeedReader(backend, notifier=notifier).like("missing")
        assert notifier.active()[0].code == "MEMO_NOT_FOUND"

    async def test_like_failure(self, backend, notifier):
        memo = await _insert_memo(backend, "u1", "hello")
        reader = FeedReader(backend, notifier=notifier)
        with patch.object(backend.db, "update", new=AsyncMock(side_effect=BackendError("down"))):
            with pytest.raises(LikeFailedError):
                await reader.like(memo["id"])
        assert notifier.active()[0].message == "Failed to like voice memo"
