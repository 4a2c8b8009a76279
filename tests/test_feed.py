"""Tests for CallsFeed state, pagination and subscription behaviour."""

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from voiceai.cache import CallsCache
from voiceai.exceptions import InvalidFeedOperation
from voiceai.feed import CallsFeed, FeedMode, FeedState, fetch_calls
from voiceai.models import CallRecord
from voiceai.store import DocumentStore

BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class GatedStore:
    """Wraps a real store; the first query blocks until ``gate`` is set."""

    def __init__(self, inner):
        self.inner = inner
        self.gate = asyncio.Event()
        self.calls = 0
        self.cancelled = False

    async def query(self, *args, **kwargs):
        self.calls += 1
        if self.calls == 1:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        return await self.inner.query(*args, **kwargs)

    def watch(self, *args, **kwargs):
        return self.inner.watch(*args, **kwargs)


class BrokenStore:
    async def query(self, *args, **kwargs):
        raise sqlite3.OperationalError("database is locked")


@pytest_asyncio.fixture
async def store(tmp_path):
    s = DocumentStore(tmp_path / "test.db")
    await s.connect()
    yield s
    await s.close()


async def seed(store, tenant, count, start=0):
    for i in range(start, start + count):
        await store.set("calls", f"c{i}", {
            "userId": tenant,
            "status": "ended",
            "createdAt": BASE + timedelta(minutes=i),
        })


async def eventually(condition, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _record(call_id):
    ts = "2025-12-01T00:00:00.000Z"
    return CallRecord(id=call_id, start_time=ts, end_time=ts, created_at=ts)


@pytest.mark.asyncio
async def test_load_more_walks_all_pages(store):
    await seed(store, "t1", 5)
    cache = CallsCache()
    feed = CallsFeed(store, cache, "t1", page_size=2)

    await feed.start()
    assert feed.state is FeedState.READY
    assert [r.id for r in feed.data] == ["c4", "c3"]
    assert feed.has_more is True

    assert await feed.load_more() is True
    assert len(feed.data) == 4
    assert feed.has_more is True

    assert await feed.load_more() is True
    assert [r.id for r in feed.data] == ["c4", "c3", "c2", "c1", "c0"]
    assert feed.has_more is False

    # nothing left: no-op
    assert await feed.load_more() is False
    assert len(feed.data) == 5
    assert [r.id for r in cache.get("t1")] == [r.id for r in feed.data]
    await feed.close()


@pytest.mark.asyncio
async def test_max_calls_caps_the_feed(store):
    await seed(store, "t1", 5)
    feed = CallsFeed(store, CallsCache(), "t1", page_size=2, max_calls=3)

    await feed.start()
    assert await feed.load_more() is True
    assert len(feed.data) == 3
    assert feed.has_more is False
    await feed.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("tenant, enabled", [(None, True), ("", True), ("t1", False)])
async def test_inactive_feed_stays_idle(store, tenant, enabled):
    await seed(store, "t1", 2)
    cache = CallsCache()
    cache.set("t1", [_record("old")])
    feed = CallsFeed(store, cache, tenant, enabled=enabled)

    await feed.start()
    assert feed.state is FeedState.IDLE
    assert feed.data == []
    assert feed.loading is False
    assert feed.error is None
    assert cache.get("t1") is None


@pytest.mark.asyncio
async def test_fresh_cache_hit_skips_the_store(store):
    await seed(store, "t1", 3)
    cache = CallsCache(clock=FakeClock())
    cached = [_record("cached_1")]
    cache.set("t1", cached)

    feed = CallsFeed(store, cache, "t1")
    await feed.start()
    assert [r.id for r in feed.data] == ["cached_1"]
    assert feed.state is FeedState.READY
    assert feed.has_more is False
    assert feed._task is None


@pytest.mark.asyncio
async def test_skip_cache_goes_to_the_store(store):
    await seed(store, "t1", 2)
    cache = CallsCache()
    cache.set("t1", [_record("cached_1")])

    feed = CallsFeed(store, cache, "t1", skip_cache=True)
    await feed.start()
    assert [r.id for r in feed.data] == ["c1", "c0"]
    await feed.close()


@pytest.mark.asyncio
async def test_stale_cache_is_served_then_refreshed(store):
    await seed(store, "t1", 2)
    clock = FakeClock()
    cache = CallsCache(ttl_seconds=300, clock=clock)
    cache.set("t1", [_record("cached_1")])
    clock.now += 200

    feed = CallsFeed(store, cache, "t1")
    await feed.start()
    assert [r.id for r in feed.data] == ["cached_1"]
    assert feed.state is FeedState.READY

    await feed.wait_idle()
    assert [r.id for r in feed.data] == ["c1", "c0"]
    assert [r.id for r in cache.get("t1")] == ["c1", "c0"]
    await feed.close()


@pytest.mark.asyncio
async def test_refetch_sees_new_data(store):
    await seed(store, "t1", 2)
    feed = CallsFeed(store, CallsCache(), "t1")
    await feed.start()
    assert len(feed.data) == 2

    await seed(store, "t1", 1, start=2)
    await feed.start()
    # cache hit, still the old list
    assert len(feed.data) == 2

    await feed.refetch()
    assert [r.id for r in feed.data] == ["c2", "c1", "c0"]
    await feed.close()


@pytest.mark.asyncio
async def test_fetch_error_then_recovery(store):
    feed = CallsFeed(BrokenStore(), CallsCache(), "t1")
    await feed.start()
    assert feed.state is FeedState.ERROR
    assert "database is locked" in feed.error
    assert feed.loading is False

    await seed(store, "t1", 1)
    feed.store = store
    await feed.refetch()
    assert feed.state is FeedState.READY
    assert feed.error is None
    assert [r.id for r in feed.data] == ["c0"]
    await feed.close()


@pytest.mark.asyncio
async def test_superseded_load_is_cancelled(store):
    await seed(store, "t1", 3)
    gated = GatedStore(store)
    feed = CallsFeed(gated, CallsCache(), "t1")

    starter = asyncio.create_task(feed.start())
    await eventually(lambda: gated.calls == 1)
    assert feed.loading is True
    generation = feed.generation

    await feed.refetch()
    assert feed.generation > generation
    assert gated.cancelled is True
    assert [r.id for r in feed.data] == ["c2", "c1", "c0"]

    await asyncio.wait_for(starter, 1)
    assert feed.state is FeedState.READY
    await feed.close()


@pytest.mark.asyncio
async def test_close_drops_in_flight_result(store):
    await seed(store, "t1", 3)
    gated = GatedStore(store)
    feed = CallsFeed(gated, CallsCache(), "t1")

    starter = asyncio.create_task(feed.start())
    await eventually(lambda: gated.calls == 1)
    await feed.close()
    gated.gate.set()
    await asyncio.wait_for(starter, 1)

    assert gated.cancelled is True
    assert feed.data == []
    assert feed.active is False
    assert await feed.load_more() is False


@pytest.mark.asyncio
async def test_subscription_mode_follows_writes(store):
    await seed(store, "t1", 2)
    cache = CallsCache()
    feed = CallsFeed(store, cache, "t1", mode=FeedMode.SUBSCRIPTION)

    await feed.start()
    assert feed.state is FeedState.READY
    assert [r.id for r in feed.data] == ["c1", "c0"]
    assert feed.has_more is False

    await seed(store, "t1", 1, start=2)
    await seed(store, "t2", 1, start=10)
    await eventually(lambda: len(feed.data) == 3)
    assert [r.id for r in feed.data] == ["c2", "c1", "c0"]
    assert [r.id for r in cache.get("t1")] == ["c2", "c1", "c0"]

    with pytest.raises(InvalidFeedOperation):
        await feed.load_more()

    await feed.close()
    await seed(store, "t1", 1, start=3)
    await asyncio.sleep(0.05)
    assert len(feed.data) == 3


@pytest.mark.asyncio
async def test_wait_for_change_times_out_when_quiet(store):
    feed = CallsFeed(store, CallsCache(), "t1")
    await feed.start()
    assert await feed.wait_for_change(timeout=0.05) is False
    await feed.close()


@pytest.mark.asyncio
async def test_periodic_refresh_picks_up_new_calls(store):
    await seed(store, "t1", 1)
    feed = CallsFeed(store, CallsCache(), "t1")
    await feed.start()

    refresher = asyncio.create_task(feed.run_periodic_refresh(0.01))
    await seed(store, "t1", 1, start=1)
    await eventually(lambda: len(feed.data) == 2)

    await feed.close()
    await asyncio.wait_for(refresher, 1)


@pytest.mark.asyncio
async def test_fetch_calls_uses_cache(store):
    await seed(store, "t1", 3)
    cache = CallsCache()

    first = await fetch_calls(store, cache, "t1", max_calls=10, page_size=2)
    assert [r.id for r in first] == ["c2", "c1", "c0"]

    await seed(store, "t1", 1, start=3)
    assert await fetch_calls(store, cache, "t1") is first

    fresh = await fetch_calls(store, cache, "t1", skip_cache=True)
    assert len(fresh) == 4
