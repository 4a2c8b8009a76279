"""Tests for the SQLite document store."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from voiceai.exceptions import NotFoundError, StoreUnavailableError, ValidationError
from voiceai.store import DocumentStore, Where

BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def store(tmp_path):
    s = DocumentStore(tmp_path / "test.db")
    await s.connect()
    yield s
    await s.close()


@pytest.mark.asyncio
async def test_set_and_get(store):
    await store.set("users", "u1", {"email": "a@example.com"})
    doc = await store.get("users", "u1")
    assert doc is not None
    assert doc.id == "u1"
    assert doc.data == {"email": "a@example.com"}
    assert await store.get("users", "missing") is None


@pytest.mark.asyncio
async def test_set_merge_keeps_existing_fields(store):
    await store.set("users", "u1", {"email": "a@example.com", "timezone": "UTC"})
    await store.set("users", "u1", {"timezone": "Europe/London"}, merge=True)
    doc = await store.get("users", "u1")
    assert doc.data == {"email": "a@example.com", "timezone": "Europe/London"}

    await store.set("users", "u1", {"email": "b@example.com"})
    doc = await store.get("users", "u1")
    assert doc.data == {"email": "b@example.com"}


@pytest.mark.asyncio
async def test_merge_preserves_ordering_key(store):
    await store.set("calls", "c1", {"createdAt": BASE})
    before = (await store.get("calls", "c1")).created_at
    await store.set("calls", "c1", {"status": "ended"}, merge=True)
    assert (await store.get("calls", "c1")).created_at == before == "2026-01-01T00:00:00.000Z"


@pytest.mark.asyncio
async def test_replace_without_created_at_keeps_ordering_key(store):
    await store.set("calls", "old", {"userId": "t1", "createdAt": BASE})
    await store.set("calls", "new", {"userId": "t1", "createdAt": BASE + timedelta(days=1)})

    await store.set("calls", "old", {"userId": "t1", "status": "ended"})
    doc = await store.get("calls", "old")
    assert doc.data == {"userId": "t1", "status": "ended"}
    assert doc.created_at == "2026-01-01T00:00:00.000Z"
    assert [d.id for d in await store.query("calls")] == ["new", "old"]


@pytest.mark.asyncio
async def test_explicit_created_at_moves_the_document(store):
    await store.set("calls", "c1", {"createdAt": BASE})
    await store.set("calls", "c1", {"createdAt": BASE + timedelta(hours=1)})
    assert (await store.get("calls", "c1")).created_at == "2026-01-01T01:00:00.000Z"


@pytest.mark.asyncio
async def test_add_generates_id(store):
    doc_id = await store.add("calls", {"userId": "t1"})
    assert doc_id
    assert (await store.get("calls", doc_id)).data["userId"] == "t1"


@pytest.mark.asyncio
async def test_update_and_delete(store):
    with pytest.raises(NotFoundError):
        await store.update("users", "u1", {"x": 1})

    await store.set("users", "u1", {"x": 1, "y": 2})
    await store.update("users", "u1", {"x": 3})
    assert (await store.get("users", "u1")).data == {"x": 3, "y": 2}

    assert await store.delete("users", "u1") is True
    assert await store.delete("users", "u1") is False


@pytest.mark.asyncio
async def test_datetimes_are_stored_as_timestamps(store):
    when = datetime(2026, 1, 5, 10, 0, 0, 250000, tzinfo=timezone.utc)
    await store.set("email_verifications", "u1", {"expiresAt": when})
    stored = (await store.get("email_verifications", "u1")).data["expiresAt"]
    assert stored == {"seconds": int(when.replace(microsecond=0).timestamp()), "nanoseconds": 250_000_000}


@pytest.mark.asyncio
async def test_query_orders_newest_first_with_id_tiebreak(store):
    await store.set("calls", "a", {"userId": "t1", "createdAt": BASE})
    await store.set("calls", "b", {"userId": "t1", "createdAt": BASE})
    await store.set("calls", "c", {"userId": "t1", "createdAt": BASE + timedelta(hours=1)})
    await store.set("calls", "d", {"userId": "t2", "createdAt": BASE + timedelta(hours=2)})

    docs = await store.query("calls", [Where("userId", "==", "t1")])
    assert [d.id for d in docs] == ["c", "b", "a"]


@pytest.mark.asyncio
async def test_query_after_cursor_and_limit(store):
    for i in range(5):
        await store.set("calls", f"c{i}", {"userId": "t1", "createdAt": BASE + timedelta(minutes=i)})

    first = await store.query("calls", limit=2)
    assert [d.id for d in first] == ["c4", "c3"]
    last = first[-1]
    rest = await store.query("calls", after=(last.created_at, last.id))
    assert [d.id for d in rest] == ["c2", "c1", "c0"]


@pytest.mark.asyncio
async def test_query_operators_and_nested_fields(store):
    await store.set("calls", "c1", {"durationSeconds": 30, "callAnalysis": {"userSentiment": "Positive"}})
    await store.set("calls", "c2", {"durationSeconds": 90, "callAnalysis": {"userSentiment": "Negative"}})

    long_calls = await store.query("calls", [Where("durationSeconds", ">=", 60)])
    assert [d.id for d in long_calls] == ["c2"]
    positive = await store.query("calls", [Where("callAnalysis.userSentiment", "==", "Positive")])
    assert [d.id for d in positive] == ["c1"]
    assert await store.count("calls") == 2


@pytest.mark.asyncio
async def test_invalid_clause_is_rejected(store):
    with pytest.raises(ValidationError):
        await store.query("calls", [Where("userId", "LIKE", "t%")])
    with pytest.raises(ValidationError):
        await store.query("calls", [Where("user') OR 1=1 --", "==", "x")])


@pytest.mark.asyncio
async def test_unconnected_store_raises(tmp_path):
    s = DocumentStore(tmp_path / "never.db")
    with pytest.raises(StoreUnavailableError):
        await s.get("users", "u1")


@pytest.mark.asyncio
async def test_watch_delivers_snapshots_until_closed(store):
    sub = store.watch("calls", [Where("userId", "==", "t1")])
    snapshots = sub.__aiter__()

    first = await asyncio.wait_for(snapshots.__anext__(), 2)
    assert first == []

    await store.set("calls", "c1", {"userId": "t1", "createdAt": BASE})
    second = await asyncio.wait_for(snapshots.__anext__(), 2)
    assert [d.id for d in second] == ["c1"]

    sub.close()
    assert sub.closed
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(snapshots.__anext__(), 2)


@pytest.mark.asyncio
async def test_writes_to_other_collections_do_not_wake_watchers(store):
    sub = store.watch("calls")
    snapshots = sub.__aiter__()
    await snapshots.__anext__()

    await store.set("users", "u1", {"email": "a@example.com"})
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(snapshots.__anext__(), 0.1)
    sub.close()
