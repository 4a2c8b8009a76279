"""
CallsFeed: cache + fetcher + mapper behind one consumer-facing object.

A feed exposes ``data``, ``loading``, ``error``, ``has_more`` plus the
``refetch()`` / ``load_more()`` actions for one tenant. It runs in one of
two modes fixed at construction:

* ``PAGINATED``: one-shot cursor pages, extended with ``load_more()``.
* ``SUBSCRIPTION``: the full matching set is re-delivered on every write
  to the calls collection; pagination is disabled.

State machine: ``idle → loading → {ready, error}``, and back to
``loading`` on ``refetch()`` or ``load_more()``. In-flight work runs as an
``asyncio.Task`` that a superseding load or ``close()`` cancels. Every load
is tagged with a generation number and only the newest generation may
apply its result, so a slow response can never overwrite newer data.
"""

from __future__ import annotations

import asyncio
import enum
import sqlite3
from dataclasses import dataclass, field
from typing import Optional

import structlog

from voiceai.cache import CallsCache
from voiceai.exceptions import DashboardError, InvalidFeedOperation
from voiceai.fetcher import PageCursor, PaginatedFetcher, document_to_record
from voiceai.models import CallRecord
from voiceai.store import DocumentStore, Subscription, Where

log = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_CALLS = 500


class FeedState(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class FeedMode(str, enum.Enum):
    PAGINATED = "paginated"
    SUBSCRIPTION = "subscription"


@dataclass
class FeedSnapshot:
    state: FeedState
    data: list[CallRecord] = field(default_factory=list)
    loading: bool = False
    error: Optional[str] = None
    has_more: bool = False


class CallsFeed:
    """Call records for one tenant, kept in sync with the cache."""

    def __init__(
        self,
        store: DocumentStore,
        cache: CallsCache,
        tenant_id: Optional[str],
        mode: FeedMode = FeedMode.PAGINATED,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_calls: int = DEFAULT_MAX_CALLS,
        enabled: bool = True,
        skip_cache: bool = False,
        collection: str = "calls",
        tenant_field: str = "userId",
    ):
        self.store = store
        self.cache = cache
        self.tenant_id = tenant_id
        self.mode = mode
        self.page_size = page_size
        self.max_calls = max_calls
        self.enabled = enabled
        self.skip_cache = skip_cache
        self.collection = collection
        self.tenant_field = tenant_field

        self.state = FeedState.IDLE
        self.data: list[CallRecord] = []
        self.error: Optional[str] = None
        self.has_more = False

        self._cursor: Optional[PageCursor] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._closed = False
        self._changed = asyncio.Event()

    # ── Public surface ──────────────────────────────────────────

    @property
    def loading(self) -> bool:
        return self.state is FeedState.LOADING

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.tenant_id) and not self._closed

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> FeedSnapshot:
        return FeedSnapshot(
            state=self.state,
            data=list(self.data),
            loading=self.loading,
            error=self.error,
            has_more=self.has_more,
        )

    async def start(self) -> None:
        """
        Initial load.

        Without a tenant (or when disabled) the feed stays idle and reports
        empty, non-loading data. A fresh cache hit is served directly; a
        stale one is served while a background refresh runs.
        """
        if not self.active:
            self._reset_empty()
            self.cache.invalidate()
            return

        if self.mode is FeedMode.SUBSCRIPTION:
            await self._start_subscription()
            return

        if not self.skip_cache:
            cached = self.cache.get(self.tenant_id)
            if cached is not None:
                self._apply_cached(cached)
                if self.cache.is_stale(self.tenant_id):
                    log.info("calls_feed_background_refresh", tenant_id=self.tenant_id)
                    self._spawn_load(background=True)
                return

        await self._wait(self._spawn_load(background=False))

    async def refetch(self) -> None:
        """Invalidate the cache and reload from scratch, from any state."""
        self.cache.invalidate()
        if not self.active:
            self._reset_empty()
            return
        log.info("calls_feed_refetch", tenant_id=self.tenant_id, mode=self.mode.value)
        if self.mode is FeedMode.SUBSCRIPTION:
            await self._start_subscription()
            return
        await self._wait(self._spawn_load(background=False))

    async def load_more(self) -> bool:
        """
        Append the next page.

        Only acts from ``ready`` with ``has_more``; otherwise a no-op that
        returns False. Returns True when a page was applied.
        """
        if self.mode is FeedMode.SUBSCRIPTION:
            raise InvalidFeedOperation("load_more is not available in subscription mode")
        if not self.active or self.state is not FeedState.READY or not self.has_more:
            return False

        remaining = self.max_calls - len(self.data)
        if remaining <= 0:
            self.has_more = False
            return False

        cursor = self._cursor
        if cursor is None and self.data:
            cursor = PageCursor.after(self.data[-1])

        self._cancel_task()
        self.state = FeedState.LOADING
        self.error = None
        task = asyncio.create_task(
            self._fetch_more(self._generation, cursor, min(self.page_size, remaining))
        )
        self._task = task
        await self._wait(task)
        return not task.cancelled() and task.result()

    async def close(self) -> None:
        """Stop listening and cancel in-flight work; later results are dropped."""
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        self._close_subscription()
        task = self._task
        self._cancel_task()
        if task is not None:
            await asyncio.wait({task})
        log.debug("calls_feed_closed", tenant_id=self.tenant_id)

    async def wait_idle(self) -> None:
        """Wait for the current in-flight load (if any) to settle."""
        task = self._task
        if task is not None and not task.done() and self.mode is FeedMode.PAGINATED:
            await asyncio.wait({task})

    async def wait_for_change(self, timeout: Optional[float] = None) -> bool:
        """Block until the feed's data or state changes. False on timeout."""
        event = self._changed
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def run_periodic_refresh(self, interval_seconds: float) -> None:
        """Refetch on a fixed interval until the feed is closed."""
        while not self._closed:
            await asyncio.sleep(interval_seconds)
            if self._closed:
                break
            await self.refetch()

    # ── Paginated loading ───────────────────────────────────────

    def _fetcher(self) -> PaginatedFetcher:
        return PaginatedFetcher(self.store, self.tenant_id, self.collection, self.tenant_field)

    def _spawn_load(self, background: bool) -> asyncio.Task:
        self._cancel_task()
        self._generation += 1
        if not background:
            self.state = FeedState.LOADING
            self.error = None
            self._notify()
        task = asyncio.create_task(self._fetch_first(self._generation, background))
        self._task = task
        return task

    async def _fetch_first(self, generation: int, background: bool) -> None:
        size = min(self.page_size, self.max_calls)
        try:
            page = await self._fetcher().fetch_page(None, size)
        except (DashboardError, sqlite3.Error) as exc:
            if self._is_current(generation):
                self._apply_error(exc, keep_state=background)
            return

        if not self._is_current(generation):
            log.debug("calls_feed_result_dropped", tenant_id=self.tenant_id, generation=generation)
            return

        self.data = page.records
        self._cursor = page.next_cursor
        self.has_more = page.has_more and len(page.records) < self.max_calls
        self.state = FeedState.READY
        self.error = None
        self.cache.set(self.tenant_id, self.data)
        log.info(
            "calls_feed_loaded",
            tenant_id=self.tenant_id,
            count=len(self.data),
            has_more=self.has_more,
        )
        self._notify()

    async def _fetch_more(self, generation: int, cursor: Optional[PageCursor], size: int) -> bool:
        try:
            page = await self._fetcher().fetch_page(cursor, size)
        except (DashboardError, sqlite3.Error) as exc:
            if self._is_current(generation):
                self._apply_error(exc)
            return False

        if not self._is_current(generation):
            return False

        seen = {r.id for r in self.data}
        merged = self.data + [r for r in page.records if r.id not in seen]
        self.data = merged
        self._cursor = page.next_cursor
        self.has_more = page.has_more and bool(page.records) and len(merged) < self.max_calls
        self.state = FeedState.READY
        self.cache.set(self.tenant_id, merged)
        log.info(
            "calls_feed_page_appended",
            tenant_id=self.tenant_id,
            added=len(page.records),
            total=len(merged),
            has_more=self.has_more,
        )
        self._notify()
        return True

    # ── Subscription mode ───────────────────────────────────────

    async def _start_subscription(self) -> None:
        self._close_subscription()
        self._cancel_task()
        self._generation += 1
        self.state = FeedState.LOADING
        self.error = None
        self.has_more = False

        first = asyncio.Event()
        subscription = self.store.watch(
            self.collection,
            [Where(self.tenant_field, "==", self.tenant_id)],
            limit=self.max_calls,
        )
        self._subscription = subscription
        task = asyncio.create_task(self._consume(self._generation, subscription, first))
        self._task = task
        waiter = asyncio.create_task(first.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

    async def _consume(self, generation: int, subscription: Subscription, first: asyncio.Event) -> None:
        try:
            async for docs in subscription:
                if not self._is_current(generation):
                    break
                self.data = [document_to_record(d) for d in docs]
                self.state = FeedState.READY
                self.error = None
                self.cache.set(self.tenant_id, self.data)
                log.debug("calls_feed_snapshot", tenant_id=self.tenant_id, count=len(self.data))
                first.set()
                self._notify()
        except (DashboardError, sqlite3.Error) as exc:
            if self._is_current(generation):
                self._apply_error(exc)
        finally:
            first.set()
            subscription.close()

    def _close_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    # ── Helpers ─────────────────────────────────────────────────

    def _is_current(self, generation: int) -> bool:
        return not self._closed and generation == self._generation

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @staticmethod
    async def _wait(task: asyncio.Task) -> None:
        # asyncio.wait does not re-raise the task's cancellation
        await asyncio.wait({task})

    def _apply_cached(self, cached: list[CallRecord]) -> None:
        self.data = list(cached)
        self._cursor = PageCursor.after(cached[-1]) if cached else None
        # The cache keeps records only; a full page suggests more may remain.
        # A zero-length follow-up page settles it.
        self.has_more = len(cached) >= self.page_size and len(cached) < self.max_calls
        self.state = FeedState.READY
        self.error = None
        log.debug("calls_feed_cache_hit", tenant_id=self.tenant_id, count=len(cached))
        self._notify()

    def _apply_error(self, exc: Exception, keep_state: bool = False) -> None:
        message = exc.message if isinstance(exc, DashboardError) else str(exc)
        log.error("calls_feed_fetch_failed", tenant_id=self.tenant_id, error=message)
        if keep_state and self.state is FeedState.READY:
            # background refresh failed; keep serving what we have
            return
        self.state = FeedState.ERROR
        self.error = message
        self._notify()

    def _reset_empty(self) -> None:
        self.state = FeedState.IDLE
        self.data = []
        self.error = None
        self.has_more = False
        self._cursor = None

    def _notify(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()


async def fetch_calls(
    store: DocumentStore,
    cache: CallsCache,
    tenant_id: str,
    max_calls: int = DEFAULT_MAX_CALLS,
    page_size: int = DEFAULT_PAGE_SIZE,
    skip_cache: bool = False,
) -> list[CallRecord]:
    """One-shot load of up to ``max_calls`` records, through the cache."""
    if not skip_cache:
        cached = cache.get(tenant_id)
        if cached is not None:
            return cached
    records = await PaginatedFetcher(store, tenant_id).fetch_all(page_size, max_calls)
    cache.set(tenant_id, records)
    log.info("calls_fetched", tenant_id=tenant_id, count=len(records))
    return records
