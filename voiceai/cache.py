"""
In-memory TTL cache for a tenant's most recently fetched call records.

A ``CallsCache`` holds a single slot: the last list written and the tenant
it belongs to. A miss is always safe, it only costs an extra fetch.
``TenantCaches`` hands out one slot per tenant when several tenants share
a process (the HTTP API).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from voiceai.models import CallRecord

log = structlog.get_logger(__name__)

CACHE_TTL_SECONDS = 5 * 60


@dataclass
class CacheEntry:
    records: list[CallRecord]
    timestamp: float
    tenant_id: str


class CallsCache:
    """Single-slot, tenant-checked TTL cache."""

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entry: Optional[CacheEntry] = None

    def get(self, tenant_id: str) -> Optional[list[CallRecord]]:
        """Cached records for ``tenant_id`` if the slot is theirs and fresh."""
        entry = self._entry
        if entry is None or entry.tenant_id != tenant_id:
            return None
        if self._clock() - entry.timestamp > self.ttl_seconds:
            log.debug("calls_cache_expired", tenant_id=tenant_id)
            self._entry = None
            return None
        return entry.records

    def set(self, tenant_id: str, records: list[CallRecord]) -> None:
        """Replace the slot unconditionally (last write wins)."""
        self._entry = CacheEntry(records=records, timestamp=self._clock(), tenant_id=tenant_id)

    def invalidate(self) -> None:
        self._entry = None

    def is_stale(self, tenant_id: str) -> bool:
        """True when there is no valid entry or it is older than TTL/2."""
        entry = self._entry
        if entry is None or entry.tenant_id != tenant_id:
            return True
        return self._clock() - entry.timestamp > self.ttl_seconds / 2

    def age(self) -> Optional[int]:
        """Age of the slot in whole seconds, None when empty."""
        if self._entry is None:
            return None
        return int(self._clock() - self._entry.timestamp)


class TenantCaches:
    """One ``CallsCache`` per tenant, created on first use."""

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._caches: dict[str, CallsCache] = {}

    def for_tenant(self, tenant_id: str) -> CallsCache:
        cache = self._caches.get(tenant_id)
        if cache is None:
            cache = CallsCache(self.ttl_seconds, self._clock)
            self._caches[tenant_id] = cache
        return cache

    def invalidate(self, tenant_id: str) -> None:
        cache = self._caches.pop(tenant_id, None)
        if cache is not None:
            cache.invalidate()
            log.info("calls_cache_invalidated", tenant_id=tenant_id)

    def clear(self) -> None:
        self._caches.clear()
