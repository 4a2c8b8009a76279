"""
Cursor-based page fetcher over a tenant's call collection.

Pages are ordered by ``createdAt`` descending (ties broken by id). Each
request asks the store for ``page_size + 1`` documents and trims the extra
one, so ``has_more`` is exact rather than inferred from a full page.
"""

from __future__ import annotations

import base64
import binascii
import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from voiceai.exceptions import FetchError, ValidationError
from voiceai.mapper import map_raw_to_call_record
from voiceai.models import CallRecord
from voiceai.store import Document, DocumentStore, Where

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PageCursor:
    """Position just after the last record of a page."""

    created_at: str
    doc_id: str

    @classmethod
    def after(cls, record: CallRecord) -> "PageCursor":
        return cls(created_at=record.created_at, doc_id=record.id)

    def encode(self) -> str:
        payload = json.dumps([self.created_at, self.doc_id]).encode()
        return base64.urlsafe_b64encode(payload).decode().rstrip("=")

    @classmethod
    def decode(cls, token: str) -> "PageCursor":
        try:
            padded = token + "=" * (-len(token) % 4)
            created_at, doc_id = json.loads(base64.urlsafe_b64decode(padded))
        except (binascii.Error, ValueError, TypeError) as exc:
            raise ValidationError("Invalid page cursor") from exc
        if not isinstance(created_at, str) or not isinstance(doc_id, str):
            raise ValidationError("Invalid page cursor")
        return cls(created_at=created_at, doc_id=doc_id)


@dataclass
class Page:
    records: list[CallRecord] = field(default_factory=list)
    next_cursor: Optional[PageCursor] = None
    has_more: bool = False


def document_to_record(doc: Document, now: Optional[datetime] = None) -> CallRecord:
    """Map a stored document, using the document id and its ordering key."""
    raw = {**doc.data, "id": doc.id}
    raw.setdefault("createdAt", doc.created_at)
    record = map_raw_to_call_record(raw, now)
    # Cursors are built from records, so they must carry the stored key.
    if doc.created_at and record.created_at != doc.created_at:
        record = record.model_copy(update={"created_at": doc.created_at})
    return record


class PaginatedFetcher:
    """Fetches successive pages of one tenant's calls."""

    def __init__(
        self,
        store: DocumentStore,
        tenant_id: str,
        collection: str = "calls",
        tenant_field: str = "userId",
    ):
        self.store = store
        self.tenant_id = tenant_id
        self.collection = collection
        self.tenant_field = tenant_field

    @property
    def _where(self) -> list[Where]:
        return [Where(self.tenant_field, "==", self.tenant_id)]

    async def fetch_page(self, cursor: Optional[PageCursor], page_size: int) -> Page:
        """
        Fetch the page after ``cursor`` (the first page when None).

        A zero-length page is terminal. ``next_cursor`` is None whenever
        nothing remains. Store failures surface as ``FetchError``.
        """
        if page_size < 1:
            raise ValidationError("page_size must be positive")

        after = (cursor.created_at, cursor.doc_id) if cursor else None
        try:
            docs = await self.store.query(self.collection, self._where, after=after, limit=page_size + 1)
        except (sqlite3.Error, ValueError) as exc:
            log.error("calls_page_fetch_failed", tenant_id=self.tenant_id, error=str(exc))
            raise FetchError(f"Failed to fetch calls: {exc}") from exc

        has_more = len(docs) > page_size
        records = [document_to_record(d) for d in docs[:page_size]]
        next_cursor = PageCursor.after(records[-1]) if has_more and records else None

        log.debug(
            "calls_page_fetched",
            tenant_id=self.tenant_id,
            count=len(records),
            has_more=has_more,
        )
        return Page(records=records, next_cursor=next_cursor, has_more=has_more)

    async def fetch_all(self, page_size: int, max_records: Optional[int] = None) -> list[CallRecord]:
        """Walk pages until exhausted or ``max_records`` are collected."""
        records: list[CallRecord] = []
        cursor: Optional[PageCursor] = None
        while True:
            size = page_size
            if max_records is not None:
                size = min(page_size, max_records - len(records))
                if size <= 0:
                    break
            page = await self.fetch_page(cursor, size)
            records.extend(page.records)
            if not page.has_more or not page.records:
                break
            cursor = page.next_cursor
        return records
