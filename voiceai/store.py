"""
SQLite-backed document store using aiosqlite.

Stands in for the hosted document database: named collections of JSON
documents, filtered queries ordered by ``created_at`` descending with
keyset cursors, and ``watch()`` subscriptions that re-deliver the full
matching set after every write to the collection.
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional

import aiosqlite
import structlog

from voiceai.exceptions import NotFoundError, StoreUnavailableError, ValidationError
from voiceai.mapper import to_iso_string

log = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection   TEXT NOT NULL,
    id           TEXT NOT NULL,
    created_at   TEXT NOT NULL,
    data         TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE INDEX IF NOT EXISTS idx_documents_order
    ON documents(collection, created_at DESC, id DESC);
"""

_OPERATORS = {"==": "=", "!=": "!=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}
_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


@dataclass(frozen=True)
class Where:
    """One ``field op value`` clause; ``field`` may be a dotted path."""

    field: str
    op: str
    value: Any

    def to_sql(self) -> tuple[str, list[Any]]:
        if self.op not in _OPERATORS:
            raise ValidationError(f"Unsupported operator: {self.op}")
        if not _FIELD_RE.match(self.field):
            raise ValidationError(f"Invalid field path: {self.field}")
        return f"json_extract(data, ?) {_OPERATORS[self.op]} ?", [f"$.{self.field}", self.value]


@dataclass
class Document:
    id: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""


def _encode_value(value: Any) -> Any:
    # Datetimes are persisted as store timestamps.
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        seconds = int(value.replace(microsecond=0).timestamp())
        return {"seconds": seconds, "nanoseconds": value.microsecond * 1000}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, default=_encode_value)


class DocumentStore:
    """Async document collections on a single SQLite file."""

    def __init__(self, db_path: Path):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._listeners: dict[str, set[asyncio.Queue]] = {}

    async def connect(self) -> None:
        if str(self._path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        log.info("store_connected", path=str(self._path))

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def connected(self) -> bool:
        return self._db is not None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreUnavailableError("Document store is not connected")
        return self._db

    # ── Writes ──────────────────────────────────────────────────

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> None:
        """
        Create or replace a document; ``merge`` keeps existing fields.

        The ordering key comes from ``createdAt`` when the write carries one,
        otherwise an existing document keeps its key.
        """
        db = self._conn()
        existing = None
        if merge or "createdAt" not in data:
            existing = await self.get(collection, doc_id)
        body = {**existing.data, **data} if merge and existing else dict(data)
        if existing is not None and "createdAt" not in data:
            created_at = existing.created_at
        else:
            created_at = self._created_at(body)
        await db.execute(
            """
            INSERT INTO documents (collection, id, created_at, data)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(collection, id) DO UPDATE SET
                created_at = excluded.created_at,
                data = excluded.data
            """,
            (collection, doc_id, created_at, _dumps(body)),
        )
        await db.commit()
        self._notify(collection)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Insert a document under a generated id and return the id."""
        doc_id = uuid.uuid4().hex
        await self.set(collection, doc_id, data)
        return doc_id

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        if await self.get(collection, doc_id) is None:
            raise NotFoundError(f"{collection}/{doc_id} not found")
        await self.set(collection, doc_id, data, merge=True)

    async def delete(self, collection: str, doc_id: str) -> bool:
        db = self._conn()
        cursor = await db.execute(
            "DELETE FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        )
        await db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            self._notify(collection)
        return deleted

    # ── Reads ───────────────────────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        db = self._conn()
        cursor = await db.execute(
            "SELECT * FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        )
        row = await cursor.fetchone()
        return self._row_to_document(row) if row else None

    async def query(
        self,
        collection: str,
        where: Iterable[Where] = (),
        after: Optional[tuple[str, str]] = None,
        limit: Optional[int] = None,
    ) -> list[Document]:
        """
        Documents of ``collection`` matching every clause, newest first.

        ``after`` is a ``(created_at, id)`` keyset position: only documents
        strictly after it in the ordering are returned.
        """
        db = self._conn()
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for clause in where:
            sql, values = clause.to_sql()
            clauses.append(sql)
            params.extend(values)
        if after is not None:
            created_at, doc_id = after
            clauses.append("(created_at < ? OR (created_at = ? AND id < ?))")
            params.extend([created_at, created_at, doc_id])

        sql = f"SELECT * FROM documents WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = await db.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_document(r) for r in rows]

    async def count(self, collection: str, where: Iterable[Where] = ()) -> int:
        return len(await self.query(collection, where))

    # ── Subscriptions ───────────────────────────────────────────

    def watch(
        self,
        collection: str,
        where: Iterable[Where] = (),
        limit: Optional[int] = None,
    ) -> "Subscription":
        return Subscription(self, collection, list(where), limit)

    def _notify(self, collection: str) -> None:
        for queue in self._listeners.get(collection, ()):
            queue.put_nowait(None)

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _created_at(data: dict[str, Any]) -> str:
        return to_iso_string(data.get("createdAt"))

    @staticmethod
    def _row_to_document(row) -> Document:
        return Document(
            id=row["id"],
            data=json.loads(row["data"]),
            created_at=row["created_at"],
        )


class Subscription:
    """
    Async iterator of full result snapshots.

    Yields the current matching set immediately, then again after every
    write to the collection. Bursts of writes are coalesced into a single
    snapshot. ``close()`` ends the iteration.
    """

    def __init__(self, store: DocumentStore, collection: str, where: list[Where], limit: Optional[int]):
        self._store = store
        self._collection = collection
        self._where = where
        self._limit = limit
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        store._listeners.setdefault(collection, set()).add(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[list[Document]]:
        return self._snapshots()

    async def _snapshots(self) -> AsyncIterator[list[Document]]:
        if self._closed:
            return
        yield await self._store.query(self._collection, self._where, limit=self._limit)
        while not self._closed:
            await self._queue.get()
            while not self._queue.empty():
                self._queue.get_nowait()
            if self._closed:
                return
            yield await self._store.query(self._collection, self._where, limit=self._limit)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        listeners = self._store._listeners.get(self._collection)
        if listeners is not None:
            listeners.discard(self._queue)
        # wake a pending iterator so it can exit
        self._queue.put_nowait(None)
