"""
JSON document store on SQLite with an in-process change feed.

Documents live in one table keyed by (collection, id). Every committed write is
published on the event bus as `documents.<collection>` so that consumers can
`subscribe()` to a filtered stream of added / modified / removed changes instead
of polling the table.

Batches are split into chunks of at most `limit` operations; a chunk is one
transaction, and the operation group of a single record is never split across
chunks. A failing chunk rolls back alone; earlier chunks stay committed.
"""
from __future__ import annotations

import json
import re
import sqlite3
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from sensor_recon.core.infrastructure.events.bus import AsyncEventBus, Event, Subscription
from sensor_recon.core.infrastructure.storage.sqlite_adapter import read_only, transaction
from sensor_recon.utils.exceptions import NotFoundError
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import inc
from sensor_recon.utils.time import now_ms

_log = get_logger("storage.documents")

DEFAULT_BATCH_LIMIT = 500
_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ChangeKind = Literal["added", "modified", "removed"]
Where = Mapping[str, Any] | Callable[[dict[str, Any]], bool] | None


def topic_for(collection: str) -> str:
    return f"documents.{collection}"


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    collection: str
    doc_id: str
    data: dict[str, Any]


@dataclass(frozen=True)
class WriteOp:
    kind: Literal["set", "update", "delete"]
    collection: str
    doc_id: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def set(cls, collection: str, doc_id: str, data: Mapping[str, Any]) -> WriteOp:
        return cls("set", collection, doc_id, dict(data))

    @classmethod
    def update(cls, collection: str, doc_id: str, fields: Mapping[str, Any]) -> WriteOp:
        return cls("update", collection, doc_id, dict(fields))

    @classmethod
    def delete(cls, collection: str, doc_id: str) -> WriteOp:
        return cls("delete", collection, doc_id)


def _dumps(data: Mapping[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)


def matches(doc: Mapping[str, Any], where: Where) -> bool:
    if where is None:
        return True
    if callable(where):
        return bool(where(dict(doc)))
    return all(doc.get(k) == v for k, v in where.items())


def chunk_groups(groups: Sequence[Sequence[WriteOp]], limit: int) -> list[list[WriteOp]]:
    """Pack whole groups into chunks of at most `limit` operations."""
    if limit < 1:
        raise ValueError("limit must be >= 1")
    chunks: list[list[WriteOp]] = []
    current: list[WriteOp] = []
    for group in groups:
        if not group:
            continue
        if len(group) > limit:
            raise ValueError(f"operation group of {len(group)} exceeds batch limit {limit}")
        if len(current) + len(group) > limit:
            chunks.append(current)
            current = []
        current.extend(group)
    if current:
        chunks.append(current)
    return chunks


class ChangeStream:
    """
    Async iterator of ChangeEvent for one collection and filter.

    Starts with the current matching documents as `added`, then follows the
    bus. A known document that stops matching the filter is reported as
    `removed`, like a query listener would.
    """

    def __init__(
        self,
        sub: Subscription,
        collection: str,
        where: Where,
        initial: Sequence[dict[str, Any]] = (),
    ) -> None:
        self._sub = sub
        self._collection = collection
        self._where = where
        self._pending: deque[ChangeEvent] = deque(
            ChangeEvent("added", collection, str(doc["id"]), doc) for doc in initial
        )
        self._known: set[str] = {str(doc["id"]) for doc in initial}

    def _translate(self, evt: Event) -> ChangeEvent | None:
        kind = evt.payload.get("kind")
        doc_id = str(evt.payload.get("id"))
        data = dict(evt.payload.get("data") or {})
        known = doc_id in self._known

        if kind == "removed":
            if not known:
                return None
            self._known.discard(doc_id)
            return ChangeEvent("removed", self._collection, doc_id, data)

        if matches(data, self._where):
            self._known.add(doc_id)
            return ChangeEvent("modified" if known else "added", self._collection, doc_id, data)

        if known:
            self._known.discard(doc_id)
            return ChangeEvent("removed", self._collection, doc_id, data)
        return None

    def __aiter__(self) -> ChangeStream:
        return self

    async def __anext__(self) -> ChangeEvent:
        while True:
            if self._pending:
                return self._pending.popleft()
            evt = await self._sub.__anext__()
            change = self._translate(evt)
            if change is not None:
                return change

    def close(self) -> None:
        self._sub.close()

    async def __aenter__(self) -> ChangeStream:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()


class SqliteDocumentStore:
    """Per-document get/set/update/delete, equality queries, chunked atomic batches."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        bus: AsyncEventBus,
        *,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
    ) -> None:
        self._conn = conn
        self._bus = bus
        self.batch_limit = int(batch_limit)

    # -------------------------
    # reads
    # -------------------------
    @staticmethod
    def _read(cur: sqlite3.Cursor, collection: str, doc_id: str) -> dict[str, Any] | None:
        row = cur.execute(
            "SELECT data_json FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        ).fetchone()
        return json.loads(row[0]) if row else None

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        cur = self._conn.cursor()
        try:
            return self._read(cur, collection, doc_id)
        finally:
            cur.close()

    async def query(
        self,
        collection: str,
        where: Where = None,
        *,
        limit: int | None = None,
        **equals: Any,
    ) -> list[dict[str, Any]]:
        """Documents of `collection` matching `where` and `equals` (field == value)."""
        conditions = dict(equals)
        if isinstance(where, Mapping):
            conditions.update(where)
            where = None

        sql = ["SELECT data_json FROM documents WHERE collection = ?"]
        params: list[Any] = [collection]
        for name, value in conditions.items():
            if not _FIELD_RE.match(name):
                raise ValueError(f"invalid field name: {name!r}")
            if value is None:
                sql.append(f"AND json_extract(data_json, '$.{name}') IS NULL")
            elif isinstance(value, (str, int, float, bool)):
                sql.append(f"AND json_extract(data_json, '$.{name}') = ?")
                params.append(value)
        sql.append("ORDER BY id")

        with read_only(self._conn) as cur:
            rows = cur.execute(" ".join(sql), params).fetchall()

        out: list[dict[str, Any]] = []
        for row in rows:
            doc = json.loads(row[0])
            if matches(doc, conditions) and matches(doc, where):
                out.append(doc)
                if limit is not None and len(out) >= limit:
                    break
        return out

    # -------------------------
    # writes
    # -------------------------
    def _apply(self, cur: sqlite3.Cursor, op: WriteOp) -> ChangeEvent | None:
        before = self._read(cur, op.collection, op.doc_id)

        if op.kind == "delete":
            if before is None:
                return None
            cur.execute("DELETE FROM documents WHERE collection = ? AND id = ?", (op.collection, op.doc_id))
            return ChangeEvent("removed", op.collection, op.doc_id, before)

        if op.kind == "update":
            if before is None:
                raise NotFoundError(f"{op.collection}/{op.doc_id} does not exist.")
            data = {**before, **op.data}
        else:
            data = dict(op.data)
        data["id"] = op.doc_id

        cur.execute(
            "INSERT INTO documents (collection, id, data_json, updated_ms) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(collection, id) DO UPDATE SET data_json = excluded.data_json, "
            "updated_ms = excluded.updated_ms",
            (op.collection, op.doc_id, _dumps(data), now_ms()),
        )
        return ChangeEvent("added" if before is None else "modified", op.collection, op.doc_id, data)

    async def _publish(self, changes: Sequence[ChangeEvent | None]) -> None:
        for ch in changes:
            if ch is None:
                continue
            inc("store_writes_total", collection=ch.collection, kind=ch.kind)
            await self._bus.publish(
                topic_for(ch.collection),
                {"kind": ch.kind, "id": ch.doc_id, "data": ch.data},
                key=ch.doc_id,
            )

    async def _write(self, op: WriteOp) -> ChangeEvent | None:
        with transaction(self._conn) as cur:
            change = self._apply(cur, op)
        await self._publish([change])
        return change

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        change = await self._write(WriteOp.set(collection, doc_id, data))
        assert change is not None
        return change.data

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Shallow merge of `fields` into an existing document; NotFoundError if missing."""
        change = await self._write(WriteOp.update(collection, doc_id, fields))
        assert change is not None
        return change.data

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await self._write(WriteOp.delete(collection, doc_id)) is not None

    async def batch_write(self, groups: Sequence[Sequence[WriteOp]], *, limit: int | None = None) -> int:
        """Commit groups chunk by chunk; returns the number of operations written."""
        chunks = chunk_groups(groups, limit or self.batch_limit)
        written = 0
        for n, chunk in enumerate(chunks, start=1):
            with transaction(self._conn) as cur:
                changes = [self._apply(cur, op) for op in chunk]
            written += len(chunk)
            inc("store_batch_commits_total")
            _log.debug("batch_committed", extra={"chunk": n, "chunks": len(chunks), "ops": len(chunk)})
            await self._publish(changes)
        return written

    # -------------------------
    # change feed
    # -------------------------
    async def subscribe(self, collection: str, where: Where = None, *, initial: bool = True) -> ChangeStream:
        """Filtered stream of changes; with `initial`, current matches come first as `added`."""
        sub = self._bus.stream(topic_for(collection))
        docs = await self.query(collection, where) if initial else []
        return ChangeStream(sub, collection, where, docs)


__all__ = [
    "DEFAULT_BATCH_LIMIT",
    "ChangeEvent",
    "ChangeStream",
    "SqliteDocumentStore",
    "WriteOp",
    "chunk_groups",
    "matches",
    "topic_for",
]
