"""PostgreSQL-backed document store with LISTEN/NOTIFY live queries.

All documents live in one ``documents`` table keyed by (collection, doc_id),
with a ``seq`` column recording insertion order. Every write transaction
issues ``pg_notify`` with the collection path as payload, so a
notification is only sent once the write commits. A dedicated listener
connection fans notifications out to the subscriptions of that collection;
each subscription re-reads its collection, coalescing notifications that
arrive while a read is in flight.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

import asyncpg

from meditrack.store.base import (
    BatchOp,
    Document,
    DocumentNotFoundError,
    ErrorCallback,
    SnapshotCallback,
    StoreError,
    Subscription,
    WriteBatch,
)

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "meditrack_documents"

DOCUMENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    seq BIGSERIAL NOT NULL,
    collection TEXT NOT NULL,
    doc_id TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, doc_id)
);
CREATE INDEX IF NOT EXISTS idx_documents_collection_seq ON documents (collection, seq);
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB column returned as text by asyncpg."""
    if not isinstance(val, str):
        return val
    return json.loads(val)


class _LiveQuery(Subscription):
    """Subscription with a serialized refresh task."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.dirty = False
        self.task: asyncio.Task | None = None


class PostgresDocumentStore:
    """Document store over an asyncpg pool.

    Args:
        pool: Connection pool for the meditrack database
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._listener: asyncpg.Connection | None = None
        self._subscriptions: dict[str, list[_LiveQuery]] = {}
        self._tasks: set[asyncio.Task] = set()

    async def open(self) -> None:
        await self._pool.execute(DOCUMENTS_SCHEMA)
        if self._listener is None:
            self._listener = await self._pool.acquire()
            await self._listener.add_listener(NOTIFY_CHANNEL, self._on_notify)
            logger.info("Listening for document changes on %s", NOTIFY_CHANNEL)

    async def close(self) -> None:
        for subs in self._subscriptions.values():
            for sub in subs:
                sub.cancel()
        self._subscriptions.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._listener is not None:
            await self._listener.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self._pool.release(self._listener)
            self._listener = None

    # -- reads -------------------------------------------------------------

    async def list(self, collection: str) -> list[Document]:
        rows = await self._pool.fetch(
            "SELECT doc_id, data FROM documents WHERE collection = $1 ORDER BY seq",
            collection,
        )
        return [Document(row["doc_id"], decode_jsonb(row["data"])) for row in rows]

    # -- writes ------------------------------------------------------------

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO documents (collection, doc_id, data) VALUES ($1, $2, $3::jsonb)",
                    collection,
                    doc_id,
                    json.dumps(data),
                )
                await conn.execute("SELECT pg_notify($1, $2)", NOTIFY_CHANNEL, collection)
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._apply_update(conn, collection, doc_id, fields)
                await conn.execute("SELECT pg_notify($1, $2)", NOTIFY_CHANNEL, collection)

    @staticmethod
    async def _apply_update(
        conn: asyncpg.Connection, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> None:
        status = await conn.execute(
            """
            UPDATE documents
            SET data = data || $3::jsonb, updated_at = now()
            WHERE collection = $1 AND doc_id = $2
            """,
            collection,
            doc_id,
            json.dumps(fields),
        )
        if status == "UPDATE 0":
            raise DocumentNotFoundError(collection, doc_id)

    def batch(self) -> WriteBatch:
        return WriteBatch(self._commit_batch)

    async def _commit_batch(self, ops: list[BatchOp]) -> None:
        touched: list[str] = []
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for op in ops:
                    if op.action == "delete":
                        await conn.execute(
                            "DELETE FROM documents WHERE collection = $1 AND doc_id = $2",
                            op.collection,
                            op.doc_id,
                        )
                    elif op.action == "update":
                        await self._apply_update(conn, op.collection, op.doc_id, op.fields or {})
                    else:
                        raise StoreError(f"Unknown batch action: {op.action!r}")
                    if op.collection not in touched:
                        touched.append(op.collection)
                for collection in touched:
                    await conn.execute("SELECT pg_notify($1, $2)", NOTIFY_CHANNEL, collection)

    # -- subscriptions -----------------------------------------------------

    def subscribe(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        sub = _LiveQuery(collection, on_snapshot, on_error)
        self._subscriptions.setdefault(collection, []).append(sub)
        self._schedule_refresh(sub)
        return sub

    def _on_notify(
        self,
        connection: asyncpg.Connection,  # noqa: ARG002
        pid: int,  # noqa: ARG002
        channel: str,  # noqa: ARG002
        payload: str,
    ) -> None:
        subs = [s for s in self._subscriptions.get(payload, []) if s.active]
        if subs:
            self._subscriptions[payload] = subs
        else:
            self._subscriptions.pop(payload, None)
        for sub in subs:
            self._schedule_refresh(sub)

    def _schedule_refresh(self, sub: _LiveQuery) -> None:
        sub.dirty = True
        if sub.task is not None and not sub.task.done():
            return
        task = asyncio.get_running_loop().create_task(self._refresh(sub))
        sub.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _refresh(self, sub: _LiveQuery) -> None:
        while sub.dirty and sub.active:
            sub.dirty = False
            try:
                docs = await self.list(sub.collection)
            except (asyncpg.PostgresError, OSError) as exc:
                logger.warning("Live query on %s failed: %s", sub.collection, exc)
                sub.fail(exc)
                return
            try:
                sub.deliver(docs)
            except Exception:
                logger.exception("Snapshot callback failed for %s", sub.collection)

    async def flush(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
