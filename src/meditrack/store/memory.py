"""In-process document store with live subscriptions.

Deliveries are scheduled on the running asyncio loop, so a subscriber sees
the effect of a write on a later loop iteration, never inside the write
call itself. Each delivery reads the collection at delivery time, which
keeps every subscription's snapshots in commit order.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from typing import Any

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


class MemoryDocumentStore:
    """Dict-backed store used by tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._pending = 0

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        for subs in self._subscriptions.values():
            for sub in subs:
                sub.cancel()
        self._subscriptions.clear()
        # Drain scheduled deliveries; they are no-ops once cancelled.
        await self.flush()

    # -- reads -------------------------------------------------------------

    def _snapshot(self, collection: str) -> list[Document]:
        docs = self._collections.get(collection, {})
        return [Document(doc_id, copy.deepcopy(data)) for doc_id, data in docs.items()]

    async def list(self, collection: str) -> list[Document]:
        return self._snapshot(collection)

    def live_subscriptions(self, collection_prefix: str = "") -> list[Subscription]:
        """Return active subscriptions whose collection starts with *collection_prefix*."""
        return [
            sub
            for collection, subs in self._subscriptions.items()
            if collection.startswith(collection_prefix)
            for sub in subs
            if sub.active
        ]

    # -- writes ------------------------------------------------------------

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)
        self._notify({collection})
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(collection, doc_id)
        doc.update(copy.deepcopy(fields))
        self._notify({collection})

    def batch(self) -> WriteBatch:
        return WriteBatch(self._commit_batch)

    async def _commit_batch(self, ops: list[BatchOp]) -> None:
        # Validate every op before applying any of them.
        for op in ops:
            if op.action == "update" and op.doc_id not in self._collections.get(op.collection, {}):
                raise DocumentNotFoundError(op.collection, op.doc_id)
            if op.action not in ("update", "delete"):
                raise StoreError(f"Unknown batch action: {op.action!r}")

        touched: set[str] = set()
        for op in ops:
            docs = self._collections.get(op.collection, {})
            if op.action == "delete":
                docs.pop(op.doc_id, None)
            else:
                docs[op.doc_id].update(copy.deepcopy(op.fields or {}))
            touched.add(op.collection)
        self._notify(touched)

    # -- subscriptions -----------------------------------------------------

    def subscribe(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        sub = Subscription(collection, on_snapshot, on_error)
        self._subscriptions.setdefault(collection, []).append(sub)
        self._schedule(sub)
        return sub

    def _notify(self, collections: set[str]) -> None:
        for collection in collections:
            subs = self._subscriptions.get(collection, [])
            self._subscriptions[collection] = [s for s in subs if s.active]
            for sub in self._subscriptions[collection]:
                self._schedule(sub)

    def _schedule(self, sub: Subscription) -> None:
        loop = asyncio.get_running_loop()
        self._pending += 1
        loop.call_soon(self._deliver, sub)

    def _deliver(self, sub: Subscription) -> None:
        self._pending -= 1
        if not sub.active:
            return
        try:
            sub.deliver(self._snapshot(sub.collection))
        except Exception:
            logger.exception("Snapshot callback failed for %s", sub.collection)

    async def flush(self) -> None:
        while self._pending:
            await asyncio.sleep(0)
